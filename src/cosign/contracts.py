"""Two-phase co-signed transfers.

`create` builds a Batch the fee payer has already signed, wrapping the
Payment from the counterparty's account. The caller collects the
counterparty's batch signature out of band and hands the artifact back to
`finalize`, which checks both signatures and submits it.
"""

import logging
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any

from xrpl.core.addresscodec import is_valid_classic_address
from xrpl.utils import XRPRangeException, xrp_to_drops
from xrpl.wallet import Wallet

import cosign.constants as C
from cosign import artifact
from cosign.audit import AuditSink, Entity, LogAuditSink, TransitionEvent
from cosign.errors import (
    Conflict,
    LedgerSubmissionError,
    MissingCounterpartyAuthorization,
    MissingFeePayerAuthorization,
    NotFound,
    ValidationError,
)
from cosign.ledger import LedgerClient, submit_and_confirm
from cosign.models import TransferContract
from cosign.sqlite_store import SQLiteStore

log = logging.getLogger("cosign.contracts")

def validate_account(value: Any, name: str = "account") -> str:
    if not isinstance(value, str) or not is_valid_classic_address(value):
        raise ValidationError(f"{name} is not a valid XRPL account", field=name)
    return value


def parse_amount(value: Any, name: str = "amount") -> Decimal:
    """XRP amount as a Decimal: finite, positive, at most drop precision."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be a number", field=name)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number", field=name) from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{name} must be a positive finite number", field=name)
    if amount.normalize().as_tuple().exponent < -C.XRP_DECIMALS:
        raise ValidationError(f"{name} has more than {C.XRP_DECIMALS} decimal places", field=name)
    try:
        xrp_to_drops(amount)
    except XRPRangeException as e:
        raise ValidationError(f"{name} is out of range: {e}", field=name) from e
    return amount


class TransferContractService:
    def __init__(
        self,
        store: SQLiteStore,
        ledger: LedgerClient,
        fee_payer: Wallet,
        audit: AuditSink | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.fee_payer = fee_payer
        self.audit = audit or LogAuditSink()
        # contract ids with a finalize in progress in this process
        self._in_flight: set[str] = set()

    async def create(self, from_account: Any, to_account: Any, amount: Any) -> dict[str, Any]:
        from_account = validate_account(from_account, "from")
        to_account = validate_account(to_account, "to")
        if from_account == to_account:
            raise ValidationError("from and to must be different accounts", field="to")
        if from_account == self.fee_payer.address:
            raise ValidationError("from must not be the fee payer account", field="from")
        value = parse_amount(amount)

        anchor = await self.ledger.fetch_anchor()
        tx = await self.ledger.prepare_cosigned(
            self.fee_payer.address, from_account, to_account, xrp_to_drops(value), anchor
        )
        blob = artifact.serialize(artifact.sign(tx, self.fee_payer))

        now = time.time()
        contract = TransferContract(
            contract_id=str(uuid.uuid4()),
            from_account=from_account,
            to_account=to_account,
            amount=value,
            status=C.ContractStatus.PENDING,
            unsigned_artifact=blob,
            anchor_id=anchor.anchor_id,
            expiry_height=anchor.expiry_height,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_contract(contract)
        log.info("Contract %s created: %s -> %s %s XRP (expires at %s)",
                 contract.contract_id, from_account, to_account, value, anchor.expiry_height)
        await self.audit.emit(TransitionEvent(
            Entity.CONTRACT, contract.contract_id, None, str(C.ContractStatus.PENDING),
            fields={"anchor_id": anchor.anchor_id, "expiry_height": anchor.expiry_height},
        ))
        return {
            "contract_id": contract.contract_id,
            "unsigned_artifact": blob,
            "status": str(contract.status),
        }

    async def _load(self, contract_id: str) -> TransferContract:
        contract = await self.store.get_contract(contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found", contract_id=contract_id)
        return contract

    async def status(self, contract_id: str) -> dict[str, Any]:
        return (await self._load(contract_id)).snapshot()

    def _check_authorizations(self, contract: TransferContract, counter_signed: str) -> None:
        tx = artifact.deserialize(counter_signed)
        stored = artifact.deserialize(contract.unsigned_artifact)
        if artifact.transaction_body(tx) != artifact.transaction_body(stored):
            raise ValidationError("Artifact does not match the transfer created for this contract",
                                  contract_id=contract.contract_id)
        extra = {s.get("BatchSigner", {}).get("Account") for s in tx.get("BatchSigners", [])} - {contract.from_account}
        if extra:
            # the ledger refuses batch signers with no inner transaction
            raise ValidationError("Artifact is signed by accounts outside this transfer",
                                  contract_id=contract.contract_id)
        signers = artifact.verified_signers(tx)
        if self.fee_payer.address not in signers:
            raise MissingFeePayerAuthorization(self.fee_payer.address)
        if contract.from_account not in signers:
            raise MissingCounterpartyAuthorization(contract.from_account)

    async def _terminate(
        self,
        contract: TransferContract,
        status: C.ContractStatus,
        *,
        ledger_ref: str | None = None,
        error_message: str | None = None,
    ) -> None:
        won = await self.store.transition_contract(
            contract.contract_id, status, ledger_ref=ledger_ref, error_message=error_message
        )
        if not won:
            raise Conflict(f"Contract {contract.contract_id} was finalized concurrently",
                           contract_id=contract.contract_id)
        await self.audit.emit(TransitionEvent(
            Entity.CONTRACT, contract.contract_id, str(C.ContractStatus.PENDING), str(status),
            error=error_message, fields={"ledger_ref": ledger_ref} if ledger_ref else {},
        ))

    async def finalize(self, contract_id: str, counter_signed_artifact: str) -> dict[str, Any]:
        contract = await self._load(contract_id)
        if contract.status is not C.ContractStatus.PENDING:
            raise Conflict(f"Contract {contract_id} is already finalized",
                           contract_id=contract_id, status=str(contract.status))
        if contract_id in self._in_flight:
            raise Conflict(f"Contract {contract_id} is already being finalized", contract_id=contract_id)

        self._in_flight.add(contract_id)
        try:
            # Bad or unauthorized artifacts leave the contract PENDING for another try
            self._check_authorizations(contract, counter_signed_artifact)
            try:
                outcome = await submit_and_confirm(self.ledger, counter_signed_artifact, contract.expiry_height)
            except LedgerSubmissionError as e:
                log.warning("Contract %s failed on ledger: %s (%s)", contract_id, e.message, e.result_code)
                await self._terminate(contract, C.ContractStatus.FAILED, error_message=e.message)
                raise
            await self._terminate(contract, C.ContractStatus.COMPLETED, ledger_ref=outcome.ledger_ref)
            log.info("Contract %s completed in ledger %s tx=%s", contract_id, outcome.ledger_index, outcome.ledger_ref)
            return {
                "contract_id": contract_id,
                "ledger_ref": outcome.ledger_ref,
                "status": str(C.ContractStatus.COMPLETED),
            }
        finally:
            self._in_flight.discard(contract_id)
