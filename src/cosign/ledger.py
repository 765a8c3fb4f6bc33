"""Ledger client boundary and its XRP Ledger implementation."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.binarycodec import decode
from xrpl.models.requests import AccountInfo, Fee, Request, ServerState, SubmitOnly, Tx
from xrpl.models.response import Response

import cosign.constants as C
from cosign import artifact
from cosign.errors import LedgerExpired, LedgerSubmissionError

log = logging.getLogger("cosign.ledger")


@dataclass(frozen=True, slots=True)
class Anchor:
    """Checkpoint a transfer is built against. The artifact is dead after `expiry_height`."""

    anchor_id: str
    expiry_height: int


@dataclass(frozen=True, slots=True)
class LedgerOutcome:
    ledger_ref: str
    ledger_index: int
    result_code: str


class LedgerClient(Protocol):
    async def fetch_anchor(self) -> Anchor: ...

    async def prepare_transfer(
        self, source: str, destination: str, amount_drops: str, anchor: Anchor
    ) -> dict[str, Any]: ...

    async def prepare_cosigned(
        self, fee_payer: str, source: str, destination: str, amount_drops: str, anchor: Anchor
    ) -> dict[str, Any]: ...

    async def submit(self, blob: str) -> str: ...

    async def confirm(self, ledger_ref: str, expiry_height: int) -> LedgerOutcome: ...


async def submit_and_confirm(ledger: LedgerClient, blob: str, expiry_height: int) -> LedgerOutcome:
    """The transfer primitive shared by finalize and batch sends."""
    ledger_ref = await ledger.submit(blob)
    log.debug("Submitted %s, waiting for validation (expiry %s)", ledger_ref, expiry_height)
    return await ledger.confirm(ledger_ref, expiry_height)


@dataclass
class FeeInfo:
    """Current fee escalation state from rippled fee command. All values in drops."""

    base_fee: int
    minimum_fee: int
    open_ledger_fee: int
    current_queue_size: int
    max_queue_size: int

    @classmethod
    def from_fee_result(cls, result: dict) -> "FeeInfo":
        drops = result["drops"]
        return cls(
            base_fee=int(drops["base_fee"]),
            minimum_fee=int(drops["minimum_fee"]),
            open_ledger_fee=int(drops["open_ledger_fee"]),
            current_queue_size=int(result["current_queue_size"]),
            max_queue_size=int(result["max_queue_size"]),
        )


@dataclass
class AccountRecord:
    lock: asyncio.Lock
    next_seq: int | None = None


@dataclass
class XrplLedgerClient:
    """LedgerClient over rippled JSON-RPC.

    Sequences of the batch sender are handed out locally so concurrent sends
    don't collide. Co-signed transfers read both sequences fresh: the artifact
    may sit unsigned for many ledgers, and reserving a slot for it would stall
    every later send from the fee payer.

    Once a blob has been handed to rippled its outcome is settled by polling its
    id, never by resending. A transport error while submitting or polling only
    means the outcome is not known yet.
    """

    client: AsyncJsonRpcClient
    horizon: int = C.HORIZON
    grace: int = C.EXPIRY_GRACE
    poll_interval: float = C.CONFIRM_POLL_INTERVAL
    max_fee_drops: int = C.MAX_FEE_DROPS
    accounts: dict[str, AccountRecord] = field(default_factory=dict)
    _submitted: dict[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_url(cls, rpc_url: str, **kwargs: Any) -> "XrplLedgerClient":
        return cls(AsyncJsonRpcClient(rpc_url), **kwargs)

    async def _rpc(self, req: Request, *, t: float = C.RPC_TIMEOUT) -> Response:
        try:
            return await asyncio.wait_for(self.client.request(req), timeout=t)
        except (TimeoutError, httpx.HTTPError) as e:
            raise LedgerSubmissionError(
                f"{req.method} request failed: {type(e).__name__}: {e}",
                result_code=C.NETWORK_ERROR_CODE,
            ) from e

    @staticmethod
    def _result(resp: Response, what: str) -> dict[str, Any]:
        if not resp.is_successful():
            code = resp.result.get("error", "rpcERROR")
            raise LedgerSubmissionError(
                f"{what} rejected: {resp.result.get('error_message') or code}",
                result_code=code,
            )
        return resp.result

    async def _validated_ledger(self) -> dict[str, Any]:
        res = self._result(await self._rpc(ServerState()), "server_state")
        validated = res["state"].get("validated_ledger")
        if not validated:
            raise LedgerSubmissionError("Server has no validated ledger", result_code="noNetwork")
        return validated

    async def fetch_anchor(self) -> Anchor:
        validated = await self._validated_ledger()
        return Anchor(anchor_id=validated["hash"], expiry_height=int(validated["seq"]) + self.horizon)

    async def get_fee_info(self) -> FeeInfo:
        return FeeInfo.from_fee_result(self._result(await self._rpc(Fee()), "fee"))

    async def _fee(self) -> int:
        fee_info = await self.get_fee_info()
        fee = fee_info.minimum_fee
        if fee > fee_info.base_fee:
            log.warning(
                "Queue fees escalated: minimum=%s open_ledger=%s base=%s queue=%s/%s",
                fee, fee_info.open_ledger_fee, fee_info.base_fee,
                fee_info.current_queue_size, fee_info.max_queue_size,
            )
        if fee > self.max_fee_drops:
            raise LedgerSubmissionError(
                f"Fee too high ({fee} drops > {self.max_fee_drops} max)",
                result_code=C.FEE_CAP_CODE,
            )
        return fee

    def _record_for(self, addr: str) -> AccountRecord:
        rec = self.accounts.get(addr)
        if rec is None:
            rec = AccountRecord(lock=asyncio.Lock())
            self.accounts[addr] = rec
        return rec

    async def _account_sequence(self, addr: str) -> int:
        res = self._result(
            await self._rpc(AccountInfo(account=addr, ledger_index="current", strict=True)),
            f"account_info {addr}",
        )
        return res["account_data"]["Sequence"]

    async def alloc_seq(self, addr: str) -> int:
        rec = self._record_for(addr)
        async with rec.lock:
            if rec.next_seq is None:
                rec.next_seq = await self._account_sequence(addr)
            s = rec.next_seq
            rec.next_seq += 1
            return s

    async def resync(self, addr: str) -> None:
        """Drop the cached sequence; the next allocation reads it from the ledger."""
        rec = self.accounts.get(addr)
        if rec is None:
            return
        async with rec.lock:
            log.info("Resyncing sequence for %s (was %s)", addr, rec.next_seq)
            rec.next_seq = None

    async def prepare_transfer(
        self, source: str, destination: str, amount_drops: str, anchor: Anchor
    ) -> dict[str, Any]:
        fee = await self._fee()
        return artifact.payment_json(
            source=source,
            destination=destination,
            amount_drops=amount_drops,
            sequence=await self.alloc_seq(source),
            fee_drops=fee,
            last_ledger_sequence=anchor.expiry_height,
        )

    async def prepare_cosigned(
        self, fee_payer: str, source: str, destination: str, amount_drops: str, anchor: Anchor
    ) -> dict[str, Any]:
        fee = await self._fee()
        return artifact.cosigned_transfer_json(
            fee_payer=fee_payer,
            fee_payer_sequence=await self._account_sequence(fee_payer),
            source=source,
            source_sequence=await self._account_sequence(source),
            destination=destination,
            amount_drops=amount_drops,
            base_fee_drops=fee,
            last_ledger_sequence=anchor.expiry_height,
        )

    def _track(self, ledger_ref: str, account: str) -> None:
        if account in self.accounts:
            self._submitted[ledger_ref] = account

    async def submit(self, blob: str) -> str:
        tx = decode(blob)
        account = tx.get("Account")
        local_ref = artifact.transaction_id(blob)
        try:
            resp = await self._rpc(SubmitOnly(tx_blob=blob), t=C.SUBMIT_TIMEOUT)
        except LedgerSubmissionError as e:
            # rippled may have taken it; the id is fixed, so confirm settles it
            log.warning("submit of %s from %s unacknowledged (%s) - tracking until expiry",
                        local_ref, account, e.message)
            self._track(local_ref, account)
            return local_ref

        res = self._result(resp, "submit")
        er = res.get("engine_result", "")
        ledger_ref = res.get("tx_json", {}).get("hash") or local_ref

        # tem/tef never reach a ledger; terPRE_SEQ can't succeed without a lower sequence we don't hold.
        # tefALREADY is this very blob again, so it is tracked like any accepted submit.
        if er != "tefALREADY" and (er.startswith(("tem", "tef")) or er == "terPRE_SEQ"):
            log.warning("REJECTED: %s from %s tx=%s", er, account, ledger_ref)
            await self.resync(account)
            raise LedgerSubmissionError(
                res.get("engine_result_message") or er, result_code=er, ledger_ref=ledger_ref
            )
        if er.startswith("tel"):
            log.warning("tel* (may retry): %s tx=%s - tracking until expiry", er, ledger_ref)

        if tx.get("TransactionType") == "Batch":
            # Outer and inner sequences were read, not allocated here
            await self.resync(account)
        else:
            self._track(ledger_ref, account)
        log.debug("submit %s -> %s", ledger_ref, er)
        return ledger_ref

    async def _poll(self, ledger_ref: str, expiry_height: int) -> LedgerOutcome | None:
        resp = await self._rpc(Tx(transaction=ledger_ref))
        result = resp.result
        if resp.is_successful() and result.get("validated"):
            self._submitted.pop(ledger_ref, None)
            code = result["meta"]["TransactionResult"]
            li = int(result["ledger_index"])
            if code != C.SUCCESS_CODE:
                raise LedgerSubmissionError(
                    f"Transaction validated in ledger {li} with {code}",
                    result_code=code,
                    ledger_ref=ledger_ref,
                )
            return LedgerOutcome(ledger_ref=ledger_ref, ledger_index=li, result_code=code)

        latest = int((await self._validated_ledger())["seq"])
        if latest > expiry_height + self.grace:
            account = self._submitted.pop(ledger_ref, None)
            if account:
                await self.resync(account)
            raise LedgerExpired(ledger_ref, expiry_height, latest)
        return None

    async def confirm(self, ledger_ref: str, expiry_height: int) -> LedgerOutcome:
        """Poll until the transaction validates or can no longer validate.

        Only a validated result or a validated ledger past the expiry ends the
        wait. A transaction that is still live is never reported as failed.
        """
        while True:
            try:
                outcome = await self._poll(ledger_ref, expiry_height)
            except LedgerSubmissionError as e:
                if e.result_code != C.NETWORK_ERROR_CODE:
                    raise
                log.warning("Polling %s failed, outcome still unknown: %s", ledger_ref, e.message)
                outcome = None
            if outcome is not None:
                return outcome
            await asyncio.sleep(self.poll_interval)
