"""Transfer artifacts: XRPL transaction JSON, signing and authorization checks.

A contract artifact is a Batch owned by the fee payer, so the fee payer's
account pays the fee. Its inner transactions are the Payment from the
counterparty's account and a no-op AccountSet from the fee payer, since a
Batch carries at least two. The fee payer signs the outer transaction when the
contract is created. The counterparty adds a `BatchSigner` out of band;
`BatchSigners` is not a signing field, so that leaves the fee payer's
signature intact.

Batch sends are ordinary single-signed Payments.
"""

import hashlib
import logging
from typing import Any

from xrpl.core.addresscodec import decode_classic_address
from xrpl.core.binarycodec import decode, encode, encode_for_signing, encode_for_signing_batch
from xrpl.core.keypairs import derive_classic_address, is_valid_message, sign as keypairs_sign
from xrpl.models import BatchFlag, TransactionFlag
from xrpl.wallet import Wallet

from cosign.errors import ValidationError

log = logging.getLogger("cosign.artifact")

SIGNATURE_FIELDS = ("TxnSignature", "BatchSigners", "Signers")
INNER_FLAGS = int(TransactionFlag.TF_INNER_BATCH_TXN)
# Payment and its companion stand or fall together
BATCH_MODE = int(BatchFlag.TF_ALL_OR_NOTHING)


def payment_json(
    *,
    source: str,
    destination: str,
    amount_drops: str,
    sequence: int,
    fee_drops: int,
    last_ledger_sequence: int,
) -> dict[str, Any]:
    return {
        "TransactionType": "Payment",
        "Account": source,
        "Destination": destination,
        "Amount": str(amount_drops),
        "Sequence": sequence,
        "Fee": str(fee_drops),
        "LastLedgerSequence": last_ledger_sequence,
    }


def _inner(tx: dict[str, Any]) -> dict[str, Any]:
    # Inner transactions are unsigned, pay nothing and carry the inner flag
    return {**tx, "Fee": "0", "SigningPubKey": "", "Flags": INNER_FLAGS}


def batch_fee(base_fee_drops: int, inner_count: int, batch_signer_count: int) -> int:
    """Twice the base, plus one base per inner transaction and per batch signer."""
    return base_fee_drops * (2 + inner_count + batch_signer_count)


def cosigned_transfer_json(
    *,
    fee_payer: str,
    fee_payer_sequence: int,
    source: str,
    source_sequence: int,
    destination: str,
    amount_drops: str,
    base_fee_drops: int,
    last_ledger_sequence: int,
) -> dict[str, Any]:
    payment = _inner({
        "TransactionType": "Payment",
        "Account": source,
        "Destination": destination,
        "Amount": str(amount_drops),
        "Sequence": source_sequence,
    })
    companion = _inner({
        "TransactionType": "AccountSet",
        "Account": fee_payer,
        "Sequence": fee_payer_sequence + 1,
    })
    raw = [payment, companion]
    return {
        "TransactionType": "Batch",
        "Account": fee_payer,
        "Flags": BATCH_MODE,
        "Sequence": fee_payer_sequence,
        "Fee": str(batch_fee(base_fee_drops, len(raw), batch_signer_count=1)),
        "LastLedgerSequence": last_ledger_sequence,
        "RawTransactions": [{"RawTransaction": tx} for tx in raw],
    }


def inner_transactions(tx_json: dict[str, Any]) -> list[dict[str, Any]]:
    return [entry["RawTransaction"] for entry in tx_json.get("RawTransactions", [])]


def transfer_payment(tx_json: dict[str, Any]) -> dict[str, Any]:
    """The Payment that moves the funds, inner or not."""
    if tx_json.get("TransactionType") == "Payment":
        return tx_json
    for tx in inner_transactions(tx_json):
        if tx.get("TransactionType") == "Payment":
            return tx
    raise ValidationError("Artifact carries no Payment")


def serialize(tx_json: dict[str, Any]) -> str:
    return encode(tx_json)


def deserialize(blob: str) -> dict[str, Any]:
    """Decode a contract artifact."""
    if not isinstance(blob, str) or not blob:
        raise ValidationError("Artifact must be a non-empty hex string")
    try:
        tx = decode(blob)
    except Exception as e:
        raise ValidationError(f"Artifact could not be decoded: {type(e).__name__}") from e
    if tx.get("TransactionType") != "Batch":
        raise ValidationError("Artifact is not a Batch transaction")
    return tx


def transaction_body(tx_json: dict[str, Any]) -> dict[str, Any]:
    """The transaction without any signatures."""
    return {k: v for k, v in tx_json.items() if k not in SIGNATURE_FIELDS}


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def transaction_id(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def sign(tx_json: dict[str, Any], wallet: Wallet) -> dict[str, Any]:
    """Single-sign with the wallet that owns `Account`. Batch signers are kept."""
    tx = {k: v for k, v in tx_json.items() if k != "TxnSignature"}
    tx["SigningPubKey"] = wallet.public_key
    signing_blob = encode_for_signing(tx)
    tx["TxnSignature"] = keypairs_sign(bytes.fromhex(signing_blob), wallet.private_key)
    return tx


def batch_signing_data(tx_json: dict[str, Any], account: str) -> bytes:
    """What a batch signer for `account` signs: the outer Batch and its inner ids."""
    return bytes.fromhex(encode_for_signing_batch({
        "account": tx_json["Account"],
        "sequence": tx_json.get("Sequence") or tx_json.get("TicketSequence", 0),
        "flags": tx_json.get("Flags", 0),
        "transaction_ids": [transaction_id(encode(tx)) for tx in inner_transactions(tx_json)],
        "batch_account": account,
    }))


def _account_id(account: str) -> int:
    return int.from_bytes(decode_classic_address(account), "big")


def countersign(tx_json: dict[str, Any], wallet: Wallet) -> dict[str, Any]:
    """Add `wallet`'s BatchSigner, replacing an older one from the same account."""
    entry = {
        "BatchSigner": {
            "Account": wallet.address,
            "SigningPubKey": wallet.public_key,
            "TxnSignature": keypairs_sign(batch_signing_data(tx_json, wallet.address), wallet.private_key),
        }
    }
    signers = [s for s in tx_json.get("BatchSigners", []) if s["BatchSigner"]["Account"] != wallet.address]
    signers.append(entry)
    # Ledger requires BatchSigners sorted by numeric account id
    return {**tx_json, "BatchSigners": sorted(signers, key=lambda s: _account_id(s["BatchSigner"]["Account"]))}


def _key_matches(account: str | None, public_key: str | None, signature: str | None) -> bool:
    if not (account and public_key and signature):
        return False
    return derive_classic_address(public_key) == account


def _outer_signature_valid(tx_json: dict[str, Any]) -> bool:
    account = tx_json.get("Account")
    public_key = tx_json.get("SigningPubKey")
    signature = tx_json.get("TxnSignature")
    try:
        if not _key_matches(account, public_key, signature):
            return False
        message = bytes.fromhex(encode_for_signing({k: v for k, v in tx_json.items() if k != "TxnSignature"}))
        return is_valid_message(message, bytes.fromhex(signature), public_key)
    except Exception as e:
        log.debug("Outer signature of %s failed verification: %s: %s", account, type(e).__name__, e)
        return False


def _batch_signature_valid(tx_json: dict[str, Any], signer: dict[str, Any]) -> bool:
    account = signer.get("Account")
    public_key = signer.get("SigningPubKey")
    signature = signer.get("TxnSignature")
    try:
        if not _key_matches(account, public_key, signature):
            return False
        return is_valid_message(batch_signing_data(tx_json, account), bytes.fromhex(signature), public_key)
    except Exception as e:
        log.debug("Batch signer %s failed verification: %s: %s", account, type(e).__name__, e)
        return False


def verified_signers(tx_json: dict[str, Any]) -> set[str]:
    """Accounts whose signature over the transaction verifies.

    The outer `Account` counts when its own signature checks out. Every other
    account counts through a valid `BatchSigner` entry.
    """
    accounts = set()
    if _outer_signature_valid(tx_json):
        accounts.add(tx_json["Account"])
    for entry in tx_json.get("BatchSigners", []):
        signer = entry.get("BatchSigner", {}) if isinstance(entry, dict) else {}
        if _batch_signature_valid(tx_json, signer):
            accounts.add(signer["Account"])
        else:
            log.debug("Ignoring unverifiable batch signer %s", signer.get("Account"))
    return accounts
