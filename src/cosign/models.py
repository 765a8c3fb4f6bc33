"""Persistent entities and their snapshots."""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

import cosign.constants as C


@dataclass(slots=True)
class TransferContract:
    contract_id: str
    from_account: str
    to_account: str
    amount: Decimal
    status: C.ContractStatus
    unsigned_artifact: str
    anchor_id: str
    expiry_height: int
    created_at: float
    updated_at: float
    ledger_ref: str | None = None
    error_message: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "TransferContract":
        return cls(
            contract_id=row["contract_id"],
            from_account=row["from_account"],
            to_account=row["to_account"],
            amount=Decimal(row["amount"]),
            status=C.ContractStatus(row["status"]),
            unsigned_artifact=row["unsigned_artifact"],
            anchor_id=row["anchor_id"],
            expiry_height=int(row["expiry_height"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            ledger_ref=row["ledger_ref"],
            error_message=row["error_message"],
        )

    def snapshot(self) -> dict[str, Any]:
        d = asdict(self)
        d["amount"] = str(self.amount)
        d["status"] = str(self.status)
        return d


@dataclass(slots=True)
class BatchRequest:
    request_id: str
    category_1: str
    category_2: str | None
    total_count: int
    completed_count: int
    failed_count: int
    status: C.BatchStatus
    created_at: float
    updated_at: float

    @classmethod
    def from_row(cls, row: dict) -> "BatchRequest":
        return cls(
            request_id=row["request_id"],
            category_1=row["category_1"],
            category_2=row["category_2"],
            total_count=int(row["total_count"]),
            completed_count=int(row["completed_count"]),
            failed_count=int(row["failed_count"]),
            status=C.BatchStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def snapshot(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = str(self.status)
        return d


@dataclass(slots=True)
class BatchDetail:
    idx: int
    request_id: str
    recipient_account: str  # encrypted at rest
    amount: Decimal
    sent: C.SentFlag
    attempt_count: int
    last_result_code: str | None = None
    last_error_message: str | None = None
    ledger_ref: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "BatchDetail":
        return cls(
            idx=int(row["idx"]),
            request_id=row["request_id"],
            recipient_account=row["recipient_account"],
            amount=Decimal(row["amount"]),
            sent=C.SentFlag(row["sent"]),
            attempt_count=int(row["attempt_count"]),
            last_result_code=row["last_result_code"],
            last_error_message=row["last_error_message"],
            ledger_ref=row["ledger_ref"],
        )

    @property
    def permanently_failed(self) -> bool:
        return self.sent is C.SentFlag.NO and self.attempt_count >= C.MAX_RETRY_COUNT

    def snapshot(self, *, recipient_account: str | None = None) -> dict[str, Any]:
        d = asdict(self)
        d["amount"] = str(self.amount)
        d["sent"] = str(self.sent)
        if recipient_account is not None:
            d["recipient_account"] = recipient_account
        return d


@dataclass(frozen=True, slots=True)
class Recipient:
    account: str
    amount: Decimal


@dataclass(frozen=True, slots=True)
class BatchStats:
    total: int
    completed: int
    failed: int
    pending: int
    retryable: int

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total * 100, 2)

    def snapshot(self) -> dict[str, Any]:
        return {**asdict(self), "success_rate": self.success_rate}
