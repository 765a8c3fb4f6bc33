"""Error taxonomy shared by the transfer and batch paths.

Every failure that can reach a caller is a `TransferError` carrying an
`ErrorKind`. Transports map the kind to a status with `HTTP_STATUS`; nothing
inspects message text.
"""

from enum import StrEnum
from typing import Any, ClassVar

import cosign.constants as C


class ErrorKind(StrEnum):
    VALIDATION            = "ValidationError"
    NOT_FOUND             = "NotFound"
    CONFLICT              = "Conflict"
    AUTHORIZATION_MISSING = "AuthorizationMissing"
    LEDGER_SUBMISSION     = "LedgerSubmissionError"
    SYSTEM                = "SystemError"


class SignerRole(StrEnum):
    FEE_PAYER    = "fee_payer"
    COUNTERPARTY = "counterparty"


class TransferError(Exception):
    kind: ClassVar[ErrorKind] = ErrorKind.SYSTEM

    def __init__(self, message: str, **fields: Any) -> None:
        super().__init__(message)
        self.message = message
        self.fields = fields

    def to_dict(self) -> dict[str, Any]:
        return {"kind": str(self.kind), "message": self.message, **self.fields}


class ValidationError(TransferError):
    kind = ErrorKind.VALIDATION


class NotFound(TransferError):
    kind = ErrorKind.NOT_FOUND


class Conflict(TransferError):
    kind = ErrorKind.CONFLICT


class AuthorizationMissing(TransferError):
    kind = ErrorKind.AUTHORIZATION_MISSING
    role: ClassVar[SignerRole]

    def __init__(self, account: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Artifact is missing the {self.role} authorization of {account}",
            role=str(self.role),
            account=account,
        )
        self.account = account


class MissingFeePayerAuthorization(AuthorizationMissing):
    role = SignerRole.FEE_PAYER


class MissingCounterpartyAuthorization(AuthorizationMissing):
    role = SignerRole.COUNTERPARTY


class LedgerSubmissionError(TransferError):
    kind = ErrorKind.LEDGER_SUBMISSION

    def __init__(self, message: str, *, result_code: str, ledger_ref: str | None = None, **fields: Any) -> None:
        super().__init__(message, result_code=result_code, ledger_ref=ledger_ref, **fields)
        self.result_code = result_code
        self.ledger_ref = ledger_ref


class LedgerExpired(LedgerSubmissionError):
    def __init__(self, ledger_ref: str | None, expiry_height: int, validated_height: int) -> None:
        super().__init__(
            f"Transfer not validated before ledger {expiry_height} (validated ledger is {validated_height})",
            result_code=C.EXPIRED_CODE,
            ledger_ref=ledger_ref,
            expiry_height=expiry_height,
        )
        self.expiry_height = expiry_height


class InternalError(TransferError):
    kind = ErrorKind.SYSTEM


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.AUTHORIZATION_MISSING: 422,
    ErrorKind.LEDGER_SUBMISSION: 502,
    ErrorKind.SYSTEM: 500,
}


def http_status(error: TransferError) -> int:
    return HTTP_STATUS[error.kind]
