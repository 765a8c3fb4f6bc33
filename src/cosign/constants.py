from typing import Final
from enum import StrEnum


class ContractStatus(StrEnum):
    PENDING   = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED    = "FAILED"


class BatchStatus(StrEnum):
    PENDING    = "PENDING"
    PROCESSING = "PROCESSING"
    DONE       = "DONE"
    ERROR      = "ERROR"


class SentFlag(StrEnum):
    YES = "Y"
    NO  = "N"


# Allowed master status moves. Anything else is a regression.
BATCH_TRANSITIONS: Final = {
    BatchStatus.PENDING: {BatchStatus.PROCESSING, BatchStatus.ERROR},
    BatchStatus.PROCESSING: {BatchStatus.DONE, BatchStatus.ERROR},
    BatchStatus.DONE: set(),
    BatchStatus.ERROR: set(),
}

MAX_RETRY_COUNT = 3
BULK_INSERT_LIMIT = 1000
PENDING_PAGE_SIZE = 100
MAX_ERROR_MESSAGE = 500

DEFAULT_CONCURRENCY = 5
RETRY_DELAY = 1.0

# XRP has 6 decimal places (1 XRP = 1,000,000 drops)
XRP_DECIMALS = 6

HORIZON = 20  # Artifacts expire if not validated within 20 ledgers
EXPIRY_GRACE = 2
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20
CONFIRM_POLL_INTERVAL = 1.0
MAX_FEE_DROPS = 1000  # Cap so fee escalation can't drain the fee payer

SUCCESS_CODE = "tesSUCCESS"
NETWORK_ERROR_CODE = "NETWORK"
EXPIRED_CODE = "EXPIRED"
FEE_CAP_CODE = "FEE_CAP"

__all__ = [
    "BATCH_TRANSITIONS",
    "BULK_INSERT_LIMIT",
    "CONFIRM_POLL_INTERVAL",
    "DEFAULT_CONCURRENCY",
    "EXPIRED_CODE",
    "EXPIRY_GRACE",
    "FEE_CAP_CODE",
    "HORIZON",
    "MAX_ERROR_MESSAGE",
    "MAX_FEE_DROPS",
    "MAX_RETRY_COUNT",
    "NETWORK_ERROR_CODE",
    "PENDING_PAGE_SIZE",
    "RETRY_DELAY",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "SUCCESS_CODE",
    "XRP_DECIMALS",

    ######
    "BatchStatus",
    "ContractStatus",
    "SentFlag",
]
