import asyncio
from collections import defaultdict

import pytest
from xrpl.core.binarycodec import decode
from xrpl.wallet import Wallet

import cosign.constants as C
from cosign import artifact
from cosign.audit import MemoryAuditSink
from cosign.batch import BatchSendOrchestrator
from cosign.contracts import TransferContractService
from cosign.crypto import FieldCipher
from cosign.errors import LedgerExpired, LedgerSubmissionError
from cosign.ledger import Anchor, LedgerOutcome, XrplLedgerClient
from cosign.queue import ConcurrencyQueue
from cosign.sqlite_store import SQLiteStore

from rippled_stub import StubRpc

BASE_FEE = 10


class FakeLedger:
    """In-memory LedgerClient. Knobs are plain attributes set by each test."""

    def __init__(self, validated: int = 100) -> None:
        self.validated = validated
        self.sequences: dict[str, int] = defaultdict(lambda: 1)
        self.fail_destinations: set[str] = set()
        self.fail_code = "tecNO_DST_INSUF_XRP"
        self.flaky: dict[str, int] = {}  # destination -> failures left before success
        self.expire = False
        self.anchor_error: Exception | None = None
        self.anchor_error_after = 0  # anchors handed out before anchor_error kicks in
        self.delay = 0.0
        self.gate: asyncio.Event | None = None
        self.anchors_fetched = 0
        self.submitted: list[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def fetch_anchor(self) -> Anchor:
        if self.anchor_error is not None and self.anchors_fetched >= self.anchor_error_after:
            raise self.anchor_error
        self.anchors_fetched += 1
        return Anchor(anchor_id="AB" * 32, expiry_height=self.validated + C.HORIZON)

    async def prepare_transfer(self, source, destination, amount_drops, anchor):
        seq = self.sequences[source]
        self.sequences[source] += 1
        return artifact.payment_json(
            source=source,
            destination=destination,
            amount_drops=amount_drops,
            sequence=seq,
            fee_drops=BASE_FEE,
            last_ledger_sequence=anchor.expiry_height,
        )

    async def prepare_cosigned(self, fee_payer, source, destination, amount_drops, anchor):
        return artifact.cosigned_transfer_json(
            fee_payer=fee_payer,
            fee_payer_sequence=self.sequences[fee_payer],
            source=source,
            source_sequence=self.sequences[source],
            destination=destination,
            amount_drops=amount_drops,
            base_fee_drops=BASE_FEE,
            last_ledger_sequence=anchor.expiry_height,
        )

    async def submit(self, blob: str) -> str:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self.delay)
            self.submitted.append(blob)
            ref = artifact.transaction_id(blob)
            destination = artifact.transfer_payment(decode(blob))["Destination"]
            if destination in self.fail_destinations:
                raise LedgerSubmissionError("Destination refused", result_code=self.fail_code, ledger_ref=ref)
            if self.flaky.get(destination, 0) > 0:
                self.flaky[destination] -= 1
                raise LedgerSubmissionError("Node busy", result_code="telCAN_NOT_QUEUE")
            return ref
        finally:
            self.in_flight -= 1

    async def confirm(self, ledger_ref: str, expiry_height: int) -> LedgerOutcome:
        if self.expire:
            raise LedgerExpired(ledger_ref, expiry_height, expiry_height + C.EXPIRY_GRACE + 1)
        return LedgerOutcome(ledger_ref=ledger_ref, ledger_index=self.validated + 1, result_code=C.SUCCESS_CODE)

    def destinations(self) -> list[str]:
        return [artifact.transfer_payment(decode(b))["Destination"] for b in self.submitted]


@pytest.fixture
def fee_payer() -> Wallet:
    return Wallet.create()


@pytest.fixture
def alice() -> Wallet:
    return Wallet.create()


@pytest.fixture
def bob() -> Wallet:
    return Wallet.create()


@pytest.fixture
def store(tmp_path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "cosign.db")


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def rpc() -> StubRpc:
    return StubRpc()


@pytest.fixture
def client(rpc) -> XrplLedgerClient:
    """The real ledger client talking to canned rippled answers."""
    return XrplLedgerClient(rpc, poll_interval=0)


@pytest.fixture
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def cipher() -> FieldCipher:
    return FieldCipher.generate()


@pytest.fixture
def contracts(store, ledger, fee_payer, audit) -> TransferContractService:
    return TransferContractService(store, ledger, fee_payer, audit)


@pytest.fixture
def orchestrator(store, ledger, fee_payer, cipher, audit) -> BatchSendOrchestrator:
    return BatchSendOrchestrator(
        store, ledger, fee_payer, cipher, queue=ConcurrencyQueue(2), retry_delay=0, audit=audit
    )


@pytest.fixture
def countersign():
    """What the counterparty does out of band."""

    def _countersign(blob: str, wallet: Wallet) -> str:
        return artifact.serialize(artifact.countersign(decode(blob), wallet))

    return _countersign
