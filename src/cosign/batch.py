"""Batch sends: one operator request paying many recipients from the sender wallet."""

import asyncio
import logging
import uuid
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from xrpl.utils import xrp_to_drops
from xrpl.wallet import Wallet

import cosign.constants as C
from cosign import artifact
from cosign.audit import AuditSink, Entity, LogAuditSink, TransitionEvent
from cosign.contracts import parse_amount, validate_account
from cosign.crypto import FieldCipher
from cosign.errors import LedgerSubmissionError, NotFound, ValidationError
from cosign.ledger import LedgerClient, LedgerOutcome, submit_and_confirm
from cosign.models import BatchDetail, Recipient
from cosign.queue import ConcurrencyQueue
from cosign.retry import Backoff, RetryExhausted, RetryPolicy
from cosign.sqlite_store import SQLiteStore

log = logging.getLogger("cosign.batch")


class BatchSendOrchestrator:
    """Owns the batch request/detail lifecycle.

    Every batch of the process shares one ConcurrencyQueue, so the concurrency
    ceiling bounds all outbound sends, not each batch separately.
    """

    def __init__(
        self,
        store: SQLiteStore,
        ledger: LedgerClient,
        sender: Wallet,
        cipher: FieldCipher,
        *,
        queue: ConcurrencyQueue | None = None,
        retry_delay: float = C.RETRY_DELAY,
        backoff: Backoff = Backoff.CONSTANT,
        audit: AuditSink | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.sender = sender
        self.cipher = cipher
        self.queue = queue or ConcurrencyQueue()
        # Only ledger failures are worth another attempt
        self.retry_policy = RetryPolicy(
            max_attempts=C.MAX_RETRY_COUNT,
            delay=retry_delay,
            backoff=backoff,
            retry_on=(LedgerSubmissionError,),
        )
        self.audit = audit or LogAuditSink()
        self._tasks: set[asyncio.Task] = set()

    def _recipients(self, recipients: Iterable[Recipient | Mapping[str, Any]]) -> list[Recipient]:
        parsed = []
        for i, r in enumerate(recipients):
            account, amount = (r.account, r.amount) if isinstance(r, Recipient) else (r.get("account"), r.get("amount"))
            account = validate_account(account, f"recipients[{i}].account")
            if account == self.sender.address:
                raise ValidationError(f"recipients[{i}] is the sending account", field=f"recipients[{i}].account")
            parsed.append(Recipient(account, parse_amount(amount, f"recipients[{i}].amount")))
        if not parsed:
            raise ValidationError("recipients must not be empty", field="recipients")
        return parsed

    async def create_batch(
        self,
        category_1: str,
        category_2: str | None,
        recipients: Iterable[Recipient | Mapping[str, Any]],
    ) -> dict[str, str]:
        if not isinstance(category_1, str) or not category_1.strip():
            raise ValidationError("category_1 is required", field="category_1")
        parsed = self._recipients(recipients)

        request_id = str(uuid.uuid4())
        details = [(self.cipher.encrypt(r.account), r.amount) for r in parsed]
        batch = await self.store.create_batch(request_id, category_1, category_2, details)
        log.info("Batch %s created with %s recipients (%s/%s)", request_id, batch.total_count, category_1, category_2)
        await self.audit.emit(TransitionEvent(
            Entity.BATCH, request_id, None, str(batch.status), fields={"total_count": batch.total_count},
        ))
        self.start(request_id)
        return {"request_id": request_id}

    def start(self, request_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.process_batch(request_id), name=f"batch-{request_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _set_status(self, request_id: str, status: C.BatchStatus, error: str | None = None) -> None:
        before = await self.store.set_batch_status(request_id, status)
        log.info("Batch %s %s -> %s", request_id, before, status)
        await self.audit.emit(TransitionEvent(Entity.BATCH, request_id, str(before), str(status), error=error))

    async def process_batch(self, request_id: str) -> C.BatchStatus:
        """Drain pending details page by page. Runs as a background task."""
        try:
            await self._set_status(request_id, C.BatchStatus.PROCESSING)
            while True:
                page = await self.store.list_pending_details(request_id, C.PENDING_PAGE_SIZE)
                if not page:
                    break
                futures = [self.queue.add(lambda d=d: self._send_detail(d)) for d in page]
                results = await asyncio.gather(*futures, return_exceptions=True)
                stats = await self.store.refresh_batch_stats(request_id)
                log.info("Batch %s page of %s drained: %s/%s sent, %s failed",
                         request_id, len(page), stats.completed, stats.total, stats.failed)
                for r in results:
                    if isinstance(r, asyncio.CancelledError):
                        raise r
                for r in results:
                    if isinstance(r, BaseException):
                        raise r
            await self._set_status(request_id, C.BatchStatus.DONE)
            return C.BatchStatus.DONE
        except asyncio.CancelledError:
            log.warning("Batch %s interrupted, left %s", request_id, C.BatchStatus.PROCESSING)
            raise
        except Exception as e:
            log.exception("Batch %s aborted", request_id)
            try:
                await self._set_status(request_id, C.BatchStatus.ERROR, error=str(e)[: C.MAX_ERROR_MESSAGE])
            except Exception:
                log.exception("Batch %s could not be marked %s", request_id, C.BatchStatus.ERROR)
            return C.BatchStatus.ERROR

    async def send_transfer(self, destination: str, amount: Decimal) -> LedgerOutcome:
        """Single-signed payment from the sender wallet. The batch transfer primitive."""
        anchor = await self.ledger.fetch_anchor()
        tx = await self.ledger.prepare_transfer(self.sender.address, destination, xrp_to_drops(amount), anchor)
        blob = artifact.serialize(artifact.sign(tx, self.sender))
        return await submit_and_confirm(self.ledger, blob, anchor.expiry_height)

    async def _send_detail(self, detail: BatchDetail) -> bool:
        account = self.cipher.decrypt(detail.recipient_account)
        attempts = 0
        last_failure: LedgerSubmissionError | None = None

        async def attempt() -> LedgerOutcome:
            nonlocal attempts, last_failure
            attempts += 1
            try:
                return await self.send_transfer(account, detail.amount)
            except LedgerSubmissionError as e:
                last_failure = e
                raise

        policy = self.retry_policy.limited(C.MAX_RETRY_COUNT - detail.attempt_count)
        try:
            outcome = await policy.run(attempt, label=f"detail {detail.idx}")
        except RetryExhausted as e:
            err = e.last_error
            await self.store.record_detail_result(
                detail.idx,
                sent=False,
                attempts=attempts,
                result_code=err.result_code,
                error_message=str(e),
                ledger_ref=err.ledger_ref,
            )
            await self.audit.emit(TransitionEvent(
                Entity.DETAIL, str(detail.idx), str(C.SentFlag.NO), str(C.SentFlag.NO),
                error=err.message, fields={"request_id": detail.request_id, "attempts": attempts},
            ))
            return False
        except Exception:
            if last_failure is not None:
                # earlier attempts went to the ledger and still count
                await self.store.record_detail_result(
                    detail.idx,
                    sent=False,
                    attempts=attempts - 1,
                    result_code=last_failure.result_code,
                    error_message=last_failure.message,
                    ledger_ref=last_failure.ledger_ref,
                )
            raise

        await self.store.record_detail_result(
            detail.idx,
            sent=True,
            attempts=attempts,
            result_code=outcome.result_code,
            ledger_ref=outcome.ledger_ref,
        )
        await self.audit.emit(TransitionEvent(
            Entity.DETAIL, str(detail.idx), str(C.SentFlag.NO), str(C.SentFlag.YES),
            fields={"request_id": detail.request_id, "attempts": attempts, "ledger_ref": outcome.ledger_ref},
        ))
        return True

    async def get_batch_status(self, request_id: str) -> dict[str, Any]:
        batch = await self.store.get_batch(request_id)
        if batch is None:
            raise NotFound(f"Batch {request_id} not found", request_id=request_id)
        return batch.snapshot()

    async def batch_details(
        self,
        request_id: str,
        sent: C.SentFlag | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> dict[str, Any]:
        if await self.store.get_batch(request_id) is None:
            raise NotFound(f"Batch {request_id} not found", request_id=request_id)
        details = await self.store.list_details(request_id, sent=sent, limit=limit, offset=offset)
        stats = await self.store.detail_stats(request_id)
        return {
            "request_id": request_id,
            "stats": stats.snapshot(),
            "details": [d.snapshot(recipient_account=self.cipher.decrypt(d.recipient_account)) for d in details],
        }

    async def join(self) -> None:
        """Wait for every scheduled batch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.queue.wait_all()

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.queue.cancel_all()
