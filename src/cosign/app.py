import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

import cosign.constants as C
from cosign.audit import AuditSink, LogAuditSink
from cosign.batch import BatchSendOrchestrator
from cosign.config import Settings, load_settings
from cosign.contracts import TransferContractService
from cosign.crypto import FieldCipher
from cosign.errors import TransferError, http_status
from cosign.ledger import XrplLedgerClient
from cosign.logging_config import setup_logging
from cosign.queue import ConcurrencyQueue
from cosign.sqlite_store import SQLiteStore

log = logging.getLogger("cosign.app")

PROBE_TIMEOUT = 3.0


@dataclass
class Services:
    contracts: TransferContractService
    batches: BatchSendOrchestrator


def build_services(settings: Settings, *, audit: AuditSink | None = None) -> Services:
    store = SQLiteStore(settings.db_path)
    ledger = XrplLedgerClient.from_url(settings.rpc_url)
    audit = audit or LogAuditSink()
    if settings.batch_sender.address == settings.fee_payer.address:
        log.warning("Batch sends share the fee payer account %s; a send made while a contract "
                    "is pending invalidates that contract's artifact. Set BATCH_SENDER_SEED to split them.",
                    settings.fee_payer.address)
    return Services(
        contracts=TransferContractService(store, ledger, settings.fee_payer, audit),
        batches=BatchSendOrchestrator(
            store,
            ledger,
            settings.batch_sender,
            FieldCipher(settings.encryption_key),
            queue=ConcurrencyQueue(settings.concurrency),
            retry_delay=settings.retry_delay,
            backoff=settings.retry_backoff,
            audit=audit,
        ),
    )


async def _probe_rippled(url: str, max_retries: int = 30, retry_delay: float = 2.0) -> None:
    """Probe the rippled RPC endpoint until it responds."""
    payload = {"method": "server_info", "params": [{}]}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                log.info("RPC endpoint responding (attempt %s/%s)", attempt, max_retries)
                return
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info("RPC not ready yet (attempt %s/%s): %s - retrying in %ss...",
                         attempt, max_retries, e.__class__.__name__, retry_delay)
                await asyncio.sleep(retry_delay)
            else:
                log.error("RPC failed after %s attempts", max_retries)
                raise


class CreateTransferReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_account: str = Field(alias="from")
    to_account: str = Field(alias="to")
    # Parsed by the service so bad amounts get the same error as everywhere else
    amount: str | int | float


class FinalizeReq(BaseModel):
    counter_signed_artifact: str


class RecipientReq(BaseModel):
    account: str
    amount: str | int | float


class CreateBatchReq(BaseModel):
    category_1: str
    category_2: str | None = None
    recipients: list[RecipientReq]


r_transfers = APIRouter(prefix="/transfers", tags=["Transfers"])
r_batches = APIRouter(prefix="/batches", tags=["Batches"])


def _services(request: Request) -> Services:
    return request.app.state.services


@r_transfers.post("")
async def create_transfer(req: CreateTransferReq, request: Request):
    return await _services(request).contracts.create(req.from_account, req.to_account, req.amount)


@r_transfers.post("/{contract_id}/finalize")
async def finalize_transfer(contract_id: str, req: FinalizeReq, request: Request):
    return await _services(request).contracts.finalize(contract_id, req.counter_signed_artifact)


@r_transfers.get("/{contract_id}")
async def transfer_status(contract_id: str, request: Request):
    return await _services(request).contracts.status(contract_id)


@r_batches.post("", status_code=202)
async def create_batch(req: CreateBatchReq, request: Request):
    recipients = [r.model_dump() for r in req.recipients]
    return await _services(request).batches.create_batch(req.category_1, req.category_2, recipients)


@r_batches.get("/{request_id}")
async def batch_status(request_id: str, request: Request):
    return await _services(request).batches.get_batch_status(request_id)


@r_batches.get("/{request_id}/details")
async def batch_details(
    request_id: str,
    request: Request,
    sent: C.SentFlag | None = None,
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
):
    return await _services(request).batches.batch_details(request_id, sent=sent, limit=limit, offset=offset)


async def transfer_error_handler(request: Request, exc: TransferError) -> JSONResponse:
    status = http_status(exc)
    if status >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


def create_app(settings: Settings | None = None, *, services: Services | None = None) -> FastAPI:
    """Build the API. With `services` given, startup skips config loading and the ledger probe."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            setup_logging()
            s = settings or load_settings()
            await _probe_rippled(s.rpc_url, s.probe_retries, s.probe_delay)
            app.state.services = build_services(s)
            log.info("Service ready: fee payer %s, batch sender %s, rpc %s",
                     s.fee_payer.address, s.batch_sender.address, s.rpc_url)
        else:
            app.state.services = services
        try:
            yield
        finally:
            await app.state.services.batches.shutdown()
            log.info("Shutdown complete")

    app = FastAPI(title="cosign", lifespan=lifespan)
    app.add_exception_handler(TransferError, transfer_error_handler)

    @app.get("/health")
    async def health(request: Request):
        return {"status": "ok", "send_queue": _services(request).batches.queue.status()}

    app.include_router(r_transfers)
    app.include_router(r_batches)
    return app


app = create_app()
