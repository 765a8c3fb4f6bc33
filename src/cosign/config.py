"""Settings loaded once at startup: packaged config.toml, then environment overrides."""

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet
from xrpl.wallet import Wallet

from cosign.retry import Backoff

log = logging.getLogger("cosign.config")

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


class ConfigError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    rpc_url: str
    fee_payer_seed: str
    batch_sender_seed: str
    encryption_key: str
    db_path: Path
    concurrency: int
    retry_delay: float
    retry_backoff: Backoff
    host: str = "0.0.0.0"
    port: int = 8000
    probe_retries: int = 30
    probe_delay: float = 2.0

    @property
    def fee_payer(self) -> Wallet:
        return Wallet.from_seed(self.fee_payer_seed)

    @property
    def batch_sender(self) -> Wallet:
        return Wallet.from_seed(self.batch_sender_seed)


def _wallet_seed(seed: str, name: str) -> str:
    if not seed:
        raise ConfigError(f"{name} is not set")
    try:
        Wallet.from_seed(seed)
    except Exception as e:
        raise ConfigError(f"{name} is not a valid seed: {type(e).__name__}") from e
    return seed


def _number(value: Any, cast: type, name: str) -> Any:
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a {cast.__name__}, got {value!r}") from e


def load_settings(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    cfg = tomllib.loads(Path(path or config_file).read_text())
    ledger, store, send = cfg.get("ledger", {}), cfg.get("store", {}), cfg.get("send", {})
    server, startup = cfg.get("server", {}), cfg.get("startup", {})

    fee_payer_seed = _wallet_seed(env.get("FEE_PAYER_SEED") or ledger.get("fee_payer_seed", ""), "FEE_PAYER_SEED")
    sender_seed = env.get("BATCH_SENDER_SEED") or ledger.get("batch_sender_seed") or fee_payer_seed
    sender_seed = _wallet_seed(sender_seed, "BATCH_SENDER_SEED")

    key = env.get("ENCRYPTION_KEY", "")
    if key:
        try:
            Fernet(key)
        except ValueError as e:
            raise ConfigError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e
    else:
        log.warning("ENCRYPTION_KEY not set - generating one; stored recipients are unreadable after restart")
        key = Fernet.generate_key().decode()

    concurrency = _number(env.get("SEND_CONCURRENCY", send.get("concurrency", 5)), int, "SEND_CONCURRENCY")
    if concurrency < 1:
        raise ConfigError(f"SEND_CONCURRENCY must be >= 1, got {concurrency}")
    retry_delay = _number(env.get("SEND_RETRY_DELAY", send.get("retry_delay", 1.0)), float, "SEND_RETRY_DELAY")
    if retry_delay < 0:
        raise ConfigError(f"SEND_RETRY_DELAY must be >= 0, got {retry_delay}")
    backoff = env.get("SEND_RETRY_BACKOFF", send.get("retry_backoff", "constant"))
    try:
        backoff = Backoff(str(backoff).lower())
    except ValueError as e:
        raise ConfigError(f"SEND_RETRY_BACKOFF must be one of {[b.value for b in Backoff]}") from e

    return Settings(
        rpc_url=env.get("RPC_URL") or ledger.get("rpc_url", "http://localhost:5005"),
        fee_payer_seed=fee_payer_seed,
        batch_sender_seed=sender_seed,
        encryption_key=key,
        db_path=Path(env.get("DB_PATH") or store.get("db_path", "cosign.db")),
        concurrency=concurrency,
        retry_delay=retry_delay,
        retry_backoff=backoff,
        host=server.get("host", "0.0.0.0"),
        port=_number(server.get("port", 8000), int, "server.port"),
        probe_retries=_number(startup.get("probe_retries", 30), int, "startup.probe_retries"),
        probe_delay=_number(startup.get("probe_delay", 2.0), float, "startup.probe_delay"),
    )
