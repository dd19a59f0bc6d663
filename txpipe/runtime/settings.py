from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

from txpipe.bundle.bundle_types import MINIMUM_TIP_LAMPORTS
from txpipe.rpc.endpoints import DEFAULT_RPC_URLS, JITO_BLOCK_ENGINE_URLS, normalize_network


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_list(value: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    items = tuple(item.strip() for item in str(value).split(",") if item.strip())
    return items or default


def normalize_commitment(value: str | None, default: str = "confirmed") -> str:
    commitment = (value or "").strip().lower()
    if commitment in {"processed", "confirmed", "finalized"}:
        return commitment
    return default


@dataclass(slots=True)
class PipelineSettings:
    network: str
    rpc_urls: tuple[str, ...]
    rpc_attempts_per_endpoint: int
    rpc_max_attempts: int
    rpc_send_max_retries: int
    rpc_preflight_commitment: str
    rpc_retry_backoff_seconds: float
    rpc_http_timeout_seconds: float
    rpc_unhealthy_after_failures: int
    confirm_commitment: str
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    wallet_sign_timeout_seconds: float
    preparer_url: str
    jito_block_engine_urls: tuple[str, ...]
    jito_bundles_path: str
    jito_max_attempts: int
    jito_backoff_base_seconds: float
    jito_backoff_max_seconds: float
    jito_tip_lamports: int
    bundle_poll_initial_delay_seconds: float
    bundle_poll_interval_seconds: float
    bundle_poll_timeout_seconds: float
    compute_unit_margin_ratio: float
    log_level: str

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        network = normalize_network(os.getenv("SOLANA_NETWORK", "devnet"))
        return cls(
            network=network,
            rpc_urls=to_list(os.getenv("SOLANA_RPC_URLS"), DEFAULT_RPC_URLS[network]),
            rpc_attempts_per_endpoint=max(1, to_int(os.getenv("RPC_ATTEMPTS_PER_ENDPOINT"), 3)),
            rpc_max_attempts=max(0, to_int(os.getenv("RPC_MAX_ATTEMPTS"), 0)),
            rpc_send_max_retries=max(0, to_int(os.getenv("RPC_SEND_MAX_RETRIES"), 3)),
            rpc_preflight_commitment=normalize_commitment(os.getenv("RPC_PREFLIGHT_COMMITMENT")),
            rpc_retry_backoff_seconds=max(
                0.0,
                to_float(os.getenv("RPC_RETRY_BACKOFF_SECONDS"), 0.5),
            ),
            rpc_http_timeout_seconds=max(1.0, to_float(os.getenv("RPC_HTTP_TIMEOUT_SECONDS"), 8.0)),
            rpc_unhealthy_after_failures=max(
                1,
                to_int(os.getenv("RPC_UNHEALTHY_AFTER_FAILURES"), 3),
            ),
            confirm_commitment=normalize_commitment(os.getenv("CONFIRM_COMMITMENT")),
            confirm_timeout_seconds=max(5.0, to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 60.0)),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            wallet_sign_timeout_seconds=max(
                1.0,
                to_float(os.getenv("WALLET_SIGN_TIMEOUT_SECONDS"), 120.0),
            ),
            preparer_url=os.getenv("PREPARER_URL", "").strip(),
            jito_block_engine_urls=to_list(os.getenv("JITO_BLOCK_ENGINE_URLS"), JITO_BLOCK_ENGINE_URLS),
            jito_bundles_path=os.getenv("JITO_BUNDLES_PATH", "/api/v1/bundles").strip() or "/api/v1/bundles",
            jito_max_attempts=max(1, to_int(os.getenv("JITO_MAX_ATTEMPTS"), 5)),
            jito_backoff_base_seconds=max(
                0.05,
                to_float(os.getenv("JITO_BACKOFF_BASE_SECONDS"), 0.5),
            ),
            jito_backoff_max_seconds=max(1.0, to_float(os.getenv("JITO_BACKOFF_MAX_SECONDS"), 30.0)),
            jito_tip_lamports=max(
                MINIMUM_TIP_LAMPORTS,
                to_int(os.getenv("JITO_TIP_LAMPORTS"), MINIMUM_TIP_LAMPORTS),
            ),
            bundle_poll_initial_delay_seconds=max(
                0.0,
                to_float(os.getenv("BUNDLE_POLL_INITIAL_DELAY_SECONDS"), 5.0),
            ),
            bundle_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("BUNDLE_POLL_INTERVAL_SECONDS"), 3.0),
            ),
            bundle_poll_timeout_seconds=max(
                1.0,
                to_float(os.getenv("BUNDLE_POLL_TIMEOUT_SECONDS"), 30.0),
            ),
            compute_unit_margin_ratio=max(
                0.0,
                to_float(os.getenv("COMPUTE_UNIT_MARGIN_RATIO"), 0.1),
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    @property
    def effective_rpc_max_attempts(self) -> int:
        if self.rpc_max_attempts > 0:
            return self.rpc_max_attempts
        return self.rpc_attempts_per_endpoint * max(1, len(self.rpc_urls))


def load_settings(dotenv_path: str | None = None) -> PipelineSettings:
    load_dotenv(dotenv_path)
    return PipelineSettings.from_env()
