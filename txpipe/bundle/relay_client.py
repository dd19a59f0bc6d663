from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Sequence

from txpipe.common import (
    AttemptFailure,
    Deadline,
    RetryPolicy,
    exponential_backoff,
    guarded_call,
    log_event,
    run_with_retry,
)
from txpipe.errors import (
    BundleRateLimitError,
    BundleSubmissionError,
    BundleSubmissionExhaustedError,
    RpcMethodError,
)
from txpipe.rpc.client import JsonRpcClient
from txpipe.rpc.endpoints import JITO_BLOCK_ENGINE_URLS

from .bundle_builder import verify_tip_placement
from .bundle_types import (
    FALLBACK_TIP_ACCOUNTS,
    MINIMUM_TIP_LAMPORTS,
    Bundle,
    BundleStatus,
    bundle_explorer_url,
)


def _is_retryable_relay_error(error: Exception) -> bool:
    if isinstance(error, BundleRateLimitError):
        return True
    return isinstance(error, BundleSubmissionError) and error.unreachable


def _parse_bundle_id(result: Any) -> str | None:
    if isinstance(result, str):
        return result.strip() or None
    if isinstance(result, dict):
        return str(result.get("bundleId") or result.get("bundle_id") or result.get("id") or "").strip() or None
    return None


class BundleRelayClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: JsonRpcClient,
        endpoints: Sequence[str] = JITO_BLOCK_ENGINE_URLS,
        bundles_path: str = "/api/v1/bundles",
        max_attempts: int = 5,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        cleaned = tuple(url.strip().rstrip("/") for url in endpoints if url.strip())
        if not cleaned:
            raise ValueError("BundleRelayClient requires at least one relay endpoint.")
        self._logger = logger
        self._rpc = rpc
        self._endpoints = cleaned
        self._bundles_path = "/" + bundles_path.strip().strip("/")
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_base_seconds = max(0.0, float(backoff_base_seconds))
        self._backoff_max_seconds = max(0.0, float(backoff_max_seconds))
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._tip_accounts_cache: list[str] = []
        self._accepted_by: dict[str, str] = {}

    @property
    def endpoints(self) -> tuple[str, ...]:
        return self._endpoints

    def bundles_url(self, endpoint: str) -> str:
        return f"{endpoint}{self._bundles_path}"

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            endpoints=self._endpoints,
            max_attempts=self._max_attempts,
            backoff=exponential_backoff(self._backoff_base_seconds, max_seconds=self._backoff_max_seconds),
            attempts_per_endpoint=1,
            max_delay_seconds=self._backoff_max_seconds,
        )

    def status_endpoints(self, bundle_id: str) -> list[str]:
        """Relay endpoints for status lookups, starting with the one that accepted the bundle."""
        accepted = self._accepted_by.get(bundle_id)
        if accepted is None:
            return list(self._endpoints)
        return [accepted, *(endpoint for endpoint in self._endpoints if endpoint != accepted)]

    async def fetch_tip_accounts(self, *, force_refresh: bool = False) -> list[str]:
        if self._tip_accounts_cache and not force_refresh:
            return list(self._tip_accounts_cache)

        last_error: Exception | None = None
        for endpoint in self._endpoints:
            try:
                result = await self._rpc.call(self.bundles_url(endpoint), "getTipAccounts", [])
            except RpcMethodError as error:
                last_error = error
                continue
            if not isinstance(result, list):
                last_error = RuntimeError(f"Unexpected getTipAccounts response: {result}")
                continue
            tip_accounts = [str(item).strip() for item in result if str(item).strip()]
            if not tip_accounts:
                last_error = RuntimeError("getTipAccounts returned no tip accounts.")
                continue

            self._tip_accounts_cache = tip_accounts
            log_event(
                self._logger,
                level="info",
                event="jito_tip_accounts_loaded",
                message="Loaded relay tip accounts",
                tip_account_count=len(tip_accounts),
                endpoint=endpoint,
            )
            return list(tip_accounts)

        raise RuntimeError(f"getTipAccounts failed on every relay endpoint: {last_error}")

    async def tip_accounts(self) -> list[str]:
        accounts = await guarded_call(
            self.fetch_tip_accounts,
            logger=self._logger,
            event="jito_tip_accounts_fallback",
            message="Falling back to the published tip accounts",
        )
        return accounts or list(FALLBACK_TIP_ACCOUNTS)

    def known_tip_accounts(self) -> set[str]:
        return {*self._tip_accounts_cache, *FALLBACK_TIP_ACCOUNTS}

    async def select_tip_account(self) -> str:
        return self._rng.choice(await self.tip_accounts())

    def tip_amount(self, requested_lamports: int) -> int:
        if requested_lamports < MINIMUM_TIP_LAMPORTS:
            log_event(
                self._logger,
                level="warning",
                event="jito_tip_below_minimum",
                message="Tip below the relay minimum; raising it",
                requested_lamports=requested_lamports,
                minimum_lamports=MINIMUM_TIP_LAMPORTS,
            )
            return MINIMUM_TIP_LAMPORTS
        return int(requested_lamports)

    async def send_bundle(self, bundle: Bundle, *, deadline: Deadline | None = None) -> str:
        verify_tip_placement(bundle.transactions, self.known_tip_accounts())
        encoded = bundle.encoded()

        async def _attempt(attempt: int, endpoint: str) -> str:
            try:
                result = await self._rpc.call(
                    self.bundles_url(endpoint),
                    "sendBundle",
                    [encoded, {"encoding": "base64"}],
                )
            except RpcMethodError as error:
                if error.rate_limited:
                    raise BundleRateLimitError(
                        f"Relay rate-limited bundle submission: {error}",
                        endpoint=endpoint,
                        status=error.status,
                        retry_after_seconds=error.retry_after_seconds,
                    ) from error
                raise BundleSubmissionError(
                    f"Relay rejected bundle: {error}",
                    endpoint=endpoint,
                    status=error.status,
                    unreachable=error.status is None,
                ) from error

            bundle_id = _parse_bundle_id(result)
            if bundle_id is None:
                raise BundleSubmissionError(
                    f"Relay response carried no bundle id: {result}",
                    endpoint=endpoint,
                )

            self._accepted_by[bundle_id] = endpoint
            log_event(
                self._logger,
                level="info",
                event="jito_bundle_submitted",
                message="Atomic bundle accepted by relay",
                bundle_id=bundle_id,
                endpoint=endpoint,
                attempt=attempt,
                tx_count=len(bundle.transactions),
                tip_lamports=bundle.tip_lamports,
                explorer_url=bundle_explorer_url(bundle_id),
            )
            return bundle_id

        def _exhausted(failures: list[AttemptFailure]) -> Exception:
            visited = [failure.endpoint for failure in failures]
            return BundleSubmissionExhaustedError(
                f"Bundle submission exhausted {len(failures)} attempt(s) across {visited}",
                attempts=failures,
            )

        return await run_with_retry(
            self.policy(),
            _attempt,
            is_retryable=_is_retryable_relay_error,
            exhausted=_exhausted,
            logger=self._logger,
            event="bundle_rate_limited",
            deadline=deadline,
            sleep=self._sleep,
        )

    async def get_bundle_status(self, bundle_id: str, *, endpoint: str) -> tuple[BundleStatus, int | None]:
        result = await self._rpc.call(self.bundles_url(endpoint), "getInflightBundleStatuses", [[bundle_id]])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, list) or not value or not isinstance(value[0], dict):
            # Not yet visible to the relay.
            return BundleStatus.PENDING, None
        entry = value[0]
        landed_slot = entry.get("landed_slot")
        return BundleStatus.from_relay(entry.get("status")), landed_slot if isinstance(landed_slot, int) else None
