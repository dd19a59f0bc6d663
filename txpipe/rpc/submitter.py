from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts

from txpipe.common import AttemptFailure, Deadline, RetryPolicy, log_event, run_with_retry
from txpipe.common.retry import BackoffFn
from txpipe.errors import (
    RpcMethodError,
    SignatureMismatchError,
    SubmissionError,
    SubmissionExhaustedError,
)
from txpipe.types import SignedTransaction, SubmissionAttempt

from .client import JsonRpcClient
from .endpoints import RPCEndpointPool

PERMANENT_RPC_CODES = {-32600, -32602}
PREFLIGHT_FAILURE_CODE = -32002
PERMANENT_MARKERS = (
    "failed to deserialize",
    "insufficient funds",
    "insufficientfunds",
    "insufficient lamports",
)


def _submission_backoff(base_seconds: float, *, max_seconds: float) -> BackoffFn:
    # The retry right after the strict-preflight attempt is immediate.
    def _backoff(failures: int) -> float:
        if failures <= 1:
            return 0.0
        return min(max_seconds, max(0.0, base_seconds) * float(2 ** (failures - 2)))

    return _backoff


def classify_send_error(error: RpcMethodError, *, skip_preflight: bool) -> SubmissionError:
    status = error.status
    detail = f"{error} {json.dumps(error.data, default=str) if error.data is not None else ''}".lower()

    transient = True
    if error.code in PERMANENT_RPC_CODES:
        transient = False
    elif any(marker in detail for marker in PERMANENT_MARKERS):
        transient = False
    elif status is not None and 400 <= status < 500 and status != 429 and error.code is not None:
        transient = error.code == PREFLIGHT_FAILURE_CODE

    return SubmissionError(
        str(error),
        transient=transient,
        endpoint=error.endpoint,
        status=status,
        skip_preflight=skip_preflight,
        endpoint_fault=status is None or status == 429 or status >= 500 or error.rate_limited,
    )


class TransactionSubmitter:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: JsonRpcClient,
        pool: RPCEndpointPool,
        attempts_per_endpoint: int = 3,
        max_attempts: int | None = None,
        send_max_retries: int = 3,
        preflight_commitment: str = "confirmed",
        retry_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._pool = pool
        self._attempts_per_endpoint = max(1, int(attempts_per_endpoint))
        self._max_attempts = max_attempts if max_attempts and max_attempts > 0 else None
        self._send_max_retries = max(0, int(send_max_retries))
        self._preflight_commitment = Commitment(preflight_commitment)
        self._retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._max_backoff_seconds = max(0.0, float(max_backoff_seconds))
        self._sleep = sleep

    @property
    def pool(self) -> RPCEndpointPool:
        return self._pool

    async def build_policy(self) -> RetryPolicy:
        endpoints = tuple(await self._pool.ordered())
        max_attempts = self._max_attempts or self._attempts_per_endpoint * len(endpoints)
        return RetryPolicy(
            endpoints=endpoints,
            max_attempts=max_attempts,
            backoff=_submission_backoff(self._retry_backoff_seconds, max_seconds=self._max_backoff_seconds),
            attempts_per_endpoint=self._attempts_per_endpoint,
            max_delay_seconds=self._max_backoff_seconds,
        )

    def _tx_opts(self, *, skip_preflight: bool) -> TxOpts:
        return TxOpts(
            skip_preflight=skip_preflight,
            preflight_commitment=self._preflight_commitment,
            max_retries=self._send_max_retries,
        )

    @staticmethod
    def _send_config(opts: TxOpts) -> dict[str, Any]:
        return {
            "encoding": "base64",
            "skipPreflight": opts.skip_preflight,
            "preflightCommitment": str(opts.preflight_commitment),
            "maxRetries": opts.max_retries,
        }

    async def submit(self, signed: SignedTransaction, *, deadline: Deadline | None = None) -> str:
        expected_signature = signed.signature
        encoded = signed.to_base64()
        policy = await self.build_policy()

        async def _attempt(attempt: int, endpoint: str) -> str:
            # Strict preflight only on the first attempt; every retry relaxes it.
            skip_preflight = attempt > 1
            opts = self._tx_opts(skip_preflight=skip_preflight)
            try:
                result = await self._rpc.call(endpoint, "sendTransaction", [encoded, self._send_config(opts)])
            except RpcMethodError as error:
                raise classify_send_error(error, skip_preflight=skip_preflight) from error

            signature = str(result or "").strip()
            if not signature:
                raise SubmissionError(
                    "sendTransaction returned an empty signature.",
                    transient=True,
                    endpoint=endpoint,
                    skip_preflight=skip_preflight,
                    endpoint_fault=True,
                )
            if signature != expected_signature:
                raise SignatureMismatchError(
                    "Endpoint acknowledged a different transaction than the one submitted.",
                    expected=expected_signature,
                    received=signature,
                    endpoint=endpoint,
                )

            await self._pool.record_success(endpoint)
            self._log_attempt(SubmissionAttempt(endpoint=endpoint, skip_preflight=skip_preflight, outcome="accepted"))
            log_event(
                self._logger,
                level="info",
                event="tx_submitted",
                message="Transaction accepted by RPC endpoint",
                tx_signature=signature,
                endpoint=endpoint,
                attempt=attempt,
                skip_preflight=skip_preflight,
            )
            return signature

        async def _on_failure(failure: AttemptFailure) -> None:
            error = failure.error
            skip_preflight = getattr(error, "skip_preflight", None)
            if skip_preflight is None:
                skip_preflight = failure.attempt > 1
            self._log_attempt(
                SubmissionAttempt(endpoint=failure.endpoint, skip_preflight=skip_preflight, outcome=str(error))
            )
            if isinstance(error, SubmissionError) and error.endpoint_fault:
                await self._pool.record_failure(failure.endpoint)

        def _exhausted(failures: list[AttemptFailure]) -> Exception:
            last = failures[-1] if failures else None
            return SubmissionExhaustedError(
                f"Transaction submission exhausted {len(failures)} attempt(s); last error: "
                f"{last.error if last else 'deadline expired before the first attempt'}",
                attempts=failures,
            )

        return await run_with_retry(
            policy,
            _attempt,
            is_retryable=lambda error: isinstance(error, SubmissionError) and error.transient,
            exhausted=_exhausted,
            logger=self._logger,
            event="tx_submit_retry",
            deadline=deadline,
            sleep=self._sleep,
            on_failure=_on_failure,
        )

    async def fetch_latest_blockhash(
        self,
        *,
        commitment: str = "confirmed",
        deadline: Deadline | None = None,
    ) -> tuple[str, int | None]:
        policy = await self.build_policy()

        async def _attempt(attempt: int, endpoint: str) -> tuple[str, int | None]:
            result = await self._rpc.call(endpoint, "getLatestBlockhash", [{"commitment": commitment}])
            value = result.get("value") if isinstance(result, dict) else None
            if not isinstance(value, dict):
                raise RuntimeError(f"Unexpected getLatestBlockhash response: {result}")

            blockhash = str(value.get("blockhash") or "").strip()
            if not blockhash:
                raise RuntimeError(f"Missing blockhash in RPC response: {result}")
            raw_height = value.get("lastValidBlockHeight")
            last_valid_block_height = int(raw_height) if isinstance(raw_height, int) and raw_height >= 0 else None
            await self._pool.record_success(endpoint)
            return blockhash, last_valid_block_height

        async def _on_failure(failure: AttemptFailure) -> None:
            if isinstance(failure.error, RpcMethodError):
                await self._pool.record_failure(failure.endpoint)

        def _exhausted(failures: list[AttemptFailure]) -> Exception:
            last = failures[-1].error if failures else None
            return RuntimeError(f"getLatestBlockhash failed on every endpoint: {last}")

        return await run_with_retry(
            policy,
            _attempt,
            is_retryable=lambda error: isinstance(error, RpcMethodError),
            exhausted=_exhausted,
            logger=self._logger,
            event="blockhash_fetch_retry",
            deadline=deadline,
            sleep=self._sleep,
            on_failure=_on_failure,
        )

    def _log_attempt(self, attempt: SubmissionAttempt) -> None:
        log_event(
            self._logger,
            level="debug" if attempt.outcome == "accepted" else "warning",
            event="tx_submit_attempt",
            message="Transaction submission attempt finished",
            **attempt.to_dict(),
        )
