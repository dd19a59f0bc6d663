from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Sequence

from txpipe.common import Deadline, guarded_call, log_event, wait_with_stop
from txpipe.errors import (
    BlockhashExpiredError,
    ConfirmationTimeoutError,
    RpcMethodError,
    TransactionFailedError,
)
from txpipe.types import ConfirmationResult, commitment_reached

from .client import JsonRpcClient
from .endpoints import RPCEndpointPool


def observed_commitment(status: dict[str, Any]) -> str | None:
    confirmation_status = status.get("confirmationStatus")
    if isinstance(confirmation_status, str) and confirmation_status:
        return confirmation_status
    # Older nodes omit confirmationStatus; a null confirmation count means rooted.
    if "confirmations" in status and status.get("confirmations") is None:
        return "finalized"
    return None


class ConfirmationWaiter:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: JsonRpcClient,
        pool: RPCEndpointPool,
        commitment: str = "confirmed",
        timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._pool = pool
        self._commitment = commitment
        self._timeout_seconds = max(0.0, float(timeout_seconds))
        self._poll_interval_seconds = max(0.01, float(poll_interval_seconds))
        self._sleep = sleep
        self._clock = clock

    async def fetch_statuses(self, signatures: Sequence[str]) -> dict[str, dict[str, Any] | None]:
        """One ``getSignatureStatuses`` lookup, answered by the first endpoint that responds."""
        last_error: RpcMethodError | None = None
        for endpoint in await self._pool.ordered():
            try:
                result = await self._rpc.call(
                    endpoint,
                    "getSignatureStatuses",
                    [list(signatures), {"searchTransactionHistory": True}],
                )
            except RpcMethodError as error:
                last_error = error
                await self._pool.record_failure(endpoint)
                continue

            value = result.get("value") if isinstance(result, dict) else None
            if not isinstance(value, list):
                last_error = RpcMethodError(
                    f"Unexpected getSignatureStatuses response: {result!r}",
                    method="getSignatureStatuses",
                    endpoint=endpoint,
                    data=result,
                )
                await self._pool.record_failure(endpoint)
                continue
            await self._pool.record_success(endpoint)
            statuses: dict[str, dict[str, Any] | None] = {}
            for index, signature in enumerate(signatures):
                item = value[index] if index < len(value) else None
                statuses[signature] = item if isinstance(item, dict) else None
            return statuses

        if last_error is not None:
            raise last_error
        raise RpcMethodError("No RPC endpoints available for getSignatureStatuses.", method="getSignatureStatuses")

    async def fetch_block_height(self) -> int:
        endpoint = await self._pool.best()
        result = await self._rpc.call(endpoint, "getBlockHeight", [{"commitment": "confirmed"}])
        if not isinstance(result, int):
            raise RuntimeError(f"Unexpected getBlockHeight response: {result}")
        return result

    async def wait(
        self,
        signature: str,
        *,
        commitment: str | None = None,
        timeout_seconds: float | None = None,
        last_valid_block_height: int | None = None,
        deadline: Deadline | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> ConfirmationResult:
        target = commitment or self._commitment
        timeout = self._timeout_seconds if timeout_seconds is None else max(0.0, float(timeout_seconds))
        budget = Deadline.after(timeout, clock=self._clock)
        if deadline is not None and deadline.expires_at is not None:
            budget = deadline if budget.expires_at is None or deadline.expires_at < budget.expires_at else budget

        last_status: dict[str, Any] | None = None
        polls = 0
        while True:
            polls += 1
            try:
                # A cancelled waiter lets the in-flight lookup finish on its own.
                statuses = await asyncio.shield(self.fetch_statuses([signature]))
            except RpcMethodError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="tx_confirm_poll_failed",
                    message="Signature status lookup failed; will poll again",
                    tx_signature=signature,
                    poll=polls,
                    error=str(error),
                )
                status = None
            else:
                status = statuses.get(signature)

            if status is not None:
                last_status = status
                slot = status.get("slot") if isinstance(status.get("slot"), int) else None
                if status.get("err") is not None:
                    log_event(
                        self._logger,
                        level="error",
                        event="tx_failed",
                        message="Ledger reported an execution error for the transaction",
                        tx_signature=signature,
                        slot=slot,
                        error=status.get("err"),
                    )
                    raise TransactionFailedError(
                        f"Transaction {signature} failed on-chain: {status.get('err')}",
                        signature=signature,
                        slot=slot,
                        error=status.get("err"),
                    )
                observed = observed_commitment(status)
                if commitment_reached(observed, target):
                    log_event(
                        self._logger,
                        level="info",
                        event="tx_confirmed",
                        message="Transaction reached the target commitment",
                        tx_signature=signature,
                        commitment=observed,
                        slot=slot,
                        polls=polls,
                    )
                    return ConfirmationResult(signature=signature, landed=True, slot=slot, commitment=observed)
            elif last_valid_block_height is not None:
                block_height = await guarded_call(
                    self.fetch_block_height,
                    logger=self._logger,
                    event="block_height_fetch_failed",
                    message="Failed to fetch block height for expiry check",
                    tx_signature=signature,
                )
                if block_height is not None and block_height > last_valid_block_height:
                    raise BlockhashExpiredError(
                        f"Transaction {signature} was never seen and its blockhash expired.",
                        signature=signature,
                        last_valid_block_height=last_valid_block_height,
                    )

            log_event(
                self._logger,
                level="debug",
                event="tx_confirm_pending",
                message="Transaction not yet at target commitment",
                tx_signature=signature,
                poll=polls,
                observed=observed_commitment(status) if status else None,
                target=target,
            )

            if budget.expired:
                break
            delay = budget.clamp(self._poll_interval_seconds)
            if stop_event is not None:
                if await wait_with_stop(stop_event, delay):
                    break
            else:
                await self._sleep(delay)

        log_event(
            self._logger,
            level="warning",
            event="tx_confirm_timeout",
            message="Confirmation deadline elapsed without a conclusive ledger status",
            tx_signature=signature,
            polls=polls,
            last_status=last_status,
        )
        raise ConfirmationTimeoutError(
            f"Transaction {signature} did not reach '{target}' before the deadline; outcome unknown.",
            signature=signature,
            last_status=last_status,
        )
