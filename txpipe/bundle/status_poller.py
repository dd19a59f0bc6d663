from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from txpipe.common import Deadline, log_event, wait_with_stop
from txpipe.errors import RpcMethodError

from .bundle_types import BundleResult, BundleStatus, bundle_explorer_url
from .relay_client import BundleRelayClient

_TERMINAL_LEVELS = {
    BundleStatus.LANDED: "info",
    BundleStatus.FAILED: "error",
    BundleStatus.INVALID: "error",
}


class BundleStatusPoller:
    """Pending -> Landed | Failed | Invalid, or Timeout when the deadline passes first."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        relay: BundleRelayClient,
        initial_delay_seconds: float = 5.0,
        poll_interval_seconds: float = 3.0,
        timeout_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._relay = relay
        self._initial_delay_seconds = max(0.0, float(initial_delay_seconds))
        self._poll_interval_seconds = max(0.01, float(poll_interval_seconds))
        self._timeout_seconds = max(0.0, float(timeout_seconds))
        self._sleep = sleep
        self._clock = clock

    async def _pause(self, seconds: float, stop_event: asyncio.Event | None) -> bool:
        if stop_event is not None:
            return await wait_with_stop(stop_event, seconds)
        if seconds > 0:
            await self._sleep(seconds)
        return False

    async def poll(
        self,
        bundle_id: str,
        *,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> BundleResult:
        timeout = self._timeout_seconds if timeout_seconds is None else max(0.0, float(timeout_seconds))
        budget = Deadline.after(timeout, clock=self._clock)
        if deadline is not None and deadline.expires_at is not None:
            budget = deadline if budget.expires_at is None or deadline.expires_at < budget.expires_at else budget

        endpoints = self._relay.status_endpoints(bundle_id)
        endpoint_index = 0
        polls = 0

        # Freshly submitted bundles are not visible to status queries right away.
        stopped = await self._pause(budget.clamp(self._initial_delay_seconds), stop_event)

        while not stopped:
            endpoint = endpoints[endpoint_index % len(endpoints)]
            polls += 1
            try:
                status, landed_slot = await asyncio.shield(
                    self._relay.get_bundle_status(bundle_id, endpoint=endpoint)
                )
            except RpcMethodError as error:
                endpoint_index += 1
                status, landed_slot = BundleStatus.PENDING, None
                log_event(
                    self._logger,
                    level="warning",
                    event="bundle_status_poll_failed",
                    message="Bundle status lookup failed; rotating relay endpoint",
                    bundle_id=bundle_id,
                    endpoint=endpoint,
                    poll=polls,
                    error=str(error),
                )

            if status is BundleStatus.PENDING:
                log_event(
                    self._logger,
                    level="debug",
                    event="bundle_pending",
                    message="Bundle still pending",
                    bundle_id=bundle_id,
                    poll=polls,
                )
            elif status in _TERMINAL_LEVELS:
                log_event(
                    self._logger,
                    level=_TERMINAL_LEVELS[status],
                    event="bundle_terminal",
                    message="Relay reported a terminal bundle status",
                    bundle_id=bundle_id,
                    status=status.value,
                    landed_slot=landed_slot,
                    polls=polls,
                )
                return BundleResult(
                    bundle_id=bundle_id,
                    status=status,
                    landed_slot=landed_slot,
                    error=None if status is BundleStatus.LANDED else f"Relay reported bundle {status.value}",
                    polls=polls,
                    explorer_url=bundle_explorer_url(bundle_id),
                )
            else:
                raise ValueError(f"Unhandled relay bundle status: {status!r}")

            if budget.expired:
                break
            stopped = await self._pause(budget.clamp(self._poll_interval_seconds), stop_event)

        log_event(
            self._logger,
            level="warning",
            event="bundle_poll_timeout",
            message="No terminal bundle status observed before the deadline; outcome unknown",
            bundle_id=bundle_id,
            polls=polls,
            stopped=stopped,
        )
        return BundleResult(
            bundle_id=bundle_id,
            status=BundleStatus.TIMEOUT,
            error=(
                f"Bundle did not reach a terminal status within {timeout:g}s; "
                "verify the transaction signatures against the ledger."
            ),
            polls=polls,
            explorer_url=bundle_explorer_url(bundle_id),
        )
