from __future__ import annotations

import asyncio
import logging
import unittest
from typing import Any

from txpipe.bundle import BundleRelayClient, BundleStatus, BundleStatusPoller
from txpipe.rpc import JsonRpcClient

from tests.fakes import FakeClock, FakeTransport, http_status, rpc_result

RELAY_A = "https://a.relay.example"
RELAY_B = "https://b.relay.example"


def _inflight(status: str | None, landed_slot: int | None = None):
    value: list[dict[str, Any]] = []
    if status is not None:
        value.append({"bundle_id": "bundle-1", "status": status, "landed_slot": landed_slot})
    return rpc_result({"context": {"slot": 10}, "value": value})


class BundleStatusPollerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.status_poller")
        self.clock = FakeClock()
        self.responses: list[Any] = [_inflight("Pending")]
        self.transport = FakeTransport(self._handle)
        relay = BundleRelayClient(
            logger=self.logger,
            rpc=JsonRpcClient(logger=self.logger, transport=self.transport),
            endpoints=[RELAY_A, RELAY_B],
            sleep=self.clock.sleep,
        )
        self.poller = BundleStatusPoller(
            logger=self.logger,
            relay=relay,
            initial_delay_seconds=5.0,
            poll_interval_seconds=3.0,
            timeout_seconds=30.0,
            sleep=self.clock.sleep,
            clock=self.clock,
        )

    def _handle(self, url: str, method: str, params: list[Any]):
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]

    async def test_landed_on_second_poll_stops_polling(self) -> None:
        self.responses = [_inflight(None), _inflight("Landed", 999)]

        result = await self.poller.poll("bundle-1")

        self.assertIs(result.status, BundleStatus.LANDED)
        self.assertEqual(result.landed_slot, 999)
        self.assertEqual(result.polls, 2)
        self.assertEqual(self.clock.sleeps, [5.0, 3.0])
        self.assertEqual(len(self.transport.requests), 2)
        self.assertEqual(result.explorer_url, "https://explorer.jito.wtf/bundle/bundle-1")

    async def test_pending_until_deadline_times_out(self) -> None:
        result = await self.poller.poll("bundle-1")

        self.assertIs(result.status, BundleStatus.TIMEOUT)
        self.assertEqual(result.polls, 10)
        self.assertEqual(self.clock.sleeps, [5.0] + [3.0] * 8 + [1.0])
        self.assertIn("verify the transaction signatures", result.error)

    async def test_invalid_bundle_is_terminal(self) -> None:
        self.responses = [_inflight("Invalid")]

        result = await self.poller.poll("bundle-1")

        self.assertIs(result.status, BundleStatus.INVALID)
        self.assertEqual(result.polls, 1)
        self.assertIsNotNone(result.error)

    async def test_failed_bundle_is_terminal(self) -> None:
        self.responses = [_inflight("Pending"), _inflight("Failed")]

        result = await self.poller.poll("bundle-1")

        self.assertIs(result.status, BundleStatus.FAILED)
        self.assertEqual(result.polls, 2)

    async def test_lookup_failure_rotates_endpoint(self) -> None:
        self.responses = [http_status(503, "unavailable"), _inflight("Landed", 12)]

        result = await self.poller.poll("bundle-1")

        self.assertIs(result.status, BundleStatus.LANDED)
        self.assertEqual(
            [url for url, _ in self.transport.calls("getInflightBundleStatuses")],
            [f"{RELAY_A}/api/v1/bundles", f"{RELAY_B}/api/v1/bundles"],
        )

    async def test_shorter_caller_timeout(self) -> None:
        result = await self.poller.poll("bundle-1", timeout_seconds=6.0)

        self.assertIs(result.status, BundleStatus.TIMEOUT)
        self.assertEqual(self.clock.sleeps, [5.0, 1.0])
        self.assertEqual(result.polls, 2)

    async def test_stop_event_yields_timeout_without_polling(self) -> None:
        stop = asyncio.Event()
        stop.set()

        result = await self.poller.poll("bundle-1", stop_event=stop)

        self.assertIs(result.status, BundleStatus.TIMEOUT)
        self.assertEqual(result.polls, 0)
        self.assertEqual(self.transport.requests, [])


if __name__ == "__main__":
    unittest.main()
