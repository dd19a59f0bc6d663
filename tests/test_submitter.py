from __future__ import annotations

import logging
import unittest

from solders.keypair import Keypair

from txpipe.errors import RpcMethodError, SignatureMismatchError, SubmissionError, SubmissionExhaustedError
from txpipe.rpc import ConfirmationWaiter, JsonRpcClient, RPCEndpointPool, TransactionSubmitter, classify_send_error
from txpipe.types import SignedTransaction

from tests.fakes import BLOCKHASH, FakeClock, FakeTransport, http_status, rpc_error, rpc_result, signed_transfer

PRIMARY = "https://primary.example"
BACKUP = "https://backup.example"


class ClassifySendErrorTests(unittest.TestCase):
    def _error(self, message: str, *, status: int | None = 200, code: int | None = None, data=None) -> RpcMethodError:
        return RpcMethodError(message, method="sendTransaction", endpoint=PRIMARY, status=status, code=code, data=data)

    def test_connection_failure_is_transient(self) -> None:
        self.assertTrue(classify_send_error(self._error("reset", status=None), skip_preflight=False).transient)

    def test_rate_limit_is_transient(self) -> None:
        self.assertTrue(classify_send_error(self._error("Too many requests", status=429), skip_preflight=True).transient)

    def test_preflight_failure_is_transient(self) -> None:
        error = self._error("Transaction simulation failed: Blockhash not found", code=-32002)
        self.assertTrue(classify_send_error(error, skip_preflight=False).transient)

    def test_insufficient_funds_is_permanent(self) -> None:
        error = self._error(
            "Transaction simulation failed",
            code=-32002,
            data={"err": "InsufficientFundsForRent", "logs": ["Transfer: insufficient lamports 10, need 5000"]},
        )
        self.assertFalse(classify_send_error(error, skip_preflight=False).transient)

    def test_malformed_transaction_is_permanent(self) -> None:
        error = self._error("failed to deserialize solana_sdk::transaction::versioned::VersionedTransaction", code=-32602)
        classified = classify_send_error(error, skip_preflight=False)
        self.assertIsInstance(classified, SubmissionError)
        self.assertFalse(classified.transient)

    def test_only_endpoint_misbehaviour_counts_against_the_endpoint(self) -> None:
        self.assertTrue(classify_send_error(self._error("reset", status=None), skip_preflight=False).endpoint_fault)
        self.assertTrue(classify_send_error(self._error("throttled", status=429), skip_preflight=True).endpoint_fault)
        self.assertTrue(classify_send_error(self._error("bad gateway", status=502), skip_preflight=True).endpoint_fault)
        preflight = self._error("Transaction simulation failed: Blockhash not found", code=-32002)
        self.assertFalse(classify_send_error(preflight, skip_preflight=False).endpoint_fault)


class TransactionSubmitterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.submitter")
        self.clock = FakeClock()
        self.payer = Keypair()
        self.signed = SignedTransaction.from_transaction(signed_transfer(self.payer))
        self.handler = lambda url, method, params: rpc_result(self.signed.signature)
        self.transport = FakeTransport(lambda url, method, params: self.handler(url, method, params))
        self.rpc = JsonRpcClient(logger=self.logger, transport=self.transport)
        self.pool = RPCEndpointPool.from_urls([PRIMARY, BACKUP], logger=self.logger)
        self.submitter = TransactionSubmitter(
            logger=self.logger,
            rpc=self.rpc,
            pool=self.pool,
            attempts_per_endpoint=3,
            retry_backoff_seconds=0.5,
            sleep=self.clock.sleep,
        )

    async def test_healthy_endpoint_accepts_on_first_attempt(self) -> None:
        def _handler(url, method, params):
            if method == "sendTransaction":
                return rpc_result(self.signed.signature)
            if method == "getSignatureStatuses":
                return rpc_result(
                    {"context": {"slot": 10}, "value": [{"slot": 9, "confirmations": 1, "err": None, "confirmationStatus": "confirmed"}]}
                )
            raise AssertionError(method)

        self.handler = _handler
        signature = await self.submitter.submit(self.signed)

        waiter = ConfirmationWaiter(
            logger=self.logger,
            rpc=self.rpc,
            pool=self.pool,
            sleep=self.clock.sleep,
            clock=self.clock,
        )
        result = await waiter.wait(signature)

        sends = self.transport.calls("sendTransaction")
        self.assertEqual(signature, self.signed.signature)
        self.assertEqual(len(sends), 1)
        url, params = sends[0]
        self.assertEqual(url, PRIMARY)
        self.assertEqual(params[0], self.signed.to_base64())
        self.assertFalse(params[1]["skipPreflight"])
        self.assertEqual(params[1]["encoding"], "base64")
        self.assertEqual(params[1]["preflightCommitment"], "confirmed")
        self.assertTrue(result.landed)
        self.assertEqual(result.slot, 9)
        self.assertEqual(len(self.transport.calls("getSignatureStatuses")), 1)
        self.assertEqual(self.clock.sleeps, [])

    async def test_preflight_failure_retries_immediately_without_preflight(self) -> None:
        def _handler(url, method, params):
            if not params[1]["skipPreflight"]:
                return rpc_error(-32002, "Transaction simulation failed: Blockhash not found")
            return rpc_result(self.signed.signature)

        self.handler = _handler
        signature = await self.submitter.submit(self.signed)

        sends = self.transport.calls("sendTransaction")
        self.assertEqual(signature, self.signed.signature)
        self.assertEqual([params[1]["skipPreflight"] for _, params in sends], [False, True])
        self.assertEqual(self.clock.sleeps, [])

    async def test_permanent_failure_is_not_retried(self) -> None:
        self.handler = lambda url, method, params: rpc_error(
            -32002,
            "Transaction simulation failed: Attempt to debit an account but found no record of a prior credit.",
            data={"err": "InsufficientFunds"},
        )

        with self.assertRaises(SubmissionError) as ctx:
            await self.submitter.submit(self.signed)

        self.assertFalse(ctx.exception.transient)
        self.assertEqual(len(self.transport.requests), 1)
        self.assertEqual(self.clock.sleeps, [])

    async def test_every_endpoint_failing_exhausts_bounded_attempts(self) -> None:
        self.handler = lambda url, method, params: http_status(503, "upstream unavailable")

        with self.assertRaises(SubmissionExhaustedError) as ctx:
            await self.submitter.submit(self.signed)

        urls = [url for url, _ in self.transport.calls("sendTransaction")]
        self.assertEqual(urls, [PRIMARY] * 3 + [BACKUP] * 3)
        self.assertEqual(len(ctx.exception.attempts), 6)
        self.assertEqual(self.clock.sleeps, [0.5, 1.0, 2.0, 4.0])
        snapshot = {endpoint.url: endpoint.consecutive_failures for endpoint in await self.pool.snapshot()}
        self.assertEqual(snapshot, {PRIMARY: 3, BACKUP: 3})
        self.assertEqual(await self.pool.ordered(), [PRIMARY, BACKUP])

    async def test_simulation_rejections_leave_endpoint_health_alone(self) -> None:
        self.handler = lambda url, method, params: rpc_error(-32002, "Transaction simulation failed: Blockhash not found")

        with self.assertRaises(SubmissionExhaustedError):
            await self.submitter.submit(self.signed)

        self.assertEqual(len(self.transport.calls("sendTransaction")), 6)
        snapshot = {endpoint.url: endpoint.consecutive_failures for endpoint in await self.pool.snapshot()}
        self.assertEqual(snapshot, {PRIMARY: 0, BACKUP: 0})

    async def test_mismatched_signature_is_rejected(self) -> None:
        other = SignedTransaction.from_transaction(signed_transfer(Keypair()))
        self.handler = lambda url, method, params: rpc_result(other.signature)

        with self.assertRaises(SignatureMismatchError) as ctx:
            await self.submitter.submit(self.signed)

        self.assertEqual(ctx.exception.expected, self.signed.signature)
        self.assertEqual(ctx.exception.received, other.signature)
        self.assertEqual(len(self.transport.requests), 1)

    async def test_empty_signature_counts_as_transient(self) -> None:
        responses = iter([rpc_result(""), rpc_result(self.signed.signature)])
        self.handler = lambda url, method, params: next(responses)

        self.assertEqual(await self.submitter.submit(self.signed), self.signed.signature)
        self.assertEqual(len(self.transport.requests), 2)

    async def test_fetch_latest_blockhash(self) -> None:
        self.handler = lambda url, method, params: rpc_result(
            {"context": {"slot": 1}, "value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 150}}
        )

        blockhash, height = await self.submitter.fetch_latest_blockhash()

        self.assertEqual((blockhash, height), (BLOCKHASH, 150))
        url, params = self.transport.calls("getLatestBlockhash")[0]
        self.assertEqual(url, PRIMARY)
        self.assertEqual(params, [{"commitment": "confirmed"}])


if __name__ == "__main__":
    unittest.main()
