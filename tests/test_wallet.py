from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock

from solders.keypair import Keypair

from txpipe.common import Deadline
from txpipe.errors import (
    NoWalletAvailableError,
    SigningError,
    SigningTimeoutError,
    UserRejectedError,
    WalletUnavailableError,
)
from txpipe.types import SignedTransaction
from txpipe.wallet import EmbeddedWallet, ExternalWallet, WalletSigner, is_valid_address, select_wallet

from tests.fakes import KeypairSigner, unsigned_transfer


class _SlowSigner:
    async def sign_transaction(self, transaction: bytes) -> bytes:
        await asyncio.sleep(5)
        return transaction


class WalletSelectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = AsyncMock()

    def test_address_validation(self) -> None:
        self.assertTrue(is_valid_address(str(Keypair().pubkey())))
        self.assertFalse(is_valid_address("0x" + "a" * 40))
        self.assertFalse(is_valid_address("short"))
        self.assertFalse(is_valid_address(""))

    def test_connected_external_wallet_wins(self) -> None:
        external = ExternalWallet(address=str(Keypair().pubkey()), signer=KeypairSigner(Keypair()))
        embedded = EmbeddedWallet(address=str(Keypair().pubkey()), provider=self.provider, is_platform_wallet=True)
        self.assertIs(select_wallet([external], [embedded]), external)

    def test_evm_style_external_wallet_is_skipped(self) -> None:
        external = ExternalWallet(address="0x" + "b" * 40)
        other = EmbeddedWallet(address=str(Keypair().pubkey()), provider=self.provider, name="Phantom Embedded")
        platform = EmbeddedWallet(address=str(Keypair().pubkey()), provider=self.provider, name="Privy")
        self.assertIs(select_wallet([external], [other, platform]), platform)

    def test_no_wallet_available(self) -> None:
        other = EmbeddedWallet(address=str(Keypair().pubkey()), provider=self.provider, name="other")
        with self.assertRaises(NoWalletAvailableError):
            select_wallet([], [other])


class WalletSignerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.signer = WalletSigner(logger=logging.getLogger("test.wallet"), network="devnet", sign_timeout_seconds=5)
        self.keypair = Keypair()
        self.address = str(self.keypair.pubkey())
        self.payload = unsigned_transfer(self.keypair)

    async def test_primary_interface_signs(self) -> None:
        primary = KeypairSigner(self.keypair)
        connector = KeypairSigner(self.keypair)
        wallet = ExternalWallet(address=self.address, signer=primary, connector=connector)

        outcome = await self.signer.sign(self.payload, wallet)

        self.assertFalse(outcome.submitted)
        self.assertEqual(outcome.interface, "signer.sign_transaction")
        self.assertTrue(outcome.transaction.is_fully_signed)
        self.assertEqual((primary.calls, connector.calls), (1, 0))

    async def test_falls_back_to_connector(self) -> None:
        primary = KeypairSigner(self.keypair, error=RuntimeError("wallet-standard feature missing"))
        connector = KeypairSigner(self.keypair)
        wallet = ExternalWallet(address=self.address, signer=primary, connector=connector)

        signed = await self.signer.sign_transaction(self.payload, wallet)

        self.assertIsInstance(signed, SignedTransaction)
        self.assertEqual(signed.present_signature_count, 1)
        self.assertEqual((primary.calls, connector.calls), (1, 1))

    async def test_both_interfaces_failing_raises_with_attempts(self) -> None:
        wallet = ExternalWallet(
            address=self.address,
            signer=KeypairSigner(self.keypair, error=RuntimeError("boom")),
            connector=KeypairSigner(self.keypair, error=RuntimeError("bang")),
        )

        with self.assertRaises(SigningError) as ctx:
            await self.signer.sign(self.payload, wallet)

        self.assertEqual(type(ctx.exception), SigningError)
        self.assertEqual(
            [name for name, _ in ctx.exception.attempts],
            ["signer.sign_transaction", "connector.sign_transaction"],
        )

    async def test_rejection_is_reported_as_user_rejection(self) -> None:
        wallet = ExternalWallet(
            address=self.address,
            signer=KeypairSigner(self.keypair, error=RuntimeError("User rejected the request.")),
        )

        with self.assertRaises(UserRejectedError) as ctx:
            await self.signer.sign(self.payload, wallet)

        self.assertEqual(len(ctx.exception.attempts), 2)
        self.assertIsInstance(ctx.exception.attempts[1][1], WalletUnavailableError)

    async def test_timeout(self) -> None:
        signer = WalletSigner(logger=logging.getLogger("test.wallet"), network="devnet", sign_timeout_seconds=0.1)
        wallet = ExternalWallet(address=self.address, signer=_SlowSigner())

        with self.assertRaises(SigningTimeoutError):
            await signer.sign(self.payload, wallet)

    async def test_signature_missing_from_returned_bytes(self) -> None:
        wallet = ExternalWallet(address=self.address, signer=AsyncMock(sign_transaction=AsyncMock(return_value=self.payload)))

        with self.assertRaises(SigningError):
            await self.signer.sign(self.payload, wallet)

    async def test_embedded_wallet_signs_and_sends_as_fallback(self) -> None:
        provider = AsyncMock()
        provider.sign_transaction.side_effect = NotImplementedError("sign only not supported")
        provider.sign_and_send_transaction.return_value = "sig-from-wallet"
        wallet = EmbeddedWallet(address=self.address, provider=provider, is_platform_wallet=True)

        outcome = await self.signer.sign(self.payload, wallet, allow_submit=True)

        self.assertTrue(outcome.submitted)
        self.assertIsNone(outcome.transaction)
        self.assertEqual(outcome.signature, "sig-from-wallet")
        provider.sign_and_send_transaction.assert_awaited_once_with(self.payload, self.address, "solana:devnet")

    async def test_embedded_wallet_never_submits_without_permission(self) -> None:
        provider = AsyncMock()
        provider.sign_transaction.side_effect = NotImplementedError("sign only not supported")
        wallet = EmbeddedWallet(address=self.address, provider=provider, is_platform_wallet=True)

        with self.assertRaises(WalletUnavailableError):
            await self.signer.sign(self.payload, wallet)

        provider.sign_and_send_transaction.assert_not_awaited()

    async def test_embedded_wallet_falls_back_to_raw_signer(self) -> None:
        provider = AsyncMock()
        provider.sign_transaction.side_effect = RuntimeError("hook session lost")
        fallback = KeypairSigner(self.keypair)
        wallet = EmbeddedWallet(address=self.address, provider=provider, fallback_signer=fallback, is_platform_wallet=True)

        signed = await self.signer.sign_transaction(self.payload, wallet)

        self.assertEqual(signed.present_signature_count, 1)
        self.assertEqual(fallback.calls, 1)
        provider.sign_transaction.assert_awaited_once_with(self.payload)
        provider.sign_and_send_transaction.assert_not_awaited()

    async def test_embedded_wallet_reports_both_sign_only_attempts(self) -> None:
        provider = AsyncMock()
        provider.sign_transaction.side_effect = RuntimeError("hook session lost")
        fallback = KeypairSigner(self.keypair, error=RuntimeError("raw wallet crashed"))
        wallet = EmbeddedWallet(address=self.address, provider=provider, fallback_signer=fallback)

        with self.assertRaises(SigningError) as ctx:
            await self.signer.sign_transaction(self.payload, wallet)

        self.assertEqual(
            [name for name, _ in ctx.exception.attempts],
            ["provider.sign_transaction", "fallback_signer.sign_transaction"],
        )

    async def test_deadline_shortens_signing_timeout(self) -> None:
        wallet = ExternalWallet(address=self.address, signer=_SlowSigner(), connector=_SlowSigner())
        loop = asyncio.get_running_loop()
        started = loop.time()

        with self.assertRaises(SigningTimeoutError):
            await self.signer.sign(self.payload, wallet, deadline=Deadline.after(0.1))

        self.assertLess(loop.time() - started, 2.0)

    async def test_expired_deadline_skips_waiting_on_wallet(self) -> None:
        primary = KeypairSigner(self.keypair)
        wallet = ExternalWallet(address=self.address, signer=primary)

        with self.assertRaises(SigningTimeoutError):
            await self.signer.sign_transaction(self.payload, wallet, deadline=Deadline.after(0))


if __name__ == "__main__":
    unittest.main()
