from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from solders.signature import Signature
from solders.pubkey import Pubkey

from txpipe.common import Deadline, log_event
from txpipe.errors import (
    NoWalletAvailableError,
    SigningError,
    SigningTimeoutError,
    UserRejectedError,
    WalletUnavailableError,
)
from txpipe.rpc.endpoints import wallet_chain_id
from txpipe.types import SignedTransaction, decode_transaction

from .types import EmbeddedWallet, ExternalWallet, WalletHandle, is_valid_address

REJECTION_MARKERS = ("reject", "denied", "declined", "cancel")
UNAVAILABLE_MARKERS = ("not connected", "unavailable", "not found", "not supported", "disconnected")
_ERROR_PRECEDENCE = (UserRejectedError, SigningTimeoutError, WalletUnavailableError)


def select_wallet(
    external: Sequence[ExternalWallet],
    embedded: Sequence[EmbeddedWallet],
    *,
    platform_wallet_name: str = "privy",
) -> WalletHandle:
    for wallet in external:
        if is_valid_address(wallet.address):
            return wallet

    wanted = platform_wallet_name.strip().lower()
    for wallet in embedded:
        if not is_valid_address(wallet.address):
            continue
        if wallet.is_platform_wallet or (wanted and wallet.name.strip().lower() == wanted):
            return wallet

    raise NoWalletAvailableError("No connected external wallet or platform wallet is available.")


@dataclass(slots=True, frozen=True)
class SigningOutcome:
    signature: str
    transaction: SignedTransaction | None
    submitted: bool
    interface: str


def classify_wallet_error(error: Exception, *, wallet_kind: str) -> SigningError:
    if isinstance(error, SigningError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return SigningTimeoutError("Wallet did not respond before the signing timeout.", wallet_kind=wallet_kind)
    message = str(error).lower()
    if any(marker in message for marker in REJECTION_MARKERS):
        return UserRejectedError(f"User rejected the signing request: {error}", wallet_kind=wallet_kind)
    if isinstance(error, (AttributeError, NotImplementedError)) or any(
        marker in message for marker in UNAVAILABLE_MARKERS
    ):
        return WalletUnavailableError(f"Wallet interface is unavailable: {error}", wallet_kind=wallet_kind)
    return SigningError(f"Wallet signing failed: {error}", wallet_kind=wallet_kind)


class WalletSigner:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        network: str,
        sign_timeout_seconds: float = 120.0,
    ) -> None:
        self._logger = logger
        self._chain_id = wallet_chain_id(network)
        self._sign_timeout_seconds = max(0.1, float(sign_timeout_seconds))

    async def sign(
        self,
        payload: bytes,
        handle: WalletHandle,
        *,
        allow_submit: bool = False,
        require_same_message: bool = False,
        deadline: Deadline | None = None,
    ) -> SigningOutcome:
        """Sign ``payload`` via the handle's primary interface, then its fallback.

        ``allow_submit`` lets an embedded wallet sign-and-send as its fallback; the
        returned outcome is then already submitted and only needs confirmation.
        Each interface gets the signing timeout, clamped to ``deadline``.
        """
        interfaces = self._interfaces(payload, handle, allow_submit=allow_submit)
        attempts: list[tuple[str, Exception]] = []

        for name, action in interfaces:
            try:
                timeout = self._sign_timeout_seconds
                if deadline is not None:
                    timeout = deadline.clamp(timeout)
                outcome = await asyncio.wait_for(action(), timeout=timeout)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                classified = classify_wallet_error(error, wallet_kind=handle.kind)
                attempts.append((name, classified))
                log_event(
                    self._logger,
                    level="warning",
                    event="wallet_sign_interface_failed",
                    message="Wallet signing interface failed",
                    wallet_kind=handle.kind,
                    interface=name,
                    error_type=type(classified).__name__,
                    error=str(error),
                )
                continue

            if outcome.transaction is not None:
                self._check_signed(payload, outcome.transaction, handle, require_same_message=require_same_message)
            log_event(
                self._logger,
                level="info",
                event="wallet_signed",
                message="Wallet produced a signature",
                wallet_kind=handle.kind,
                interface=name,
                submitted=outcome.submitted,
                tx_signature=outcome.signature,
            )
            return outcome

        raise self._final_error(handle, attempts)

    async def sign_transaction(
        self,
        payload: bytes,
        handle: WalletHandle,
        *,
        deadline: Deadline | None = None,
    ) -> SignedTransaction:
        outcome = await self.sign(payload, handle, allow_submit=False, require_same_message=True, deadline=deadline)
        if outcome.transaction is None:
            raise SigningError("Wallet did not return signed transaction bytes.", wallet_kind=handle.kind)
        return outcome.transaction

    def _interfaces(
        self,
        payload: bytes,
        handle: WalletHandle,
        *,
        allow_submit: bool,
    ) -> list[tuple[str, Callable[[], Awaitable[SigningOutcome]]]]:
        if isinstance(handle, ExternalWallet):
            return [
                ("signer.sign_transaction", lambda: self._sign_with(handle.signer, payload, "signer.sign_transaction")),
                (
                    "connector.sign_transaction",
                    lambda: self._sign_with(handle.connector, payload, "connector.sign_transaction"),
                ),
            ]
        if isinstance(handle, EmbeddedWallet):
            interfaces: list[tuple[str, Callable[[], Awaitable[SigningOutcome]]]] = [
                (
                    "provider.sign_transaction",
                    lambda: self._sign_with(handle.provider, payload, "provider.sign_transaction"),
                ),
                (
                    "fallback_signer.sign_transaction",
                    lambda: self._sign_with(handle.fallback_signer, payload, "fallback_signer.sign_transaction"),
                ),
            ]
            if allow_submit:
                interfaces.append(
                    ("provider.sign_and_send_transaction", lambda: self._sign_and_send(handle, payload)),
                )
            return interfaces
        raise TypeError(f"Unsupported wallet handle: {type(handle).__name__}")

    @staticmethod
    async def _sign_with(signer: object | None, payload: bytes, name: str) -> SigningOutcome:
        if signer is None:
            raise WalletUnavailableError(f"Wallet does not expose {name}.")
        signed_bytes = await signer.sign_transaction(payload)  # type: ignore[attr-defined]
        signed = SignedTransaction(payload=bytes(signed_bytes))
        return SigningOutcome(signature=signed.signature, transaction=signed, submitted=False, interface=name)

    async def _sign_and_send(self, handle: EmbeddedWallet, payload: bytes) -> SigningOutcome:
        signature = await handle.provider.sign_and_send_transaction(payload, handle.address, self._chain_id)
        signature = str(signature or "").strip()
        if not signature:
            raise SigningError("sign_and_send_transaction returned no signature.", wallet_kind=handle.kind)
        return SigningOutcome(
            signature=signature,
            transaction=None,
            submitted=True,
            interface="provider.sign_and_send_transaction",
        )

    def _check_signed(
        self,
        payload: bytes,
        signed: SignedTransaction,
        handle: WalletHandle,
        *,
        require_same_message: bool,
    ) -> None:
        original = decode_transaction(payload)
        tx = signed.transaction()
        if tx.message != original.message:
            if require_same_message:
                raise SigningError(
                    "Wallet altered the transaction message; co-signatures would no longer verify.",
                    wallet_kind=handle.kind,
                )
            log_event(
                self._logger,
                level="warning",
                event="wallet_modified_message",
                message="Wallet returned a transaction with a different message than requested",
                wallet_kind=handle.kind,
            )

        signer_keys = list(tx.message.account_keys[: tx.message.header.num_required_signatures])
        wallet_key = Pubkey.from_string(handle.address)
        if wallet_key not in signer_keys:
            raise SigningError("Wallet address is not a required signer of this transaction.", wallet_kind=handle.kind)
        if tx.signatures[signer_keys.index(wallet_key)] == Signature.default():
            raise SigningError("Wallet returned the transaction without its signature.", wallet_kind=handle.kind)

    @staticmethod
    def _final_error(handle: WalletHandle, attempts: list[tuple[str, Exception]]) -> SigningError:
        tried = ", ".join(name for name, _ in attempts)
        for error_type in _ERROR_PRECEDENCE:
            for _, error in attempts:
                if isinstance(error, error_type):
                    return error_type(
                        f"All wallet signing interfaces failed ({tried}): {error}",
                        wallet_kind=handle.kind,
                        attempts=attempts,
                    )
        last = attempts[-1][1] if attempts else None
        return SigningError(
            f"All wallet signing interfaces failed ({tried}): {last}",
            wallet_kind=handle.kind,
            attempts=attempts,
        )
