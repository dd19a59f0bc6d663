from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol, Union

from solders.pubkey import Pubkey


class TransactionSigner(Protocol):
    async def sign_transaction(self, transaction: bytes) -> bytes:
        ...


class EmbeddedWalletProvider(Protocol):
    async def sign_transaction(self, transaction: bytes) -> bytes:
        ...

    async def sign_and_send_transaction(self, transaction: bytes, address: str, chain_id: str) -> str:
        ...


@dataclass(slots=True, frozen=True)
class ExternalWallet:
    """Browser/extension wallet. ``signer`` is the wallet-standard signer, ``connector`` the adapter fallback."""

    address: str
    signer: TransactionSigner | None = None
    connector: TransactionSigner | None = None
    name: str = ""
    kind: Literal["external"] = "external"


@dataclass(slots=True, frozen=True)
class EmbeddedWallet:
    """Platform-embedded wallet. ``fallback_signer`` is the raw wallet object behind the provider hook."""

    address: str
    provider: EmbeddedWalletProvider
    fallback_signer: TransactionSigner | None = None
    is_platform_wallet: bool = False
    name: str = ""
    kind: Literal["embedded"] = "embedded"


WalletHandle = Union[ExternalWallet, EmbeddedWallet]


def is_valid_address(address: str) -> bool:
    value = (address or "").strip()
    if not value or value.lower().startswith("0x") or not 32 <= len(value) <= 44:
        return False
    try:
        Pubkey.from_string(value)
    except ValueError:
        return False
    return True
