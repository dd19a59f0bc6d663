from __future__ import annotations

import base64
import enum
from dataclasses import asdict, dataclass, field
from typing import Any

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from txpipe.types import SignedTransaction

MINIMUM_TIP_LAMPORTS = 1_000
MAX_BUNDLE_TRANSACTIONS = 5
JITO_EXPLORER_URL = "https://explorer.jito.wtf/bundle/{bundle_id}"

# Published Jito tip accounts, used when getTipAccounts is unreachable.
FALLBACK_TIP_ACCOUNTS: tuple[str, ...] = (
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
)


def bundle_explorer_url(bundle_id: str) -> str:
    return JITO_EXPLORER_URL.format(bundle_id=bundle_id)


class BundleStatus(str, enum.Enum):
    PENDING = "Pending"
    LANDED = "Landed"
    FAILED = "Failed"
    INVALID = "Invalid"
    TIMEOUT = "Timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not BundleStatus.PENDING

    @classmethod
    def from_relay(cls, raw: Any) -> "BundleStatus":
        """Map a relay-reported status string; unknown or missing values stay Pending."""
        value = str(raw or "").strip().lower()
        for status in (cls.PENDING, cls.LANDED, cls.FAILED, cls.INVALID):
            if status.value.lower() == value:
                return status
        return cls.PENDING


@dataclass(slots=True, frozen=True)
class TipPayment:
    payer: Pubkey
    tip_account: Pubkey
    lamports: int


@dataclass(slots=True, frozen=True)
class InstructionSequence:
    """Instructions produced by one source, with the single-use keypairs they need."""

    label: str
    instructions: tuple[Instruction, ...]
    co_signers: tuple[Keypair, ...] = ()


@dataclass(slots=True, frozen=True)
class MergedInstructions:
    instructions: tuple[Instruction, ...]
    compute_unit_limit: int | None
    compute_unit_price: int | None
    sources: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class Bundle:
    transactions: tuple[SignedTransaction, ...]
    tip_lamports: int

    @property
    def signatures(self) -> list[str]:
        return [tx.signature for tx in self.transactions]

    def encoded(self) -> list[str]:
        return [base64.b64encode(tx.payload).decode("ascii") for tx in self.transactions]


@dataclass(slots=True, frozen=True)
class BundleResult:
    bundle_id: str
    status: BundleStatus
    landed_slot: int | None = None
    error: str | None = None
    polls: int = 0
    explorer_url: str = field(default="")

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload
