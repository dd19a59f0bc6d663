from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from solders.signature import Signature
from solders.transaction import VersionedTransaction

from txpipe.errors import PreparationError

Commitment = Literal["processed", "confirmed", "finalized"]

COMMITMENT_RANK: dict[str, int] = {
    "processed": 0,
    "confirmed": 1,
    "finalized": 2,
}


def commitment_reached(observed: str | None, target: str) -> bool:
    if observed is None:
        return False
    return COMMITMENT_RANK.get(observed, -1) >= COMMITMENT_RANK.get(target, 1)


def decode_transaction(raw: bytes) -> VersionedTransaction:
    try:
        return VersionedTransaction.from_bytes(raw)
    except Exception as error:
        raise PreparationError(f"Transaction bytes could not be decoded: {error}") from error


@dataclass(slots=True, frozen=True)
class UnsignedTransactionEnvelope:
    payload: bytes
    network: str
    expected_instruction_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    envelope_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_base64(
        cls,
        encoded: str,
        *,
        network: str,
        expected_instruction_count: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "UnsignedTransactionEnvelope":
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as error:
            raise PreparationError(f"serializedTransaction is not valid base64: {error}") from error
        if not payload:
            raise PreparationError("serializedTransaction is empty.")
        envelope = cls(
            payload=payload,
            network=network,
            expected_instruction_count=expected_instruction_count,
            metadata=dict(metadata or {}),
        )
        envelope.validate()
        return envelope

    def transaction(self) -> VersionedTransaction:
        return decode_transaction(self.payload)

    def validate(self) -> None:
        tx = self.transaction()
        if self.expected_instruction_count is None:
            return
        actual = len(tx.message.instructions)
        if actual != self.expected_instruction_count:
            raise PreparationError(
                "Prepared transaction instruction count mismatch: "
                f"expected={self.expected_instruction_count} actual={actual}"
            )

    def to_base64(self) -> str:
        return base64.b64encode(self.payload).decode("ascii")


@dataclass(slots=True, frozen=True)
class SignedTransaction:
    payload: bytes

    @classmethod
    def from_transaction(cls, tx: VersionedTransaction) -> "SignedTransaction":
        return cls(payload=bytes(tx))

    def transaction(self) -> VersionedTransaction:
        return VersionedTransaction.from_bytes(self.payload)

    @property
    def signature(self) -> str:
        signatures = self.transaction().signatures
        if not signatures:
            raise RuntimeError("Signed transaction has no signature slots.")
        return str(signatures[0])

    @property
    def present_signature_count(self) -> int:
        empty = Signature.default()
        return sum(1 for signature in self.transaction().signatures if signature != empty)

    @property
    def is_fully_signed(self) -> bool:
        tx = self.transaction()
        return self.present_signature_count == tx.message.header.num_required_signatures

    def to_base64(self) -> str:
        return base64.b64encode(self.payload).decode("ascii")


@dataclass(slots=True, frozen=True)
class SubmissionAttempt:
    endpoint: str
    skip_preflight: bool
    outcome: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class ConfirmationResult:
    signature: str
    landed: bool
    slot: int | None = None
    error: Any = None
    commitment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
