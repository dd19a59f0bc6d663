from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Iterable, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from txpipe.common import log_event
from txpipe.errors import BundleBuildError, BundleTipPlacementError, MergeConflictError
from txpipe.types import SignedTransaction

from .bundle_types import (
    FALLBACK_TIP_ACCOUNTS,
    MAX_BUNDLE_TRANSACTIONS,
    MINIMUM_TIP_LAMPORTS,
    InstructionSequence,
    MergedInstructions,
    TipPayment,
)

COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
MAX_COMPUTE_UNIT_LIMIT = 1_400_000
MAX_TRANSACTION_BYTES = 1232

_SET_COMPUTE_UNIT_LIMIT = 2
_SET_COMPUTE_UNIT_PRICE = 3
_SYSTEM_TRANSFER = (2).to_bytes(4, "little")


def decode_instruction(raw: Any, *, section: str) -> Instruction:
    if not isinstance(raw, dict):
        raise BundleBuildError(f"Invalid instruction payload in {section}: {raw}")

    program_id = str(raw.get("programId") or "").strip()
    if not program_id:
        raise BundleBuildError(f"Instruction programId is missing in {section}")

    raw_accounts = raw.get("accounts")
    if not isinstance(raw_accounts, list):
        raise BundleBuildError(f"Instruction accounts are missing in {section}")

    metas: list[AccountMeta] = []
    for idx, account in enumerate(raw_accounts):
        if not isinstance(account, dict):
            raise BundleBuildError(f"Instruction account[{idx}] is invalid in {section}: {account}")
        pubkey = str(account.get("pubkey") or "").strip()
        if not pubkey:
            raise BundleBuildError(f"Instruction account[{idx}] pubkey is missing in {section}")
        metas.append(
            AccountMeta(
                pubkey=Pubkey.from_string(pubkey),
                is_signer=bool(account.get("isSigner")),
                is_writable=bool(account.get("isWritable")),
            )
        )

    try:
        data = base64.b64decode(str(raw.get("data") or ""), validate=True)
    except (binascii.Error, ValueError) as error:
        raise BundleBuildError(f"Instruction data decode failed in {section}: {error}") from error

    return Instruction(Pubkey.from_string(program_id), data, metas)


def decode_instruction_sequence(
    raw: Any,
    *,
    label: str,
    co_signers: Sequence[Keypair] = (),
) -> InstructionSequence:
    if not isinstance(raw, list):
        raise BundleBuildError(f"Instruction list is invalid in {label}: {raw}")
    return InstructionSequence(
        label=label,
        instructions=tuple(decode_instruction(item, section=f"{label}[{index}]") for index, item in enumerate(raw)),
        co_signers=tuple(co_signers),
    )


def compute_budget_value(instruction: Instruction) -> tuple[str, int] | None:
    if instruction.program_id != COMPUTE_BUDGET_PROGRAM_ID:
        return None
    data = bytes(instruction.data)
    if len(data) >= 5 and data[0] == _SET_COMPUTE_UNIT_LIMIT:
        return "limit", int.from_bytes(data[1:5], "little")
    if len(data) >= 9 and data[0] == _SET_COMPUTE_UNIT_PRICE:
        return "price", int.from_bytes(data[1:9], "little")
    return None


def is_tip_instruction(instruction: Instruction, tip_accounts: set[Pubkey]) -> bool:
    if instruction.program_id != SYSTEM_PROGRAM_ID:
        return False
    accounts = instruction.accounts
    return bytes(instruction.data)[:4] == _SYSTEM_TRANSFER and len(accounts) >= 2 and accounts[1].pubkey in tip_accounts


def _compiled_tip_positions(tx: VersionedTransaction, tip_accounts: set[Pubkey]) -> list[int]:
    message = tx.message
    keys = list(message.account_keys)
    positions: list[int] = []
    for position, compiled in enumerate(message.instructions):
        if compiled.program_id_index >= len(keys) or keys[compiled.program_id_index] != SYSTEM_PROGRAM_ID:
            continue
        account_indexes = list(compiled.accounts)
        if bytes(compiled.data)[:4] != _SYSTEM_TRANSFER or len(account_indexes) < 2:
            continue
        destination = account_indexes[1]
        if destination < len(keys) and keys[destination] in tip_accounts:
            positions.append(position)
    return positions


def verify_tip_placement(transactions: Sequence[SignedTransaction], tip_accounts: Iterable[str | Pubkey]) -> None:
    """The only tip transfer in a bundle must be the last instruction of the last transaction."""
    if not 1 <= len(transactions) <= MAX_BUNDLE_TRANSACTIONS:
        raise BundleBuildError(
            f"A bundle carries 1-{MAX_BUNDLE_TRANSACTIONS} transactions, got {len(transactions)}."
        )
    accounts = {item if isinstance(item, Pubkey) else Pubkey.from_string(item) for item in tip_accounts}
    last_index = len(transactions) - 1
    for index, signed in enumerate(transactions):
        tx = signed.transaction()
        positions = _compiled_tip_positions(tx, accounts)
        if index < last_index and positions:
            raise BundleTipPlacementError(f"Transaction {index} pays a tip before the final transaction.")
        if index == last_index:
            final_position = len(tx.message.instructions) - 1
            if positions != [final_position]:
                raise BundleTipPlacementError(
                    "The final transaction must end with exactly one tip transfer "
                    f"(tip positions={positions}, last instruction={final_position})."
                )


def apply_signatures(tx: VersionedTransaction, keypairs: Sequence[Keypair]) -> VersionedTransaction:
    """Fill the signature slots owned by ``keypairs``, keeping every other slot as-is."""
    if not keypairs:
        return tx
    message = tx.message
    required = message.header.num_required_signatures
    signer_keys = list(message.account_keys[:required])
    signatures = list(tx.signatures)
    payload = to_bytes_versioned(message) if isinstance(message, MessageV0) else bytes(message)
    for keypair in keypairs:
        pubkey = keypair.pubkey()
        if pubkey not in signer_keys:
            raise MergeConflictError(f"Co-signer {pubkey} is not a required signer of the transaction.")
        signatures[signer_keys.index(pubkey)] = keypair.sign_message(payload)
    return VersionedTransaction.populate(message, signatures)


class AtomicBundleBuilder:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        tip_accounts: Iterable[str] = FALLBACK_TIP_ACCOUNTS,
        compute_unit_margin_ratio: float = 0.1,
        max_compute_unit_limit: int = MAX_COMPUTE_UNIT_LIMIT,
    ) -> None:
        self._logger = logger
        self._tip_accounts = {Pubkey.from_string(item) for item in tip_accounts}
        self._margin_ratio = max(0.0, float(compute_unit_margin_ratio))
        self._max_compute_unit_limit = int(max_compute_unit_limit)

    def register_tip_accounts(self, tip_accounts: Iterable[str | Pubkey]) -> None:
        for item in tip_accounts:
            self._tip_accounts.add(item if isinstance(item, Pubkey) else Pubkey.from_string(item))

    def is_tip(self, instruction: Instruction) -> bool:
        return is_tip_instruction(instruction, self._tip_accounts)

    def _resolve_compute_limit(self, requested: list[int]) -> int | None:
        if not requested:
            return None
        highest = max(requested)
        limit = highest + int(round(highest * self._margin_ratio))
        if limit > self._max_compute_unit_limit:
            raise MergeConflictError(
                f"Requested compute budget {highest} plus margin ({limit}) exceeds the per-transaction cap "
                f"{self._max_compute_unit_limit}."
            )
        return limit

    def merge(self, sequences: Sequence[InstructionSequence]) -> MergedInstructions:
        if not sequences:
            raise MergeConflictError("At least one instruction sequence is required.")

        limits: list[int] = []
        prices: list[int] = []
        body: list[Instruction] = []
        for sequence in sequences:
            for instruction in sequence.instructions:
                budget = compute_budget_value(instruction)
                if budget is not None:
                    kind, value = budget
                    (limits if kind == "limit" else prices).append(value)
                    continue
                if self.is_tip(instruction):
                    continue
                body.append(instruction)

        return MergedInstructions(
            instructions=tuple(body),
            compute_unit_limit=self._resolve_compute_limit(limits),
            compute_unit_price=max(prices) if prices else None,
            sources=tuple(sequence.label for sequence in sequences),
        )

    @staticmethod
    def tip_instruction(tip: TipPayment) -> Instruction:
        return transfer(
            TransferParams(
                from_pubkey=tip.payer,
                to_pubkey=tip.tip_account,
                lamports=max(MINIMUM_TIP_LAMPORTS, int(tip.lamports)),
            )
        )

    def finalize(self, merged: MergedInstructions, tip: TipPayment | None = None) -> list[Instruction]:
        instructions: list[Instruction] = []
        if merged.compute_unit_limit is not None:
            instructions.append(set_compute_unit_limit(merged.compute_unit_limit))
        if merged.compute_unit_price is not None:
            instructions.append(set_compute_unit_price(merged.compute_unit_price))
        instructions.extend(merged.instructions)
        if tip is not None:
            if tip.tip_account not in self._tip_accounts:
                raise BundleTipPlacementError(f"{tip.tip_account} is not a known tip account.")
            instructions.append(self.tip_instruction(tip))
        return instructions

    def compile(
        self,
        *,
        payer: Pubkey,
        instructions: Sequence[Instruction],
        blockhash: str,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> VersionedTransaction:
        message = MessageV0.try_compile(payer, list(instructions), list(lookup_tables), Hash.from_string(blockhash))
        unsigned = VersionedTransaction.populate(
            message,
            [Signature.default()] * message.header.num_required_signatures,
        )
        size = len(bytes(unsigned))
        if size > MAX_TRANSACTION_BYTES:
            raise BundleBuildError(f"Merged transaction is {size} bytes; the ledger limit is {MAX_TRANSACTION_BYTES}.")
        return unsigned

    def build_transaction(
        self,
        *,
        payer: Pubkey,
        sequences: Sequence[InstructionSequence],
        blockhash: str,
        tip: TipPayment | None = None,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
    ) -> SignedTransaction:
        merged = self.merge(sequences)
        tx = self.compile(
            payer=payer,
            instructions=self.finalize(merged, tip),
            blockhash=blockhash,
            lookup_tables=lookup_tables,
        )
        co_signers = [keypair for sequence in sequences for keypair in sequence.co_signers]
        tx = apply_signatures(tx, co_signers)

        log_event(
            self._logger,
            level="info",
            event="atomic_tx_built",
            message="Merged instruction sequences into one atomic transaction",
            sources=list(merged.sources),
            instruction_count=len(tx.message.instructions),
            compute_unit_limit=merged.compute_unit_limit,
            co_signers=[str(keypair.pubkey()) for keypair in co_signers],
            tip_lamports=tip.lamports if tip else None,
        )
        return SignedTransaction.from_transaction(tx)

    def build_bundle(
        self,
        *,
        payer: Pubkey,
        groups: Sequence[Sequence[InstructionSequence]],
        blockhash: str,
        tip: TipPayment,
    ) -> list[SignedTransaction]:
        if not 1 <= len(groups) <= MAX_BUNDLE_TRANSACTIONS:
            raise BundleBuildError(f"A bundle carries 1-{MAX_BUNDLE_TRANSACTIONS} transactions, got {len(groups)}.")

        last_index = len(groups) - 1
        transactions = [
            self.build_transaction(
                payer=payer,
                sequences=group,
                blockhash=blockhash,
                tip=tip if index == last_index else None,
            )
            for index, group in enumerate(groups)
        ]
        verify_tip_placement(transactions, self._tip_accounts)
        return transactions
