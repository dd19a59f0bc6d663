from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Literal, Sequence

from solders.pubkey import Pubkey

from txpipe.bundle import (
    AtomicBundleBuilder,
    Bundle,
    BundleRelayClient,
    BundleResult,
    BundleStatus,
    BundleStatusPoller,
    InstructionSequence,
    TipPayment,
)
from txpipe.common import Deadline, guarded_call, log_event
from txpipe.errors import BundleFailedError, BundleInvalidError, PreparationError
from txpipe.preparer import PreparerClient
from txpipe.rpc import (
    AiohttpTransport,
    ConfirmationWaiter,
    HttpTransport,
    JsonRpcClient,
    RPCEndpointPool,
    TransactionSubmitter,
)
from txpipe.rpc.confirmation import observed_commitment
from txpipe.runtime.settings import PipelineSettings
from txpipe.types import ConfirmationResult, UnsignedTransactionEnvelope, commitment_reached
from txpipe.wallet import WalletHandle, WalletSigner

LaunchOutcome = Literal["landed", "failed", "ambiguous"]
CONSUMED_ENVELOPE_MEMORY = 10_000


class TransactionPipeline:
    """Single-transaction path: sign, then submit, then confirm."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        signer: WalletSigner,
        submitter: TransactionSubmitter,
        confirmer: ConfirmationWaiter,
        consumed_memory: int = CONSUMED_ENVELOPE_MEMORY,
    ) -> None:
        self._logger = logger
        self._signer = signer
        self._submitter = submitter
        self._confirmer = confirmer
        # Most recently consumed envelope ids, oldest evicted first.
        self._consumed: OrderedDict[str, None] = OrderedDict()
        self._consumed_memory = max(1, int(consumed_memory))

    async def execute(
        self,
        envelope: UnsignedTransactionEnvelope,
        wallet: WalletHandle,
        *,
        commitment: str | None = None,
        deadline: Deadline | None = None,
        last_valid_block_height: int | None = None,
    ) -> ConfirmationResult:
        if envelope.envelope_id in self._consumed:
            raise PreparationError("Envelope was already consumed; request a freshly prepared transaction.")
        self._consumed[envelope.envelope_id] = None
        while len(self._consumed) > self._consumed_memory:
            self._consumed.popitem(last=False)

        outcome = await self._signer.sign(envelope.payload, wallet, allow_submit=True, deadline=deadline)
        if outcome.submitted:
            signature = outcome.signature
        else:
            if outcome.transaction is None:
                raise RuntimeError("Wallet signing produced neither bytes nor a submitted signature.")
            signature = await self._submitter.submit(outcome.transaction, deadline=deadline)

        log_event(
            self._logger,
            level="info",
            event="tx_awaiting_confirmation",
            message="Waiting for ledger confirmation",
            envelope_id=envelope.envelope_id,
            tx_signature=signature,
            wallet_kind=wallet.kind,
            submitted_by_wallet=outcome.submitted,
        )
        return await self._confirmer.wait(
            signature,
            commitment=commitment,
            deadline=deadline,
            last_valid_block_height=last_valid_block_height,
        )


@dataclass(slots=True, frozen=True)
class LaunchResult:
    bundle: BundleResult
    signatures: tuple[str, ...]
    outcome: LaunchOutcome
    reconciled: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["bundle"] = self.bundle.to_dict()
        return payload


class LaunchBundleFlow:
    """Atomic multi-transaction path for launch events."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        builder: AtomicBundleBuilder,
        relay: BundleRelayClient,
        poller: BundleStatusPoller,
        signer: WalletSigner,
        submitter: TransactionSubmitter,
        confirmer: ConfirmationWaiter,
        tip_lamports: int,
        commitment: str = "confirmed",
    ) -> None:
        self._logger = logger
        self._builder = builder
        self._relay = relay
        self._poller = poller
        self._signer = signer
        self._submitter = submitter
        self._confirmer = confirmer
        self._tip_lamports = tip_lamports
        self._commitment = commitment

    async def prepare_bundle(
        self,
        *,
        wallet: WalletHandle,
        groups: Sequence[Sequence[InstructionSequence]],
        tip_lamports: int | None = None,
        deadline: Deadline | None = None,
    ) -> Bundle:
        payer = Pubkey.from_string(wallet.address)
        blockhash, _ = await self._submitter.fetch_latest_blockhash(deadline=deadline)
        tip_account = await self._relay.select_tip_account()
        self._builder.register_tip_accounts([tip_account])
        lamports = self._relay.tip_amount(self._tip_lamports if tip_lamports is None else tip_lamports)

        partially_signed = self._builder.build_bundle(
            payer=payer,
            groups=groups,
            blockhash=blockhash,
            tip=TipPayment(payer=payer, tip_account=Pubkey.from_string(tip_account), lamports=lamports),
        )
        # Co-signers have already signed; the wallet adds its signature last.
        signed = [
            await self._signer.sign_transaction(tx.payload, wallet, deadline=deadline) for tx in partially_signed
        ]
        return Bundle(transactions=tuple(signed), tip_lamports=lamports)

    async def submit_and_confirm(
        self,
        bundle: Bundle,
        *,
        commitment: str | None = None,
        deadline: Deadline | None = None,
    ) -> LaunchResult:
        bundle_id = await self._relay.send_bundle(bundle, deadline=deadline)
        result = await self._poller.poll(bundle_id, deadline=deadline)
        signatures = tuple(bundle.signatures)

        if result.status is BundleStatus.LANDED:
            return LaunchResult(bundle=result, signatures=signatures, outcome="landed")
        if result.status is BundleStatus.FAILED:
            raise BundleFailedError(result.error or "Bundle failed.", bundle_id=bundle_id, reason=result.error)
        if result.status is BundleStatus.INVALID:
            raise BundleInvalidError(result.error or "Bundle invalid.", bundle_id=bundle_id, reason=result.error)
        if result.status is BundleStatus.TIMEOUT:
            return await self.reconcile(result, signatures, commitment=commitment)
        raise ValueError(f"Unexpected bundle status after polling: {result.status!r}")

    async def reconcile(
        self,
        result: BundleResult,
        signatures: Sequence[str],
        *,
        commitment: str | None = None,
    ) -> LaunchResult:
        target = commitment or self._commitment
        statuses = await guarded_call(
            lambda: self._confirmer.fetch_statuses(list(signatures)),
            logger=self._logger,
            event="bundle_reconcile_failed",
            message="Ledger lookup for bundle signatures failed",
            bundle_id=result.bundle_id,
        )

        outcome: LaunchOutcome = "ambiguous"
        if statuses is not None:
            entries = [statuses.get(signature) for signature in signatures]
            if any(entry is not None and entry.get("err") is not None for entry in entries):
                outcome = "failed"
            elif entries and all(
                entry is not None and commitment_reached(observed_commitment(entry), target) for entry in entries
            ):
                outcome = "landed"

        log_event(
            self._logger,
            level="info" if outcome == "landed" else "warning",
            event="bundle_reconciled",
            message="Reconciled timed-out bundle against the ledger",
            bundle_id=result.bundle_id,
            outcome=outcome,
            signatures=list(signatures),
        )
        return LaunchResult(bundle=result, signatures=tuple(signatures), outcome=outcome, reconciled=True)

    async def launch(
        self,
        *,
        wallet: WalletHandle,
        groups: Sequence[Sequence[InstructionSequence]],
        tip_lamports: int | None = None,
        commitment: str | None = None,
        deadline: Deadline | None = None,
    ) -> LaunchResult:
        bundle = await self.prepare_bundle(wallet=wallet, groups=groups, tip_lamports=tip_lamports, deadline=deadline)
        return await self.submit_and_confirm(bundle, commitment=commitment, deadline=deadline)


@dataclass(slots=True)
class PipelineComponents:
    transport: HttpTransport
    rpc: JsonRpcClient
    pool: RPCEndpointPool
    submitter: TransactionSubmitter
    confirmer: ConfirmationWaiter
    signer: WalletSigner
    builder: AtomicBundleBuilder
    relay: BundleRelayClient
    poller: BundleStatusPoller
    pipeline: TransactionPipeline
    launch_flow: LaunchBundleFlow
    preparer: PreparerClient | None = None


def build_components(
    settings: PipelineSettings,
    *,
    logger: logging.Logger,
    transport: HttpTransport | None = None,
) -> PipelineComponents:
    """Wire every component from ``settings``; without ``transport`` an aiohttp one is created."""
    if transport is None:
        transport = AiohttpTransport(timeout_seconds=settings.rpc_http_timeout_seconds)
    rpc = JsonRpcClient(logger=logger, transport=transport)
    pool = RPCEndpointPool.from_urls(
        settings.rpc_urls,
        logger=logger,
        unhealthy_after_failures=settings.rpc_unhealthy_after_failures,
    )
    submitter = TransactionSubmitter(
        logger=logger,
        rpc=rpc,
        pool=pool,
        attempts_per_endpoint=settings.rpc_attempts_per_endpoint,
        max_attempts=settings.effective_rpc_max_attempts,
        send_max_retries=settings.rpc_send_max_retries,
        preflight_commitment=settings.rpc_preflight_commitment,
        retry_backoff_seconds=settings.rpc_retry_backoff_seconds,
    )
    confirmer = ConfirmationWaiter(
        logger=logger,
        rpc=rpc,
        pool=pool,
        commitment=settings.confirm_commitment,
        timeout_seconds=settings.confirm_timeout_seconds,
        poll_interval_seconds=settings.confirm_poll_interval_seconds,
    )
    signer = WalletSigner(
        logger=logger,
        network=settings.network,
        sign_timeout_seconds=settings.wallet_sign_timeout_seconds,
    )
    builder = AtomicBundleBuilder(logger=logger, compute_unit_margin_ratio=settings.compute_unit_margin_ratio)
    relay = BundleRelayClient(
        logger=logger,
        rpc=rpc,
        endpoints=settings.jito_block_engine_urls,
        bundles_path=settings.jito_bundles_path,
        max_attempts=settings.jito_max_attempts,
        backoff_base_seconds=settings.jito_backoff_base_seconds,
        backoff_max_seconds=settings.jito_backoff_max_seconds,
    )
    poller = BundleStatusPoller(
        logger=logger,
        relay=relay,
        initial_delay_seconds=settings.bundle_poll_initial_delay_seconds,
        poll_interval_seconds=settings.bundle_poll_interval_seconds,
        timeout_seconds=settings.bundle_poll_timeout_seconds,
    )
    preparer = None
    if settings.preparer_url:
        preparer = PreparerClient(
            logger=logger,
            transport=transport,
            base_url=settings.preparer_url,
            network=settings.network,
        )
    return PipelineComponents(
        transport=transport,
        rpc=rpc,
        pool=pool,
        submitter=submitter,
        confirmer=confirmer,
        signer=signer,
        builder=builder,
        relay=relay,
        poller=poller,
        pipeline=TransactionPipeline(logger=logger, signer=signer, submitter=submitter, confirmer=confirmer),
        launch_flow=LaunchBundleFlow(
            logger=logger,
            builder=builder,
            relay=relay,
            poller=poller,
            signer=signer,
            submitter=submitter,
            confirmer=confirmer,
            tip_lamports=settings.jito_tip_lamports,
            commitment=settings.confirm_commitment,
        ),
        preparer=preparer,
    )
