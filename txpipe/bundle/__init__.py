from .bundle_builder import (
    AtomicBundleBuilder,
    apply_signatures,
    decode_instruction,
    decode_instruction_sequence,
    verify_tip_placement,
)
from .bundle_types import (
    FALLBACK_TIP_ACCOUNTS,
    MINIMUM_TIP_LAMPORTS,
    Bundle,
    BundleResult,
    BundleStatus,
    InstructionSequence,
    MergedInstructions,
    TipPayment,
    bundle_explorer_url,
)
from .relay_client import BundleRelayClient
from .status_poller import BundleStatusPoller

__all__ = [
    "AtomicBundleBuilder",
    "Bundle",
    "BundleRelayClient",
    "BundleResult",
    "BundleStatus",
    "BundleStatusPoller",
    "FALLBACK_TIP_ACCOUNTS",
    "InstructionSequence",
    "MINIMUM_TIP_LAMPORTS",
    "MergedInstructions",
    "TipPayment",
    "apply_signatures",
    "bundle_explorer_url",
    "decode_instruction",
    "decode_instruction_sequence",
    "verify_tip_placement",
]
