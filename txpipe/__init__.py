from .pipeline import LaunchBundleFlow, LaunchResult, TransactionPipeline, build_components

__version__ = "0.1.0"

__all__ = [
    "LaunchBundleFlow",
    "LaunchResult",
    "TransactionPipeline",
    "build_components",
]
