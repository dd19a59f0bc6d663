from .signer import SigningOutcome, WalletSigner, classify_wallet_error, select_wallet
from .types import (
    EmbeddedWallet,
    EmbeddedWalletProvider,
    ExternalWallet,
    TransactionSigner,
    WalletHandle,
    is_valid_address,
)

__all__ = [
    "EmbeddedWallet",
    "EmbeddedWalletProvider",
    "ExternalWallet",
    "SigningOutcome",
    "TransactionSigner",
    "WalletHandle",
    "WalletSigner",
    "classify_wallet_error",
    "is_valid_address",
    "select_wallet",
]
