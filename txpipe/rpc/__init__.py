from .client import AiohttpTransport, HttpResponse, HttpTransport, JsonRpcClient
from .confirmation import ConfirmationWaiter
from .endpoints import (
    DEFAULT_RPC_URLS,
    JITO_BLOCK_ENGINE_URLS,
    RPCEndpoint,
    RPCEndpointPool,
    normalize_network,
    wallet_chain_id,
)
from .submitter import TransactionSubmitter, classify_send_error

__all__ = [
    "AiohttpTransport",
    "ConfirmationWaiter",
    "DEFAULT_RPC_URLS",
    "HttpResponse",
    "HttpTransport",
    "JITO_BLOCK_ENGINE_URLS",
    "JsonRpcClient",
    "RPCEndpoint",
    "RPCEndpointPool",
    "TransactionSubmitter",
    "classify_send_error",
    "normalize_network",
    "wallet_chain_id",
]
