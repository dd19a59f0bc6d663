from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Iterable

from txpipe.common import log_event

NETWORKS = ("devnet", "mainnet-beta")

DEFAULT_RPC_URLS: dict[str, tuple[str, ...]] = {
    "devnet": (
        "https://api.devnet.solana.com",
        "https://rpc.ankr.com/solana_devnet",
    ),
    "mainnet-beta": (
        "https://api.mainnet-beta.solana.com",
        "https://rpc.ankr.com/solana",
    ),
}

# Wallet-standard chain identifiers used by sign-and-send wallets.
WALLET_CHAIN_IDS: dict[str, str] = {
    "devnet": "solana:devnet",
    "mainnet-beta": "solana:mainnet",
}

# Fixed preference order for relay rotation.
JITO_BLOCK_ENGINE_URLS: tuple[str, ...] = (
    "https://frankfurt.mainnet.block-engine.jito.wtf",
    "https://amsterdam.mainnet.block-engine.jito.wtf",
    "https://tokyo.mainnet.block-engine.jito.wtf",
    "https://slc.mainnet.block-engine.jito.wtf",
    "https://ny.mainnet.block-engine.jito.wtf",
)


def normalize_network(value: str | None) -> str:
    network = (value or "").strip().lower()
    if network in {"mainnet", "mainnet-beta"}:
        return "mainnet-beta"
    return "devnet"


def wallet_chain_id(network: str) -> str:
    return WALLET_CHAIN_IDS[normalize_network(network)]


@dataclass(slots=True, frozen=True)
class RPCEndpoint:
    url: str
    priority: int
    consecutive_failures: int = 0


class RPCEndpointPool:
    """Priority-ordered ledger endpoints with failure counters.

    Counters are only touched under the pool lock, so concurrent submissions
    see a coherent healthy/unhealthy view of every endpoint.
    """

    def __init__(
        self,
        endpoints: Iterable[RPCEndpoint],
        *,
        logger: logging.Logger,
        unhealthy_after_failures: int = 3,
    ) -> None:
        self._logger = logger
        self._unhealthy_after_failures = max(1, int(unhealthy_after_failures))
        self._lock = asyncio.Lock()
        self._endpoints: dict[str, RPCEndpoint] = {}
        for endpoint in endpoints:
            url = endpoint.url.strip()
            if url and url not in self._endpoints:
                self._endpoints[url] = replace(endpoint, url=url)
        if not self._endpoints:
            raise ValueError("RPCEndpointPool requires at least one endpoint URL.")

    @classmethod
    def from_urls(
        cls,
        urls: Iterable[str],
        *,
        logger: logging.Logger,
        unhealthy_after_failures: int = 3,
    ) -> "RPCEndpointPool":
        return cls(
            (RPCEndpoint(url=url, priority=index) for index, url in enumerate(urls)),
            logger=logger,
            unhealthy_after_failures=unhealthy_after_failures,
        )

    @classmethod
    def for_network(cls, network: str, *, logger: logging.Logger) -> "RPCEndpointPool":
        return cls.from_urls(DEFAULT_RPC_URLS[normalize_network(network)], logger=logger)

    def is_healthy(self, endpoint: RPCEndpoint) -> bool:
        return endpoint.consecutive_failures < self._unhealthy_after_failures

    async def snapshot(self) -> list[RPCEndpoint]:
        async with self._lock:
            return list(self._endpoints.values())

    async def ordered(self) -> list[str]:
        """Healthy endpoints by priority, then unhealthy ones by priority."""
        async with self._lock:
            endpoints = sorted(
                self._endpoints.values(),
                key=lambda item: (not self.is_healthy(item), item.priority),
            )
        return [endpoint.url for endpoint in endpoints]

    async def best(self) -> str:
        return (await self.ordered())[0]

    async def record_success(self, url: str) -> None:
        async with self._lock:
            endpoint = self._endpoints.get(url)
            if endpoint is None or endpoint.consecutive_failures == 0:
                return
            recovered = not self.is_healthy(endpoint)
            self._endpoints[url] = replace(endpoint, consecutive_failures=0)
        if recovered:
            log_event(
                self._logger,
                level="info",
                event="rpc_endpoint_recovered",
                message="RPC endpoint is healthy again",
                endpoint=url,
            )

    async def record_failure(self, url: str) -> int:
        async with self._lock:
            endpoint = self._endpoints.get(url)
            if endpoint is None:
                return 0
            updated = replace(endpoint, consecutive_failures=endpoint.consecutive_failures + 1)
            self._endpoints[url] = updated
            became_unhealthy = updated.consecutive_failures == self._unhealthy_after_failures
        if became_unhealthy:
            log_event(
                self._logger,
                level="warning",
                event="rpc_endpoint_unhealthy",
                message="RPC endpoint demoted after consecutive failures",
                endpoint=url,
                consecutive_failures=updated.consecutive_failures,
            )
        return updated.consecutive_failures
