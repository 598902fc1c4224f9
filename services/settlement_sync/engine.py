from __future__ import annotations

import logging

from .chain_client import ChainClient
from .chain_registry import ChainConfig
from .config import Settings
from .coordinator import SettlementRunReport, SyncCoordinator
from .gas_tracker import ExplorerClient, GasRunReport, GasTracker
from .http_client import JsonHttpClient
from .log_fetcher import ChainLogFetcher
from .models import ExternalOrder
from .order_source import ExternalOrderSource
from .price_cache import MoralisPriceOracle, PriceCache
from .reconciler import SettlementReconciler
from .retry import BackoffPolicy

LOGGER = logging.getLogger('solver.settlement_sync.engine')


class SyncEngine:
    """Wires both pipelines over one store, one HTTP session and one client per chain."""

    def __init__(self, settings: Settings, store, http: JsonHttpClient) -> None:
        self.settings = settings
        self.store = store
        self._clients: dict[int, ChainClient] = {}

        http_policy = BackoffPolicy(
            max_attempts=settings.http_retry_attempts,
            base_delay=1.0,
            growth='exponential'
        )
        self.order_source = ExternalOrderSource(http, settings)
        self.price_cache = PriceCache(
            store,
            MoralisPriceOracle(http, settings.moralis_api_url, settings.moralis_api_key, policy=http_policy),
            ttl_seconds=settings.price_ttl_seconds
        )
        self.coordinator = SyncCoordinator(
            store,
            self.order_source,
            SettlementReconciler(store),
            ChainLogFetcher(chunk_size=settings.log_chunk_size),
            self.client_for,
            batch_size=settings.settlement_batch_size
        )
        self.gas_tracker = GasTracker(
            store,
            self.price_cache,
            ExplorerClient(http, max_results=settings.explorer_max_results, policy=http_policy),
            self.client_for,
            settings.solver_address
        )

    def client_for(self, chain: ChainConfig) -> ChainClient:
        client = self._clients.get(chain.domain)
        if client is None or client.chain != chain:
            client = ChainClient(chain, timeout_seconds=self.settings.http_timeout_seconds)
            self._clients[chain.domain] = client
            LOGGER.info('chain client ready chain=%s chain_id=%s', chain.name, chain.domain)
        return client

    @property
    def is_settlement_syncing(self) -> bool:
        return self.coordinator.is_syncing

    @property
    def is_gas_syncing(self) -> bool:
        return self.gas_tracker.is_syncing

    async def fetch_orders(self) -> list[ExternalOrder]:
        return await self.order_source.fetch_orders()

    async def run_settlement_sync(self, chains: list[ChainConfig]) -> SettlementRunReport | None:
        return await self.coordinator.run_settlement_sync(chains)

    async def run_gas_sync(self, chains: list[ChainConfig]) -> GasRunReport | None:
        return await self.gas_tracker.run_gas_sync(chains)
