from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from .chain_client import ORDER_SETTLED_TOPIC, ChainClient, LogFilter
from .chain_registry import ChainConfig
from .errors import DataValidationError
from .log_fetcher import ChainLogFetcher
from .metrics import CHAIN_LAST_SYNC_BLOCK, CHAIN_SYNC_FAILURES_TOTAL, SETTLEMENT_OUTCOMES_TOTAL
from .models import ExternalOrder, Outcome, OutcomeKind, normalize_order_id
from .order_source import ExternalOrderSource
from .reconciler import SettlementReconciler, index_settlement_logs
from .reporting import expected_counts_by_chain
from .retry import retry_async

LOGGER = logging.getLogger('solver.settlement_sync.coordinator')

ClientFactory = Callable[[ChainConfig], ChainClient]


@dataclass
class ChainSyncReport:
    chain_id: int
    chain_name: str
    pending: int = 0
    settled: int = 0
    skipped: int = 0
    failed: int = 0
    head_block: int | None = None
    error: str = ''

    def tally(self, outcomes: list[Outcome]) -> None:
        counts = Counter(outcome.kind for outcome in outcomes)
        self.settled += counts[OutcomeKind.SETTLED]
        self.skipped += counts[OutcomeKind.SKIPPED]
        self.failed += counts[OutcomeKind.FAILED]


@dataclass
class SettlementRunReport:
    orders_fetched: int
    chains: list[ChainSyncReport] = field(default_factory=list)

    @property
    def failed_chains(self) -> list[int]:
        return [report.chain_id for report in self.chains if report.error]


def _order_key(order_id: str) -> str:
    try:
        return normalize_order_id(order_id)
    except DataValidationError:
        return order_id.lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncCoordinator:
    """Single-flight settlement pipeline across every configured chain.

    Orders are fetched once per run and fanned out per chain. Each chain runs
    in its own task; a chain that raises is recorded in the run report and does
    not cancel the others.
    """

    def __init__(
        self,
        store,
        order_source: ExternalOrderSource,
        reconciler: SettlementReconciler,
        log_fetcher: ChainLogFetcher,
        client_factory: ClientFactory,
        *,
        batch_size: int = 10
    ) -> None:
        self.store = store
        self.order_source = order_source
        self.reconciler = reconciler
        self.log_fetcher = log_fetcher
        self.client_factory = client_factory
        self.batch_size = max(1, batch_size)
        self._lock = asyncio.Lock()

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    async def run_settlement_sync(self, chains: list[ChainConfig]) -> SettlementRunReport | None:
        # locked() then acquire() has no await between them, so no other task can interleave.
        if self._lock.locked():
            LOGGER.info('settlement sync already in progress; skipping')
            return None

        async with self._lock:
            LOGGER.info('starting settlement sync chains=%s', ','.join(str(chain.domain) for chain in chains))
            orders = await self.order_source.fetch_orders()
            for domain, count in sorted(expected_counts_by_chain(orders).items()):
                LOGGER.info('expected settlements chain_id=%s count=%s', domain, count)

            results = await asyncio.gather(
                *(self.sync_chain(chain, orders) for chain in chains),
                return_exceptions=True
            )

            report = SettlementRunReport(orders_fetched=len(orders))
            for chain, result in zip(chains, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    LOGGER.error(
                        'settlement sync failed chain=%s chain_id=%s',
                        chain.name,
                        chain.domain,
                        exc_info=(type(result), result, result.__traceback__)
                    )
                    CHAIN_SYNC_FAILURES_TOTAL.labels(pipeline='settlements', chain_id=str(chain.domain)).inc()
                    report.chains.append(
                        ChainSyncReport(chain_id=chain.domain, chain_name=chain.name, error=str(result) or type(result).__name__)
                    )
                    continue
                report.chains.append(result)

            LOGGER.info(
                'settlement sync complete orders=%s failed_chains=%s',
                report.orders_fetched,
                report.failed_chains
            )
            return report

    async def sync_chain(self, chain: ChainConfig, orders: list[ExternalOrder]) -> ChainSyncReport:
        report = ChainSyncReport(chain_id=chain.domain, chain_name=chain.name)

        completed = await self.store.completed_order_ids(chain.domain)
        pending = [
            order
            for order in orders
            if order.source_domain == chain.domain and _order_key(order.order_id) not in completed
        ]
        report.pending = len(pending)
        if not pending:
            LOGGER.info('no pending orders chain=%s', chain.name)
            return report

        LOGGER.info('syncing chain=%s pending=%s already_settled=%s', chain.name, len(pending), len(completed))

        client = self.client_factory(chain)
        head = await retry_async(client.block_number, chain.retry_policy(), label=f'{chain.name} block_number')
        report.head_block = head

        logs = await self.log_fetcher.fetch_logs(
            client,
            chain,
            LogFilter(address=chain.fast_transfer_gateway, topics=(ORDER_SETTLED_TOPIC,)),
            chain.deployment_block,
            head
        )
        settlement_logs = index_settlement_logs(logs)
        LOGGER.info('settlement events chain=%s from=%s to=%s events=%s', chain.name, chain.deployment_block, head, len(logs))

        processed = 0
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self.reconciler.reconcile(order, chain, client, settlement_logs) for order in batch)
            )
            report.tally(list(outcomes))
            for outcome in outcomes:
                SETTLEMENT_OUTCOMES_TOTAL.labels(chain_id=str(chain.domain), outcome=outcome.kind.value).inc()

            processed += len(batch)
            LOGGER.info(
                'progress chain=%s processed=%s/%s settled=%s skipped=%s failed=%s',
                chain.name,
                processed,
                len(pending),
                report.settled,
                report.skipped,
                report.failed
            )

        await self.store.upsert_chain_sync_state(chain.domain, head, _utcnow())
        CHAIN_LAST_SYNC_BLOCK.labels(chain_id=str(chain.domain)).set(head)
        LOGGER.info('chain sync complete chain=%s head=%s', chain.name, head)
        return report
