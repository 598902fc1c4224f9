import asyncio
import unittest
from datetime import datetime, timezone

from services.settlement_sync.coordinator import SyncCoordinator
from services.settlement_sync.errors import TransientNetworkError
from services.settlement_sync.log_fetcher import ChainLogFetcher
from services.settlement_sync.models import ExternalOrder, SettlementRecord
from services.settlement_sync.reconciler import SettlementReconciler
from services.settlement_sync.tests.fakes import (
    FakeChainClient,
    InMemoryStore,
    RecordingSleep,
    details,
    make_chain,
    order_id,
    settled_log
)


class StaticOrders:
    def __init__(self, orders: list[ExternalOrder], gate: asyncio.Event | None = None, error: Exception | None = None) -> None:
        self.orders = orders
        self.gate = gate
        self.error = error
        self.calls = 0

    async def fetch_orders(self) -> list[ExternalOrder]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.orders)


def _order(n: int, domain: int) -> ExternalOrder:
    return ExternalOrder(order_id=order_id(n), filler='osmo1filler', source_domain=domain)


class SyncCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = InMemoryStore()
        self.eth = make_chain(domain=1, name='Ethereum')
        self.op = make_chain(domain=10, name='Optimism')
        self.clients: dict[int, FakeChainClient] = {}

    def _coordinator(self, orders: StaticOrders, batch_size: int = 10) -> SyncCoordinator:
        return SyncCoordinator(
            self.store,
            orders,
            SettlementReconciler(self.store, sleep=RecordingSleep()),
            ChainLogFetcher(sleep=RecordingSleep()),
            lambda chain: self.clients[chain.domain],
            batch_size=batch_size
        )

    async def test_settles_pending_orders_and_records_head(self) -> None:
        orders = [_order(n, 1) for n in range(1, 26)]
        self.clients[1] = FakeChainClient(
            self.eth,
            head=9000,
            logs=[settled_log(order_id(n), 200 + n) for n in range(1, 26)],
            details={order_id(n): details(n * 1000) for n in range(1, 25)}
        )

        report = await self._coordinator(StaticOrders(orders)).run_settlement_sync([self.eth])

        chain_report = report.chains[0]
        self.assertEqual(chain_report.pending, 25)
        self.assertEqual(chain_report.settled, 24)
        self.assertEqual(chain_report.skipped, 1)
        self.assertEqual(chain_report.failed, 0)
        self.assertEqual(self.store.sync_states[1].last_sync_block, 9000)
        self.assertEqual(self.clients[1].get_logs_calls, [(100, 9000)])
        self.assertEqual(report.failed_chains, [])

    async def test_already_settled_orders_are_not_queried(self) -> None:
        done = order_id(1)
        self.store.settlements[(done, 1)] = SettlementRecord(
            order_id=done,
            chain_id=1,
            chain_name='Ethereum',
            amount=1000,
            profit=1,
            timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
            block_number=150
        )
        self.clients[1] = FakeChainClient(
            self.eth,
            logs=[settled_log(order_id(2), 300)],
            details={order_id(2): details(4000)}
        )

        report = await self._coordinator(StaticOrders([_order(1, 1), _order(2, 1)])).run_settlement_sync([self.eth])

        self.assertEqual([call[0] for call in self.clients[1].details_calls], [order_id(2)])
        self.assertEqual(report.chains[0].pending, 1)

    async def test_chain_without_pending_orders_keeps_sync_state(self) -> None:
        self.clients[10] = FakeChainClient(self.op)

        report = await self._coordinator(StaticOrders([_order(1, 1)])).run_settlement_sync([self.op])

        self.assertEqual(report.chains[0].pending, 0)
        self.assertNotIn(10, self.store.sync_states)
        self.assertEqual(self.clients[10].get_logs_calls, [])

    async def test_watermark_never_moves_backwards(self) -> None:
        await self.store.upsert_chain_sync_state(1, 12000, datetime(2026, 1, 1, tzinfo=timezone.utc))
        self.clients[1] = FakeChainClient(self.eth, head=9000)

        await self._coordinator(StaticOrders([_order(1, 1)])).run_settlement_sync([self.eth])

        self.assertEqual(self.store.sync_states[1].last_sync_block, 12000)

    async def test_failing_chain_does_not_cancel_others(self) -> None:
        self.clients[1] = FakeChainClient(self.eth, head=9000)
        self.clients[1].head_error = TransientNetworkError('rpc down', chain_id=1)
        self.clients[10] = FakeChainClient(
            self.op,
            logs=[settled_log(order_id(2), 300)],
            details={order_id(2): details(4000)}
        )

        report = await self._coordinator(
            StaticOrders([_order(1, 1), _order(2, 10)])
        ).run_settlement_sync([self.eth, self.op])

        self.assertEqual(report.failed_chains, [1])
        self.assertIn('rpc down', report.chains[0].error)
        self.assertEqual(report.chains[1].settled, 1)
        self.assertIn((order_id(2), 10), self.store.settlements)

    async def test_concurrent_run_is_rejected_while_in_progress(self) -> None:
        gate = asyncio.Event()
        source = StaticOrders([], gate=gate)
        coordinator = self._coordinator(source)

        first = asyncio.create_task(coordinator.run_settlement_sync([self.eth]))
        await asyncio.sleep(0)
        self.assertTrue(coordinator.is_syncing)

        second = await coordinator.run_settlement_sync([self.eth])
        gate.set()
        report = await first

        self.assertIsNone(second)
        self.assertIsNotNone(report)
        self.assertEqual(source.calls, 1)
        self.assertFalse(coordinator.is_syncing)

    async def test_order_source_failure_releases_lock(self) -> None:
        coordinator = self._coordinator(StaticOrders([], error=TransientNetworkError('lcd down')))

        with self.assertRaises(TransientNetworkError):
            await coordinator.run_settlement_sync([self.eth])

        self.assertFalse(coordinator.is_syncing)

    async def test_orders_are_processed_in_batches(self) -> None:
        in_flight = 0
        peak = 0
        client = FakeChainClient(self.eth, logs=[settled_log(order_id(n), 200 + n) for n in range(1, 24)])
        lookup = client.settlement_details

        async def tracked(oid: str, block_identifier=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return await lookup(oid, block_identifier)

        client.settlement_details = tracked
        self.clients[1] = client

        report = await self._coordinator(
            StaticOrders([_order(n, 1) for n in range(1, 24)]),
            batch_size=10
        ).run_settlement_sync([self.eth])

        self.assertEqual(peak, 10)
        self.assertEqual(report.chains[0].skipped, 23)
