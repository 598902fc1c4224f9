import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from services.settlement_sync import main
from services.settlement_sync.config import get_settings
from services.settlement_sync.errors import ConfigurationError, TransientNetworkError
from services.settlement_sync.tests.fakes import make_chain


class StubEngine:
    def __init__(self, settings, store, http) -> None:
        self.gas_done = False
        StubEngine.last = self

    async def run_settlement_sync(self, chains):
        raise TransientNetworkError('order ledger down')

    async def run_gas_sync(self, chains):
        await asyncio.sleep(0.05)
        self.gas_done = True
        return 'gas report'


class RunTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()
        self.settings = get_settings()

    def tearDown(self) -> None:
        get_settings.cache_clear()

    async def test_settlement_failure_does_not_cancel_gas_pipeline(self) -> None:
        store = MagicMock()
        events: list[str] = []

        async def close() -> None:
            events.append('store_closed' if StubEngine.last.gas_done else 'store_closed_early')

        store.close = close

        with patch.object(main.SyncStore, 'connect', new=AsyncMock(return_value=store)), \
                patch.object(main, 'SyncEngine', StubEngine):
            with self.assertRaisesRegex(TransientNetworkError, 'order ledger down'):
                await main.run(self.settings, 'all', [])

        self.assertTrue(StubEngine.last.gas_done)
        self.assertEqual(events, ['store_closed'])

    async def test_single_pipeline_runs_alone(self) -> None:
        store = MagicMock()
        store.close = AsyncMock()

        with patch.object(main.SyncStore, 'connect', new=AsyncMock(return_value=store)), \
                patch.object(main, 'SyncEngine', StubEngine):
            await main.run(self.settings, 'gas', [])

        self.assertTrue(StubEngine.last.gas_done)
        store.close.assert_awaited_once()


class SelectChainsTests(unittest.TestCase):
    def test_filters_by_comma_separated_ids(self) -> None:
        chains = [make_chain(domain=1), make_chain(domain=10, name='Optimism')]
        self.assertEqual([c.domain for c in main._select_chains(chains, '10')], [10])
        self.assertEqual(main._select_chains(chains, ''), chains)

    def test_rejects_unknown_or_malformed_ids(self) -> None:
        chains = [make_chain(domain=1)]
        for raw in ('abc', '999'):
            with self.assertRaises(ConfigurationError):
                main._select_chains(chains, raw)
