import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

from services.settlement_sync.chain_registry import PRICE_GROUP_TOKENS
from services.settlement_sync.errors import ExternalServiceDegradation
from services.settlement_sync.models import TokenPrice
from services.settlement_sync.price_cache import MoralisPriceOracle, PriceCache
from services.settlement_sync.tests.fakes import InMemoryStore, ScriptedHttp, failing_http

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

QUOTES = {
    PRICE_GROUP_TOKENS['ETH']: 3000.5,
    PRICE_GROUP_TOKENS['MATIC']: 0.75,
    PRICE_GROUP_TOKENS['AVAX']: 35
}


def _quote_handler(url: str, params):
    token = url.split('/erc20/')[1].split('/')[0]
    return {'usdPrice': QUOTES[token], 'tokenAddress': token}


def _requested_tokens(http: ScriptedHttp) -> list[str]:
    return [url.split('/erc20/')[1].split('/')[0] for url, _, _ in http.calls]


class PriceCacheTests(unittest.IsolatedAsyncioTestCase):
    def _cache(self, store: InMemoryStore, http: ScriptedHttp, api_key: str = 'k') -> PriceCache:
        oracle = MoralisPriceOracle(http, 'https://oracle.invalid/api/v2.2', api_key)
        return PriceCache(store, oracle, ttl_seconds=4 * 60 * 60, clock=lambda: NOW)

    async def test_cold_cache_fetches_every_group_and_persists(self) -> None:
        store = InMemoryStore()
        http = ScriptedHttp(_quote_handler)
        cache = self._cache(store, http)

        await cache.ensure_fresh()

        self.assertEqual(cache.price_for('ETH'), Decimal('3000.5'))
        self.assertEqual(cache.price_for('AVAX'), Decimal('35'))
        self.assertEqual(sorted(store.token_prices), ['AVAX', 'ETH', 'MATIC'])
        self.assertEqual(store.token_prices['MATIC'].last_update_time, NOW)
        self.assertEqual(http.calls[0][1], {'chain': '0x1', 'include': 'percent_change'})
        self.assertEqual(http.calls[0][2]['X-API-Key'], 'k')

    async def test_ttl_boundary_reuses_young_rows_and_refetches_old(self) -> None:
        store = InMemoryStore()
        store.token_prices = {
            'ETH': TokenPrice('ETH', Decimal('2900'), NOW - timedelta(hours=3, minutes=59)),
            'MATIC': TokenPrice('MATIC', Decimal('0.5'), NOW - timedelta(hours=4, minutes=1)),
            'AVAX': TokenPrice('AVAX', Decimal('30'), NOW - timedelta(hours=3, minutes=59))
        }
        http = ScriptedHttp(_quote_handler)
        cache = self._cache(store, http)

        await cache.ensure_fresh()

        self.assertEqual(_requested_tokens(http), [PRICE_GROUP_TOKENS['MATIC']])
        self.assertEqual(cache.price_for('ETH'), Decimal('2900'))
        self.assertEqual(cache.price_for('MATIC'), Decimal('0.75'))
        self.assertEqual([price.price_group for price in store.price_writes], ['MATIC'])

    async def test_non_positive_price_keeps_previous_value(self) -> None:
        store = InMemoryStore()
        http = ScriptedHttp(lambda url, params: {'usdPrice': 0})
        cache = self._cache(store, http)
        cache.prices['ETH'] = Decimal('2500')

        await cache.ensure_fresh(force=True)

        self.assertEqual(cache.price_for('ETH'), Decimal('2500'))
        self.assertEqual(store.price_writes, [])

    async def test_oracle_outage_is_absorbed(self) -> None:
        store = InMemoryStore()
        cache = self._cache(store, failing_http())

        await cache.ensure_fresh()

        self.assertTrue(cache.all_zero())
        self.assertFalse(cache.is_stale())

    async def test_all_zero_prices_force_refresh_inside_ttl(self) -> None:
        store = InMemoryStore()
        cache = self._cache(store, failing_http())
        await cache.ensure_fresh()

        cache.oracle.http = ScriptedHttp(_quote_handler)
        await cache.ensure_fresh()

        self.assertFalse(cache.all_zero())
        self.assertEqual(cache.price_for('MATIC'), Decimal('0.75'))

    async def test_second_call_within_ttl_does_not_refetch(self) -> None:
        store = InMemoryStore()
        http = ScriptedHttp(_quote_handler)
        cache = self._cache(store, http)

        await cache.ensure_fresh()
        await cache.ensure_fresh()

        self.assertEqual(len(http.calls), 3)

    async def test_store_write_failure_keeps_fetched_price(self) -> None:
        store = InMemoryStore()
        store.upsert_token_price = AsyncMock(side_effect=OSError('connection refused'))
        http = ScriptedHttp(_quote_handler)
        cache = self._cache(store, http)

        await cache.ensure_fresh()
        await cache.ensure_fresh()

        self.assertEqual(cache.price_for('ETH'), Decimal('3000.5'))
        self.assertFalse(cache.is_stale())
        self.assertEqual(len(http.calls), 3)


class MoralisPriceOracleTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_api_key_is_degradation(self) -> None:
        oracle = MoralisPriceOracle(ScriptedHttp(_quote_handler), 'https://oracle.invalid', '')
        with self.assertRaises(ExternalServiceDegradation):
            await oracle.spot_price_usd(PRICE_GROUP_TOKENS['ETH'])
