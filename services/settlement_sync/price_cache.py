from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from pydantic import ValidationError

from .chain_registry import PRICE_GROUP_TOKENS, PRICE_GROUPS
from .errors import DataValidationError, ExternalServiceDegradation, TransientNetworkError
from .http_client import JsonHttpClient
from .metrics import TOKEN_PRICE_USD
from .models import OraclePriceQuote, TokenPrice
from .retry import BackoffPolicy

LOGGER = logging.getLogger('solver.settlement_sync.price_cache')

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MoralisPriceOracle:
    def __init__(self, http: JsonHttpClient, api_url: str, api_key: str, policy: BackoffPolicy | None = None) -> None:
        self.http = http
        self.api_url = api_url.rstrip('/')
        self.api_key = api_key
        self.policy = policy

    async def spot_price_usd(self, token_address: str) -> Decimal:
        if not self.api_key:
            raise ExternalServiceDegradation('MORALIS_API_KEY not set; price oracle unavailable')

        try:
            payload = await self.http.get_json(
                f'{self.api_url}/erc20/{token_address}/price',
                params={'chain': '0x1', 'include': 'percent_change'},
                headers={'X-API-Key': self.api_key, 'accept': 'application/json'},
                policy=self.policy,
                label=f'price {token_address}'
            )
        except TransientNetworkError as exc:
            raise ExternalServiceDegradation(f'price oracle request failed for {token_address}: {exc}') from exc

        try:
            quote = OraclePriceQuote.model_validate(payload)
        except ValidationError as exc:
            raise DataValidationError(f'malformed price quote for {token_address}: {exc}') from exc
        return quote.usd_price if quote.usd_price is not None else Decimal('0')


class PriceCache:
    def __init__(
        self,
        store,
        oracle: MoralisPriceOracle,
        *,
        ttl_seconds: int = 4 * 60 * 60,
        group_tokens: dict[str, str] | None = None,
        clock: Clock = _utcnow
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.ttl = timedelta(seconds=ttl_seconds)
        self.group_tokens = dict(group_tokens or PRICE_GROUP_TOKENS)
        self._clock = clock
        self.prices: dict[str, Decimal] = {group: Decimal('0') for group in PRICE_GROUPS}
        self._last_refresh: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    def price_for(self, price_group: str) -> Decimal:
        return self.prices.get(price_group, Decimal('0'))

    def all_zero(self) -> bool:
        return all(price == 0 for price in self.prices.values())

    def is_stale(self, now: datetime | None = None) -> bool:
        if self._last_refresh is None:
            return True
        return (now or self._clock()) - self._last_refresh >= self.ttl

    async def ensure_fresh(self, force: bool = False) -> None:
        if not force and not self.is_stale() and not self.all_zero():
            return

        async with self._refresh_lock:
            # Another caller may have refreshed while this one waited.
            if not force and not self.is_stale() and not self.all_zero():
                return
            await self._refresh()

    async def _refresh(self) -> None:
        now = self._clock()
        cached = await self.store.load_token_prices()

        stale: list[str] = []
        for group in PRICE_GROUPS:
            row = cached.get(group)
            if row is not None and now - row.last_update_time < self.ttl:
                self.prices[group] = Decimal(row.price_usd)
                TOKEN_PRICE_USD.labels(price_group=group).set(float(row.price_usd))
                LOGGER.info('using cached price group=%s usd=%s', group, row.price_usd)
                continue
            stale.append(group)

        if stale:
            await asyncio.gather(*(self._refresh_group(group, now) for group in stale))

        self._last_refresh = now
        LOGGER.info('token prices %s', ' '.join(f'{group}={self.prices[group]}' for group in PRICE_GROUPS))

    async def _refresh_group(self, group: str, now: datetime) -> None:
        token_address = self.group_tokens[group]
        try:
            price = await self.oracle.spot_price_usd(token_address)
        except (ExternalServiceDegradation, DataValidationError) as exc:
            LOGGER.warning('price refresh failed group=%s token=%s error=%s; keeping %s', group, token_address, exc, self.prices[group])
            return

        if price <= 0:
            LOGGER.error('invalid price group=%s token=%s usd=%s; keeping %s', group, token_address, price, self.prices[group])
            return

        self.prices[group] = price
        TOKEN_PRICE_USD.labels(price_group=group).set(float(price))
        try:
            await self.store.upsert_token_price(TokenPrice(price_group=group, price_usd=price, last_update_time=now))
        except Exception as exc:
            LOGGER.error('price persist failed group=%s usd=%s error=%s; using in-memory value', group, price, exc)
            return
        LOGGER.info('updated price group=%s usd=%s', group, price)
