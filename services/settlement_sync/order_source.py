from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any

from pydantic import ValidationError

from .config import Settings
from .errors import DataValidationError, ExternalServiceDegradation, TransientNetworkError
from .http_client import JsonHttpClient
from .models import ExternalOrder, OrderFillPage
from .retry import Sleep

LOGGER = logging.getLogger('solver.settlement_sync.order_source')


def _encode_query(query: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(query, separators=(',', ':')).encode('utf-8')).decode('ascii')


class ExternalOrderSource:
    def __init__(self, http: JsonHttpClient, settings: Settings, sleep: Sleep = asyncio.sleep) -> None:
        self.http = http
        self.lcd_url = settings.order_ledger_lcd_url
        self.contract = settings.order_ledger_contract
        self.filler = settings.order_filler_address
        self.page_limit = settings.order_page_limit
        self.page_delay_seconds = settings.order_page_delay_seconds
        self._sleep = sleep

    def page_url(self, start_after: str | None) -> str:
        query = {
            'order_fills_by_filler': {
                'filler': self.filler,
                'start_after': start_after,
                'limit': self.page_limit
            }
        }
        return f'{self.lcd_url}/cosmwasm/wasm/v1/contract/{self.contract}/smart/{_encode_query(query)}'

    async def _fetch_page(self, start_after: str | None) -> list[ExternalOrder]:
        LOGGER.debug('fetching order page start_after=%s limit=%s', start_after, self.page_limit)
        try:
            payload = await self.http.get_json(self.page_url(start_after), label='order-fills page')
        except ExternalServiceDegradation as exc:
            raise TransientNetworkError(f'order-fill page after={start_after} rejected: {exc}') from exc
        try:
            page = OrderFillPage.model_validate(payload)
        except ValidationError as exc:
            raise DataValidationError(f'malformed order-fill page after={start_after}: {exc}') from exc
        return [row.to_order() for row in page.data or []]

    async def fetch_orders(self) -> list[ExternalOrder]:
        orders: list[ExternalOrder] = []
        start_after: str | None = None

        while True:
            page = await self._fetch_page(start_after)
            if not page:
                LOGGER.info('no more orders to fetch total=%s', len(orders))
                break

            orders.extend(page)
            LOGGER.info('fetched order page size=%s total=%s', len(page), len(orders))

            if len(page) < self.page_limit:
                break

            start_after = page[-1].order_id
            await self._sleep(self.page_delay_seconds)

        LOGGER.info('external orders fetched total=%s', len(orders))
        return orders
