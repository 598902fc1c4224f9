from __future__ import annotations

import asyncio
import logging

from .chain_client import ChainClient, LogEntry, SettlementDetails
from .chain_registry import ChainConfig
from .models import ExternalOrder, Outcome, SettlementRecord, SettlementStatus, derive_profit, normalize_order_id
from .retry import BackoffPolicy, Sleep, retry_async

LOGGER = logging.getLogger('solver.settlement_sync.reconciler')

# Providers that proxy eth_call through a batching layer reject large batches
# with this message; pinning the call to 'latest' gets through.
BATCH_TOO_LARGE = 'batch size too large'

PINNED_RETRY = BackoffPolicy(max_attempts=2, base_delay=1.0, growth='linear')


def _is_batch_too_large(exc: BaseException) -> bool:
    return BATCH_TOO_LARGE in str(exc).lower()


def index_settlement_logs(logs: list[LogEntry]) -> dict[str, LogEntry]:
    """Map lower-cased order id (first indexed topic) to its settlement log."""
    index: dict[str, LogEntry] = {}
    for log in logs:
        if len(log.topics) < 2:
            continue
        index[log.topics[1].lower()] = log
    return index


class SettlementReconciler:
    def __init__(self, store, *, pinned_retry: BackoffPolicy = PINNED_RETRY, sleep: Sleep = asyncio.sleep) -> None:
        self.store = store
        self.pinned_retry = pinned_retry
        self._sleep = sleep

    async def _settlement_details(self, client: ChainClient, order_id: str) -> SettlementDetails | None:
        attempt = 0

        async def call() -> SettlementDetails | None:
            nonlocal attempt
            attempt += 1
            if attempt == 1:
                return await client.settlement_details(order_id)
            LOGGER.debug('retrying settlementDetails pinned to latest order_id=%s', order_id)
            return await client.settlement_details(order_id, block_identifier='latest')

        return await retry_async(
            call,
            self.pinned_retry,
            label=f'settlementDetails {order_id}',
            should_retry=_is_batch_too_large,
            sleep=self._sleep
        )

    async def reconcile(
        self,
        order: ExternalOrder,
        chain: ChainConfig,
        client: ChainClient,
        settlement_logs: dict[str, LogEntry]
    ) -> Outcome:
        order_id = order.order_id
        try:
            order_id = normalize_order_id(order.order_id)

            details = await self._settlement_details(client, order_id)
            if details is None or not details.amount:
                LOGGER.debug('no settlement details chain=%s order_id=%s', chain.name, order_id)
                return Outcome.skipped(order_id, 'no settlement details')

            event = settlement_logs.get(order_id)
            if event is None:
                LOGGER.warning('no settlement event found chain=%s order_id=%s', chain.name, order_id)
                return Outcome.skipped(order_id, 'no settlement event')

            amount = abs(details.amount)
            record = SettlementRecord(
                order_id=order_id,
                chain_id=chain.domain,
                chain_name=chain.name,
                amount=amount,
                profit=derive_profit(amount),
                timestamp=await client.block_timestamp(event.block_number),
                block_number=event.block_number,
                status=SettlementStatus.COMPLETED
            )
            await self.store.upsert_settlement(record)
            LOGGER.debug(
                'settlement stored chain=%s order_id=%s amount=%s profit=%s block=%s',
                chain.name,
                order_id,
                record.amount,
                record.profit,
                record.block_number
            )
            return Outcome.settled(order_id)
        except Exception as exc:
            LOGGER.error('error processing order chain=%s order_id=%s error=%s', chain.name, order_id, exc)
            return Outcome.failed(order_id, exc)
