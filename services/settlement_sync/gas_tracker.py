from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from pydantic import ValidationError

from .chain_client import ChainClient
from .chain_registry import ChainConfig
from .errors import DataValidationError, ExternalServiceDegradation, TransientNetworkError
from .http_client import JsonHttpClient
from .metrics import CHAIN_SYNC_FAILURES_TOTAL, GAS_BALANCE_USD
from .models import ExplorerResponse, ExplorerTx, GasSnapshot
from .price_cache import PriceCache
from .retry import BackoffPolicy, retry_async

LOGGER = logging.getLogger('solver.settlement_sync.gas_tracker')

ClientFactory = Callable[[ChainConfig], ChainClient]

NO_TRANSACTIONS = 'no transactions found'


def to_usd(amount_wei: int, decimals: int, price_usd: Decimal) -> Decimal:
    return (Decimal(amount_wei) / (Decimal(10) ** decimals)) * price_usd


@dataclass
class GasRunReport:
    snapshots: list[GasSnapshot] = field(default_factory=list)
    failed_chains: dict[int, str] = field(default_factory=dict)


class ExplorerClient:
    """Etherscan-compatible ``txlist`` reader summing incoming native transfers."""

    def __init__(self, http: JsonHttpClient, *, max_results: int = 10000, policy: BackoffPolicy | None = None) -> None:
        self.http = http
        self.max_results = max(1, max_results)
        self.policy = policy

    async def _page(self, chain: ChainConfig, address: str, start_block: int, end_block: int) -> list[ExplorerTx]:
        params = {
            'module': 'account',
            'action': 'txlist',
            'address': address,
            'startblock': str(start_block),
            'endblock': str(end_block),
            'sort': 'asc'
        }
        if chain.explorer_api_key:
            params['apikey'] = chain.explorer_api_key

        try:
            payload = await self.http.get_json(
                chain.explorer_api_url,
                params=params,
                policy=self.policy,
                label=f'{chain.name} txlist {start_block}-{end_block}'
            )
            response = ExplorerResponse.model_validate(payload)
        except TransientNetworkError as exc:
            raise ExternalServiceDegradation(f'explorer request failed for {chain.name}: {exc}', chain_id=chain.domain) from exc
        except ValidationError as exc:
            raise DataValidationError(f'malformed explorer payload for {chain.name}: {exc}', chain_id=chain.domain) from exc

        if response.status != '1':
            if response.message.lower().startswith(NO_TRANSACTIONS):
                return []
            detail = response.result if isinstance(response.result, str) else ''
            raise ExternalServiceDegradation(
                f'explorer error for {chain.name}: {response.message} {detail}'.strip(),
                chain_id=chain.domain
            )
        if isinstance(response.result, str):
            raise DataValidationError(f'explorer returned non-list result for {chain.name}', chain_id=chain.domain)
        return response.result

    async def incoming_value(self, chain: ChainConfig, address: str, start_block: int, end_block: int) -> int:
        if not chain.explorer_api_url:
            raise ExternalServiceDegradation(f'no explorer configured for {chain.name}', chain_id=chain.domain)

        target = address.lower()
        total = 0
        cursor = start_block
        while cursor <= end_block:
            txs = await self._page(chain, address, cursor, end_block)
            truncated = len(txs) >= self.max_results
            last_block = txs[-1].block_number if txs else None

            # A truncated page may hold only part of its last block; that block is re-read from the next page.
            resume = truncated and last_block is not None and last_block > cursor
            for tx in txs:
                if resume and tx.block_number == last_block:
                    continue
                if tx.to_address.lower() == target and tx.is_error == '0':
                    total += tx.value

            if not resume:
                if truncated:
                    LOGGER.warning('explorer page truncated within one block chain=%s block=%s', chain.name, cursor)
                break
            LOGGER.debug('explorer page truncated chain=%s from=%s resume=%s', chain.name, cursor, last_block)
            cursor = last_block
        return total


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GasTracker:
    def __init__(
        self,
        store,
        price_cache: PriceCache,
        explorer: ExplorerClient,
        client_factory: ClientFactory,
        solver_address: str
    ) -> None:
        self.store = store
        self.price_cache = price_cache
        self.explorer = explorer
        self.client_factory = client_factory
        self.solver_address = solver_address
        self._lock = asyncio.Lock()

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    async def run_gas_sync(self, chains: list[ChainConfig]) -> GasRunReport | None:
        if self._lock.locked():
            LOGGER.info('gas sync already in progress; skipping')
            return None

        async with self._lock:
            LOGGER.info('starting gas sync chains=%s', ','.join(str(chain.domain) for chain in chains))
            results = await asyncio.gather(*(self.sync_chain(chain) for chain in chains), return_exceptions=True)

            report = GasRunReport()
            for chain, result in zip(chains, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    LOGGER.error(
                        'gas sync failed chain=%s chain_id=%s',
                        chain.name,
                        chain.domain,
                        exc_info=(type(result), result, result.__traceback__)
                    )
                    CHAIN_SYNC_FAILURES_TOTAL.labels(pipeline='gas', chain_id=str(chain.domain)).inc()
                    report.failed_chains[chain.domain] = str(result) or type(result).__name__
                    continue
                report.snapshots.append(result)

            LOGGER.info('gas sync complete synced=%s failed_chains=%s', len(report.snapshots), sorted(report.failed_chains))
            return report

    async def sync_chain(self, chain: ChainConfig) -> GasSnapshot:
        if self.price_cache.is_stale() or self.price_cache.all_zero():
            await self.price_cache.ensure_fresh()

        client = self.client_factory(chain)
        policy = chain.retry_policy()
        head = await retry_async(client.block_number, policy, label=f'{chain.name} block_number')
        balance = await retry_async(
            lambda: client.get_balance(self.solver_address),
            policy,
            label=f'{chain.name} get_balance'
        )
        LOGGER.info('current balance chain=%s wei=%s token=%s', chain.name, balance, chain.native_token)

        previous = await self.store.load_gas_snapshot(chain.domain)
        total_deposited = previous.total_deposited if previous is not None else 0
        checkpoint = previous.last_sync_block if previous is not None else 0
        start_block = checkpoint + 1 if previous is not None else 0

        if start_block <= head:
            try:
                delta = await self.explorer.incoming_value(chain, self.solver_address, start_block, head)
            except (ExternalServiceDegradation, DataValidationError) as exc:
                LOGGER.warning(
                    'deposit scan failed chain=%s from=%s to=%s error=%s; keeping total=%s checkpoint=%s',
                    chain.name,
                    start_block,
                    head,
                    exc,
                    total_deposited,
                    checkpoint
                )
            else:
                total_deposited += delta
                checkpoint = head
                LOGGER.info('deposits scanned chain=%s from=%s to=%s new_wei=%s total_wei=%s', chain.name, start_block, head, delta, total_deposited)

        price = self.price_cache.price_for(chain.price_group)
        now = _utcnow()
        snapshot = GasSnapshot(
            chain_id=chain.domain,
            chain_name=chain.name,
            current_balance=balance,
            total_deposited=total_deposited,
            current_balance_usd=to_usd(balance, chain.decimals, price),
            total_deposited_usd=to_usd(total_deposited, chain.decimals, price),
            last_sync_block=checkpoint,
            last_sync_time=now,
            last_update_time=now
        )
        await self.store.upsert_gas_snapshot(snapshot)
        GAS_BALANCE_USD.labels(chain_id=str(chain.domain)).set(float(snapshot.current_balance_usd))
        LOGGER.info(
            'gas snapshot stored chain=%s balance_usd=%s deposited_usd=%s checkpoint=%s',
            chain.name,
            snapshot.current_balance_usd,
            snapshot.total_deposited_usd,
            checkpoint
        )
        return snapshot
