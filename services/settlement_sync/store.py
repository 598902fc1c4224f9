from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

import asyncpg

from .models import ChainSyncState, GasSnapshot, SettlementRecord, SettlementStatus, TokenPrice


def _settlement_from_row(row: Any) -> SettlementRecord:
    return SettlementRecord(
        order_id=str(row['order_id']),
        chain_id=int(row['chain_id']),
        chain_name=str(row['chain_name']),
        amount=int(row['amount']),
        profit=int(row['profit']),
        timestamp=row['timestamp'],
        block_number=int(row['block_number']),
        status=SettlementStatus(str(row['status']))
    )


def _sync_state_from_row(row: Any) -> ChainSyncState:
    return ChainSyncState(
        chain_id=int(row['chain_id']),
        last_sync_block=int(row['last_sync_block']),
        last_sync_time=row['last_sync_time'],
        last_update_time=row['last_update_time']
    )


def _gas_from_row(row: Any) -> GasSnapshot:
    return GasSnapshot(
        chain_id=int(row['chain_id']),
        chain_name=str(row['chain_name']),
        current_balance=int(row['current_balance']),
        total_deposited=int(row['total_deposited']),
        current_balance_usd=Decimal(row['current_balance_usd']),
        total_deposited_usd=Decimal(row['total_deposited_usd']),
        last_sync_block=int(row['last_sync_block']),
        last_sync_time=row['last_sync_time'],
        last_update_time=row['last_update_time']
    )


class SyncStore:
    """Keyed upserts and filtered reads over the four sync tables.

    Expected tables (managed by migrations outside this service):
    ``settlements`` unique on (order_id, chain_id), ``chain_sync_state`` keyed
    by chain_id, ``gas_snapshots`` keyed by chain_id and ``token_prices`` keyed
    by price_group. Amounts are NUMERIC(78, 0) in the token's smallest unit.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @classmethod
    async def connect(cls, dsn: str, min_size: int = 1, max_size: int = 10) -> SyncStore:
        pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
        return cls(pool)

    async def close(self) -> None:
        await self.pool.close()

    async def completed_order_ids(self, chain_id: int) -> set[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT order_id
                FROM settlements
                WHERE chain_id = $1 AND status = $2
                ''',
                chain_id,
                SettlementStatus.COMPLETED.value
            )
        return {str(row['order_id']).lower() for row in rows}

    async def upsert_settlement(self, record: SettlementRecord) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''
                INSERT INTO settlements (
                  order_id,
                  chain_id,
                  chain_name,
                  amount,
                  profit,
                  timestamp,
                  block_number,
                  status
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (order_id, chain_id) DO UPDATE SET
                  chain_name = EXCLUDED.chain_name,
                  amount = EXCLUDED.amount,
                  profit = EXCLUDED.profit,
                  timestamp = EXCLUDED.timestamp,
                  block_number = EXCLUDED.block_number,
                  status = EXCLUDED.status
                ''',
                record.order_id,
                record.chain_id,
                record.chain_name,
                Decimal(record.amount),
                Decimal(record.profit),
                record.timestamp,
                record.block_number,
                record.status.value
            )

    async def get_settlement(self, order_id: str, chain_id: int) -> SettlementRecord | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM settlements WHERE order_id = $1 AND chain_id = $2',
                order_id,
                chain_id
            )
        return _settlement_from_row(row) if row is not None else None

    async def list_settlements(self, chain_id: int | None = None) -> list[SettlementRecord]:
        sql_filter = ''
        params: list = []
        if chain_id is not None:
            sql_filter = 'WHERE chain_id = $1'
            params.append(chain_id)

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT * FROM settlements ' + sql_filter + ' ORDER BY timestamp DESC',
                *params
            )
        return [_settlement_from_row(row) for row in rows]

    async def upsert_chain_sync_state(self, chain_id: int, block_number: int, synced_at: datetime) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''
                INSERT INTO chain_sync_state (chain_id, last_sync_block, last_sync_time, last_update_time)
                VALUES ($1, $2, $3, $3)
                ON CONFLICT (chain_id) DO UPDATE SET
                  last_sync_block = GREATEST(chain_sync_state.last_sync_block, EXCLUDED.last_sync_block),
                  last_sync_time = EXCLUDED.last_sync_time,
                  last_update_time = EXCLUDED.last_update_time
                ''',
                chain_id,
                block_number,
                synced_at
            )

    async def get_chain_sync_state(self, chain_id: int) -> ChainSyncState | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM chain_sync_state WHERE chain_id = $1', chain_id)
        return _sync_state_from_row(row) if row is not None else None

    async def list_chain_sync_states(self) -> list[ChainSyncState]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT * FROM chain_sync_state ORDER BY chain_id ASC')
        return [_sync_state_from_row(row) for row in rows]

    async def load_token_prices(self) -> dict[str, TokenPrice]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT price_group, price_usd, last_update_time FROM token_prices')
        return {
            str(row['price_group']): TokenPrice(
                price_group=str(row['price_group']),
                price_usd=Decimal(row['price_usd']),
                last_update_time=row['last_update_time']
            )
            for row in rows
        }

    async def upsert_token_price(self, price: TokenPrice) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''
                INSERT INTO token_prices (price_group, price_usd, last_update_time)
                VALUES ($1, $2, $3)
                ON CONFLICT (price_group) DO UPDATE SET
                  price_usd = EXCLUDED.price_usd,
                  last_update_time = EXCLUDED.last_update_time
                ''',
                price.price_group,
                price.price_usd,
                price.last_update_time
            )

    async def load_gas_snapshot(self, chain_id: int) -> GasSnapshot | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM gas_snapshots WHERE chain_id = $1', chain_id)
        return _gas_from_row(row) if row is not None else None

    async def list_gas_snapshots(self) -> list[GasSnapshot]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT * FROM gas_snapshots ORDER BY chain_id ASC')
        return [_gas_from_row(row) for row in rows]

    async def upsert_gas_snapshot(self, snapshot: GasSnapshot) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''
                INSERT INTO gas_snapshots (
                  chain_id,
                  chain_name,
                  current_balance,
                  total_deposited,
                  current_balance_usd,
                  total_deposited_usd,
                  last_sync_block,
                  last_sync_time,
                  last_update_time
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (chain_id) DO UPDATE SET
                  chain_name = EXCLUDED.chain_name,
                  current_balance = EXCLUDED.current_balance,
                  total_deposited = EXCLUDED.total_deposited,
                  current_balance_usd = EXCLUDED.current_balance_usd,
                  total_deposited_usd = EXCLUDED.total_deposited_usd,
                  last_sync_block = EXCLUDED.last_sync_block,
                  last_sync_time = EXCLUDED.last_sync_time,
                  last_update_time = EXCLUDED.last_update_time
                ''',
                snapshot.chain_id,
                snapshot.chain_name,
                Decimal(snapshot.current_balance),
                Decimal(snapshot.total_deposited),
                snapshot.current_balance_usd,
                snapshot.total_deposited_usd,
                snapshot.last_sync_block,
                snapshot.last_sync_time,
                snapshot.last_update_time
            )
