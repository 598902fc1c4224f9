from __future__ import annotations

from typing import Any

from .chain_registry import ChainConfig, chain_name
from .models import ExternalOrder, SettlementRecord


def expected_counts_by_chain(orders: list[ExternalOrder]) -> dict[int, int]:
    counts: dict[int, int] = {}
    for order in orders:
        counts[order.source_domain] = counts.get(order.source_domain, 0) + 1
    return counts


def _settlement_row(record: SettlementRecord) -> dict[str, Any]:
    return {
        'order_id': record.order_id,
        'chain_id': record.chain_id,
        'chain_name': record.chain_name,
        'amount': str(record.amount),
        'profit': str(record.profit),
        'timestamp': record.timestamp.isoformat(),
        'block_number': str(record.block_number),
        'status': record.status.value
    }


async def settlements_report(store, chains: list[ChainConfig], orders: list[ExternalOrder]) -> dict[str, Any]:
    settlements = await store.list_settlements()
    expected = expected_counts_by_chain(orders)

    grouped: dict[int, dict[str, Any]] = {}
    for record in settlements:
        group = grouped.get(record.chain_id)
        if group is None:
            group = {
                'chain_name': chain_name(chains, record.chain_id),
                'settlements': [],
                'total': 0,
                'expected_total': expected.get(record.chain_id, 0)
            }
            grouped[record.chain_id] = group
        group['settlements'].append(_settlement_row(record))
        group['total'] += 1

    for domain, count in expected.items():
        if domain not in grouped:
            grouped[domain] = {
                'chain_name': chain_name(chains, domain),
                'settlements': [],
                'total': 0,
                'expected_total': count
            }

    return {
        'settlements': grouped,
        'total_settlements': len(settlements),
        'expected_total_settlements': len(orders)
    }


async def sync_status_report(store, chains: list[ChainConfig]) -> list[dict[str, Any]]:
    rows = await store.list_chain_sync_states()
    return [
        {
            'chain_id': row.chain_id,
            'chain_name': chain_name(chains, row.chain_id),
            'last_sync_block': str(row.last_sync_block),
            'last_sync_time': row.last_sync_time.isoformat(),
            'last_update_time': row.last_update_time.isoformat()
        }
        for row in sorted(rows, key=lambda row: row.chain_id)
    ]


async def gas_info_report(store) -> dict[int, dict[str, Any]]:
    snapshots = await store.list_gas_snapshots()
    return {
        snapshot.chain_id: {
            'chain_name': snapshot.chain_name,
            'current_balance': str(snapshot.current_balance),
            'total_deposited': str(snapshot.total_deposited),
            'current_balance_usd': float(snapshot.current_balance_usd),
            'total_deposited_usd': float(snapshot.total_deposited_usd)
        }
        for snapshot in snapshots
    }
