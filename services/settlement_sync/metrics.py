from __future__ import annotations

from prometheus_client import Counter, Gauge

SETTLEMENT_OUTCOMES_TOTAL = Counter(
    'solver_settlement_outcomes_total',
    'Reconciled orders by outcome',
    ['chain_id', 'outcome']
)

CHAIN_SYNC_FAILURES_TOTAL = Counter(
    'solver_chain_sync_failures_total',
    'Per-chain pipeline failures',
    ['pipeline', 'chain_id']
)

CHAIN_LAST_SYNC_BLOCK = Gauge(
    'solver_chain_last_sync_block',
    'Chain head recorded by the last settlement sync',
    ['chain_id']
)

TOKEN_PRICE_USD = Gauge(
    'solver_token_price_usd',
    'In-memory USD spot price per price group',
    ['price_group']
)

GAS_BALANCE_USD = Gauge(
    'solver_gas_balance_usd',
    'Solver native balance in USD',
    ['chain_id']
)
