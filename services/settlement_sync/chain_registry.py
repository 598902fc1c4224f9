from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import get_settings
from .errors import ConfigurationError
from .retry import BackoffPolicy

LOGGER = logging.getLogger('solver.settlement_sync.chain_registry')

PRICE_GROUPS = ('ETH', 'MATIC', 'AVAX')

WETH_MAINNET = '0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2'
MATIC_MAINNET = '0x7D1AfA7B718fb893dB30A3aBc0Cfc608AaCfeBB0'
WAVAX_MAINNET = '0x85f138bfEE4ef8e540890CFb48F620571d67Eda3'

# Representative mainnet token used to price each group.
PRICE_GROUP_TOKENS: dict[str, str] = {
    'ETH': WETH_MAINNET,
    'MATIC': MATIC_MAINNET,
    'AVAX': WAVAX_MAINNET
}

MAILBOX = '0x2f9DB5616fa3fAd1aB06cB2C906830BA63d135e3'

CHAIN_SPECS: list[dict[str, Any]] = [
    {
        'domain': 1,
        'name': 'Ethereum',
        'rpc_env_key': 'ETHEREUM_RPC_URL',
        'default_rpc_url': 'https://eth.chandrastation.com',
        'token': '0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48',
        'fast_transfer_gateway': '0xe7935104c9670015b21c6300e5b95d2f75474cda',
        'deployment_block': 0x142825A,
        'retry_attempts': 3,
        'retry_delay_seconds': 1.0,
        'native_token': 'ETH',
        'price_group': 'ETH',
        'explorer_api_url': 'https://api.etherscan.io/api',
        'explorer_key_env': 'ETHERSCAN_API_KEY'
    },
    {
        'domain': 43114,
        'name': 'Avalanche',
        'rpc_env_key': 'AVALANCHE_RPC_URL',
        'default_rpc_url': 'https://avax.chandrastation.com/ext/bc/C/rpc',
        'token': '0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E',
        'fast_transfer_gateway': '0xD415B02A7E91dBAf92EAa4721F9289CFB7f4E1cF',
        'deployment_block': 0x3253B57,
        'retry_attempts': 5,
        'retry_delay_seconds': 2.0,
        'native_token': 'AVAX',
        'price_group': 'AVAX',
        'explorer_api_url': 'https://api.snowtrace.io/api',
        'explorer_key_env': ''
    },
    {
        'domain': 10,
        'name': 'Optimism',
        'rpc_env_key': 'OPTIMISM_RPC_URL',
        'default_rpc_url': 'https://mainnet.optimism.io',
        'token': '0x0b2c639c533813f4aa9d7837caf62653d097ff85',
        'fast_transfer_gateway': '0x0f479de4fd3144642f1af88e3797b1821724f703',
        'deployment_block': 0x79C6C77,
        'retry_attempts': 3,
        'retry_delay_seconds': 1.0,
        'native_token': 'ETH',
        'price_group': 'ETH',
        'explorer_api_url': 'https://api-optimistic.etherscan.io/api',
        'explorer_key_env': 'OPTIMISM_API_KEY'
    },
    {
        'domain': 42161,
        'name': 'Arbitrum',
        'rpc_env_key': 'ARBITRUM_RPC_URL',
        'default_rpc_url': 'https://arb.chandrastation.com',
        'token': '0xaf88d065e77c8cC2239327C5EDb3A432268e5831',
        'fast_transfer_gateway': '0x23cb6147e5600c23d1fb5543916d3d5457c9b54c',
        'deployment_block': 0x10315733,
        'retry_attempts': 3,
        'retry_delay_seconds': 1.0,
        'native_token': 'ETH',
        'price_group': 'ETH',
        'explorer_api_url': 'https://api.arbiscan.io/api',
        'explorer_key_env': 'ARBISCAN_API_KEY'
    },
    {
        'domain': 8453,
        'name': 'Base',
        'rpc_env_key': 'BASE_RPC_URL',
        'default_rpc_url': 'https://base.chandrastation.com',
        'token': '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913',
        'fast_transfer_gateway': '0x43d090025aaa6c8693b71952b910ac55ccb56bbb',
        'deployment_block': 0x1512B9B,
        'retry_attempts': 3,
        'retry_delay_seconds': 1.0,
        'native_token': 'ETH',
        'price_group': 'ETH',
        'explorer_api_url': 'https://api.basescan.org/api',
        'explorer_key_env': 'BASESCAN_API_KEY'
    },
    {
        'domain': 137,
        'name': 'Polygon',
        'rpc_env_key': 'POLYGON_RPC_URL',
        'default_rpc_url': 'https://polygon-rpc.com',
        'token': '0x3c499c542cef5e3811e1192ce70d8cc03d5c3359',
        'fast_transfer_gateway': '0x3ffaf8d0d33226302e3a0ae48367cf1dd2023b1f',
        'deployment_block': 0x3D07966,
        'retry_attempts': 5,
        'retry_delay_seconds': 2.0,
        'native_token': 'MATIC',
        'price_group': 'MATIC',
        'explorer_api_url': 'https://api.polygonscan.com/api',
        'explorer_key_env': 'POLYGONSCAN_API_KEY'
    }
]


@dataclass(frozen=True)
class ChainConfig:
    domain: int
    name: str
    rpc_url: str
    token: str
    fast_transfer_gateway: str
    mailbox: str
    deployment_block: int
    retry_attempts: int
    retry_delay_seconds: float
    native_token: str
    price_group: str
    wrapped_token_address: str
    decimals: int
    explorer_api_url: str
    explorer_api_key: str

    def retry_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.retry_attempts,
            base_delay=self.retry_delay_seconds,
            growth='linear'
        )


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _registry_path(configured: str) -> Path | None:
    if not configured:
        return None
    path = Path(configured)
    if path.is_absolute():
        return path
    return _repo_root() / path


def _load_registry_overrides(configured: str) -> dict[int, dict[str, Any]]:
    path = _registry_path(configured)
    if path is None or not path.exists():
        return {}

    try:
        payload = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError:
        LOGGER.warning('chain registry is not valid json path=%s', path)
        return {}

    chains = payload.get('chains', []) if isinstance(payload, dict) else []
    if not isinstance(chains, list):
        return {}

    overrides: dict[int, dict[str, Any]] = {}
    for chain in chains:
        if not isinstance(chain, dict):
            continue
        try:
            domain = int(chain.get('domain', 0))
        except (TypeError, ValueError):
            continue
        if domain <= 0:
            continue
        overrides[domain] = chain
    return overrides


def _safe_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _safe_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _chain_from_entry(entry: dict[str, Any]) -> ChainConfig:
    domain = int(entry['domain'])
    rpc_env_key = str(entry.get('rpc_env_key', '')).strip()
    rpc_from_env = os.getenv(rpc_env_key, '').strip() if rpc_env_key else ''
    key_env = str(entry.get('explorer_key_env', '')).strip()

    price_group = str(entry.get('price_group', 'ETH')).strip().upper()
    if price_group not in PRICE_GROUPS:
        raise ConfigurationError(f'unsupported price group {price_group}', chain_id=domain)

    wrapped = str(entry.get('wrapped_token_address', '')).strip() or PRICE_GROUP_TOKENS[price_group]

    return ChainConfig(
        domain=domain,
        name=str(entry.get('name', domain)),
        rpc_url=rpc_from_env or str(entry.get('default_rpc_url', '')).strip(),
        token=str(entry.get('token', '')).strip(),
        fast_transfer_gateway=str(entry.get('fast_transfer_gateway', '')).strip(),
        mailbox=str(entry.get('mailbox', MAILBOX)).strip(),
        deployment_block=max(0, _safe_int(entry.get('deployment_block'), 0)),
        retry_attempts=max(1, _safe_int(entry.get('retry_attempts'), 3)),
        retry_delay_seconds=max(0.0, _safe_float(entry.get('retry_delay_seconds'), 1.0)),
        native_token=str(entry.get('native_token', price_group)).strip(),
        price_group=price_group,
        wrapped_token_address=wrapped,
        decimals=max(0, min(36, _safe_int(entry.get('decimals'), 18))),
        explorer_api_url=str(entry.get('explorer_api_url', '')).strip(),
        explorer_api_key=os.getenv(key_env, '').strip() if key_env else ''
    )


def load_chains() -> list[ChainConfig]:
    settings = get_settings()
    overrides = _load_registry_overrides(settings.chain_registry_path)

    specs: dict[int, dict[str, Any]] = {int(entry['domain']): dict(entry) for entry in CHAIN_SPECS}
    for domain, override in overrides.items():
        merged = specs.get(domain, {})
        merged.update(override)
        merged['domain'] = domain
        specs[domain] = merged

    chains = [_chain_from_entry(entry) for entry in specs.values()]
    if settings.enabled_chain_ids:
        enabled = set(settings.enabled_chain_ids)
        chains = [chain for chain in chains if chain.domain in enabled]
    return chains


def chain_by_domain(chains: list[ChainConfig], domain: int) -> ChainConfig:
    for chain in chains:
        if chain.domain == domain:
            return chain
    raise ConfigurationError(f'no sync config found for chain {domain}', chain_id=domain)


def chain_name(chains: list[ChainConfig], domain: int) -> str:
    for chain in chains:
        if chain.domain == domain:
            return chain.name
    return 'Unknown'
