from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .chain_registry import ChainConfig
from .errors import ConfigurationError

LOGGER = logging.getLogger('solver.settlement_sync.chain_client')

BLOCK_TS_CACHE_SIZE = 4096

FAST_TRANSFER_GATEWAY_ABI = [
    {
        'inputs': [{'internalType': 'bytes32', 'name': '', 'type': 'bytes32'}],
        'name': 'settlementDetails',
        'outputs': [
            {'internalType': 'address', 'name': 'sender', 'type': 'address'},
            {'internalType': 'uint256', 'name': 'nonce', 'type': 'uint256'},
            {'internalType': 'uint32', 'name': 'destinationDomain', 'type': 'uint32'},
            {'internalType': 'uint256', 'name': 'amount', 'type': 'uint256'}
        ],
        'stateMutability': 'view',
        'type': 'function'
    },
    {
        'anonymous': False,
        'inputs': [{'indexed': True, 'internalType': 'bytes32', 'name': 'orderID', 'type': 'bytes32'}],
        'name': 'OrderSettled',
        'type': 'event'
    },
    {
        'anonymous': False,
        'inputs': [{'indexed': True, 'internalType': 'bytes32', 'name': 'orderID', 'type': 'bytes32'}],
        'name': 'OrderRefunded',
        'type': 'event'
    }
]


def _hex_prefixed(value: Any) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw
    return f'0x{raw}'


ORDER_SETTLED_TOPIC = _hex_prefixed(Web3.keccak(text='OrderSettled(bytes32)')).lower()


@dataclass(frozen=True)
class LogEntry:
    block_number: int
    transaction_hash: str
    log_index: int
    topics: tuple[str, ...]
    data: str = '0x'


@dataclass(frozen=True)
class LogFilter:
    address: str
    topics: tuple[str, ...]


@dataclass(frozen=True)
class SettlementDetails:
    sender: str
    nonce: int
    destination_domain: int
    amount: int


def _to_log_entry(raw: Any) -> LogEntry:
    return LogEntry(
        block_number=int(raw['blockNumber']),
        transaction_hash=_hex_prefixed(raw.get('transactionHash', '')),
        log_index=int(raw.get('logIndex', 0) or 0),
        topics=tuple(_hex_prefixed(topic).lower() for topic in raw.get('topics', [])),
        data=_hex_prefixed(raw.get('data', b''))
    )


class ChainClient:
    def __init__(
        self,
        chain: ChainConfig,
        web3: AsyncWeb3 | None = None,
        timeout_seconds: int = 10,
        block_cache_size: int = BLOCK_TS_CACHE_SIZE
    ) -> None:
        if web3 is None and not chain.rpc_url:
            raise ConfigurationError(f'no provider configured for chain {chain.name}', chain_id=chain.domain)
        if not Web3.is_address(chain.fast_transfer_gateway):
            raise ConfigurationError(
                f'invalid gateway address for chain {chain.name}: {chain.fast_transfer_gateway!r}',
                chain_id=chain.domain
            )

        self.chain = chain
        self.web3 = web3 or AsyncWeb3(
            AsyncHTTPProvider(chain.rpc_url, request_kwargs={'timeout': timeout_seconds})
        )
        self.gateway = self.web3.eth.contract(
            address=Web3.to_checksum_address(chain.fast_transfer_gateway),
            abi=FAST_TRANSFER_GATEWAY_ABI
        )
        self._block_ts_cache: OrderedDict[int, datetime] = OrderedDict()
        self._block_cache_size = max(1, block_cache_size)

    async def block_number(self) -> int:
        return int(await self.web3.eth.block_number)

    async def get_logs(self, log_filter: LogFilter, from_block: int, to_block: int) -> list[LogEntry]:
        raw_logs = await self.web3.eth.get_logs(
            {
                'address': Web3.to_checksum_address(log_filter.address),
                'topics': list(log_filter.topics),
                'fromBlock': from_block,
                'toBlock': to_block
            }
        )
        return [_to_log_entry(raw) for raw in raw_logs]

    async def get_balance(self, address: str) -> int:
        return int(await self.web3.eth.get_balance(Web3.to_checksum_address(address)))

    async def settlement_details(
        self,
        order_id: str,
        block_identifier: str | int | None = None
    ) -> SettlementDetails | None:
        call = self.gateway.functions.settlementDetails(Web3.to_bytes(hexstr=order_id))
        if block_identifier is None:
            result = await call.call()
        else:
            result = await call.call(block_identifier=block_identifier)
        if not result:
            return None

        sender, nonce, destination_domain, amount = result
        return SettlementDetails(
            sender=str(sender),
            nonce=int(nonce),
            destination_domain=int(destination_domain),
            amount=int(amount)
        )

    async def block_timestamp(self, block_number: int) -> datetime:
        cached = self._block_ts_cache.get(block_number)
        if cached is not None:
            self._block_ts_cache.move_to_end(block_number)
            return cached

        block = await self.web3.eth.get_block(block_number)
        ts = datetime.fromtimestamp(int(block['timestamp']), tz=timezone.utc)
        self._block_ts_cache[block_number] = ts
        while len(self._block_ts_cache) > self._block_cache_size:
            self._block_ts_cache.popitem(last=False)
        return ts
