from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, getcontext
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import DataValidationError

getcontext().prec = 78

_HEX_RE = re.compile(r'[0-9a-fA-F]*')

# Fixed 0.1% fee model.
PROFIT_DIVISOR = 1000


def normalize_order_id(raw: str) -> str:
    """Return the order id as a lower-case, 0x-prefixed, 32-byte hex string."""
    value = str(raw or '').strip()
    if value.lower().startswith('0x'):
        value = value[2:]
    if not value or len(value) > 64 or not _HEX_RE.fullmatch(value):
        raise DataValidationError(f'invalid order id: {raw!r}')
    return f'0x{value.lower().rjust(64, "0")}'


def derive_profit(amount: int) -> int:
    return abs(amount) // PROFIT_DIVISOR


class SettlementStatus(str, Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'


class OutcomeKind(str, Enum):
    SETTLED = 'settled'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass(frozen=True)
class ExternalOrder:
    order_id: str
    filler: str
    source_domain: int


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    order_id: str
    reason: str = ''
    error: BaseException | None = None

    @classmethod
    def settled(cls, order_id: str) -> Outcome:
        return cls(kind=OutcomeKind.SETTLED, order_id=order_id)

    @classmethod
    def skipped(cls, order_id: str, reason: str) -> Outcome:
        return cls(kind=OutcomeKind.SKIPPED, order_id=order_id, reason=reason)

    @classmethod
    def failed(cls, order_id: str, error: BaseException) -> Outcome:
        return cls(kind=OutcomeKind.FAILED, order_id=order_id, reason=str(error), error=error)


@dataclass(frozen=True)
class SettlementRecord:
    order_id: str
    chain_id: int
    chain_name: str
    amount: int
    profit: int
    timestamp: datetime
    block_number: int
    status: SettlementStatus = SettlementStatus.COMPLETED


@dataclass(frozen=True)
class ChainSyncState:
    chain_id: int
    last_sync_block: int
    last_sync_time: datetime
    last_update_time: datetime


@dataclass(frozen=True)
class TokenPrice:
    price_group: str
    price_usd: Decimal
    last_update_time: datetime


@dataclass(frozen=True)
class GasSnapshot:
    chain_id: int
    chain_name: str
    current_balance: int
    total_deposited: int
    current_balance_usd: Decimal
    total_deposited_usd: Decimal
    last_sync_block: int
    last_sync_time: datetime
    last_update_time: datetime


class OrderFillRow(BaseModel):
    order_id: str
    filler: str
    source_domain: int

    def to_order(self) -> ExternalOrder:
        return ExternalOrder(
            order_id=self.order_id.strip(),
            filler=self.filler.strip(),
            source_domain=self.source_domain
        )


class OrderFillPage(BaseModel):
    data: list[OrderFillRow] | None = None


class ExplorerTx(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    time_stamp: int = Field(default=0, alias='timeStamp')
    from_address: str = Field(default='', alias='from')
    to_address: str = Field(default='', alias='to')
    value: int = 0
    is_error: str = Field(default='0', alias='isError')
    block_number: int | None = Field(default=None, alias='blockNumber')
    tx_hash: str = Field(default='', alias='hash')

    @field_validator('to_address', 'from_address', mode='before')
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return '' if value is None else value


class ExplorerResponse(BaseModel):
    status: str
    message: str = ''
    result: list[ExplorerTx] | str = Field(default_factory=list)


class OraclePriceQuote(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    usd_price: Decimal | None = Field(default=None, alias='usdPrice')
    token_address: str = Field(default='', alias='tokenAddress')
