from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

FALLBACK_TOKEN_SYMBOL = 'UNKNOWN'
FALLBACK_TOKEN_DECIMALS = 18


class SplitType(str, Enum):
    ETH_SPLIT = 'ETH_SPLIT'
    ETH_EQUAL_SPLIT = 'ETH_EQUAL_SPLIT'
    ERC20_SPLIT = 'ERC20_SPLIT'
    ERC20_EQUAL_SPLIT = 'ERC20_EQUAL_SPLIT'

    @property
    def is_erc20(self) -> bool:
        return self in (SplitType.ERC20_SPLIT, SplitType.ERC20_EQUAL_SPLIT)

    @property
    def is_equal(self) -> bool:
        return self in (SplitType.ETH_EQUAL_SPLIT, SplitType.ERC20_EQUAL_SPLIT)


@dataclass(frozen=True)
class RawLog:
    chain_id: int
    address: str
    topics: tuple[str, ...]
    data: bytes
    block_number: int
    block_timestamp: int
    transaction_hash: str
    log_index: int


@dataclass(frozen=True)
class TokenMetadata:
    symbol: str
    decimals: int

    @property
    def is_fallback(self) -> bool:
        return self.symbol == FALLBACK_TOKEN_SYMBOL and self.decimals == FALLBACK_TOKEN_DECIMALS


def hex_prefixed(value: Any) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw.lower()
    return f'0x{raw}'.lower()


def split_event_id(chain_id: int, transaction_hash: str, log_index: int) -> str:
    return f'{chain_id}:{transaction_hash.lower()}:{log_index}'


@dataclass(frozen=True)
class SplitEvent:
    split_type: SplitType
    chain_id: int
    contract_address: str
    transaction_hash: str
    log_index: int
    sender: str
    total_amount: int
    recipients: tuple[str, ...]
    block_number: int
    block_timestamp: int
    amounts: tuple[int, ...] | None = None
    amount_per_recipient: int | None = None
    token: str | None = None
    token_symbol: str | None = None
    token_decimals: int | None = None
    id: str = field(default='', compare=False)

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, 'id', split_event_id(self.chain_id, self.transaction_hash, self.log_index))

        if self.split_type.is_equal:
            if self.amount_per_recipient is None or self.amounts is not None:
                raise ValueError(f'{self.split_type.value} requires amount_per_recipient only')
        elif self.amounts is None or self.amount_per_recipient is not None:
            raise ValueError(f'{self.split_type.value} requires amounts only')
        elif len(self.amounts) != len(self.recipients):
            raise ValueError(
                f'{self.split_type.value} has {len(self.recipients)} recipients but {len(self.amounts)} amounts'
            )

        if self.split_type.is_erc20 and not self.token:
            raise ValueError(f'{self.split_type.value} requires a token address')
        if not self.split_type.is_erc20 and self.token is not None:
            raise ValueError(f'{self.split_type.value} cannot carry a token address')

    @property
    def recipient_count(self) -> int:
        return len(self.recipients)

    @property
    def is_erc20(self) -> bool:
        return self.split_type.is_erc20

    def recipient_amounts(self) -> list[int]:
        if self.amounts is not None:
            return list(self.amounts)
        return [int(self.amount_per_recipient or 0)] * self.recipient_count

    def with_token_metadata(self, metadata: TokenMetadata) -> SplitEvent:
        return replace(self, token_symbol=metadata.symbol, token_decimals=metadata.decimals)

    def log_fingerprint(self) -> tuple:
        # Resolved token metadata is excluded: a retry may resolve what an
        # earlier attempt had to fall back on.
        return (
            self.id,
            self.split_type.value,
            self.chain_id,
            self.contract_address,
            self.transaction_hash,
            self.log_index,
            self.sender,
            self.total_amount,
            self.recipients,
            self.amounts,
            self.amount_per_recipient,
            self.token,
            self.block_number,
            self.block_timestamp
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'type': self.split_type.value,
            'chain_id': self.chain_id,
            'contract_address': self.contract_address,
            'transaction_hash': self.transaction_hash,
            'log_index': self.log_index,
            'sender': self.sender,
            'total_amount': str(self.total_amount),
            'recipients': list(self.recipients),
            'recipient_count': self.recipient_count,
            'amounts': [str(x) for x in self.amounts] if self.amounts is not None else None,
            'amount_per_recipient': (
                str(self.amount_per_recipient) if self.amount_per_recipient is not None else None
            ),
            'token': self.token,
            'token_symbol': self.token_symbol,
            'token_decimals': self.token_decimals,
            'block_number': self.block_number,
            'block_timestamp': self.block_timestamp
        }


def _json_list(value: Any) -> list | None:
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        value = json.loads(value)
    return list(value)


def split_from_row(row: Mapping[str, Any]) -> SplitEvent:
    amounts = _json_list(row['amounts'])
    amount_per_recipient = row['amount_per_recipient']
    token_decimals = row['token_decimals']
    return SplitEvent(
        id=str(row['id']),
        split_type=SplitType(row['split_type']),
        chain_id=int(row['chain_id']),
        contract_address=str(row['contract_address']),
        transaction_hash=str(row['transaction_hash']),
        log_index=int(row['log_index']),
        sender=str(row['sender']),
        total_amount=int(row['total_amount']),
        recipients=tuple(str(x) for x in _json_list(row['recipients']) or []),
        block_number=int(row['block_number']),
        block_timestamp=int(row['block_timestamp']),
        amounts=tuple(int(x) for x in amounts) if amounts is not None else None,
        amount_per_recipient=int(amount_per_recipient) if amount_per_recipient is not None else None,
        token=row['token'],
        token_symbol=row['token_symbol'],
        token_decimals=int(token_decimals) if token_decimals is not None else None
    )
