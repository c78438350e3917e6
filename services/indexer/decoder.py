from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from services.common.abi import SPLITTER_EVENTS_ABI, event_signature
from services.common.models import RawLog, SplitEvent, SplitType, hex_prefixed

LOGGER = logging.getLogger('splitter.decoder')

EVENT_TYPES: dict[str, SplitType] = {
    'EthSplit': SplitType.ETH_SPLIT,
    'EthSplitEqual': SplitType.ETH_EQUAL_SPLIT,
    'Erc20Split': SplitType.ERC20_SPLIT,
    'Erc20SplitEqual': SplitType.ERC20_EQUAL_SPLIT
}


class EventDecodeError(Exception):
    def __init__(self, event_name: str, raw: RawLog, detail: str) -> None:
        super().__init__(
            f'cannot decode {event_name} chain_id={raw.chain_id} tx_hash={raw.transaction_hash} '
            f'log_index={raw.log_index}: {detail}'
        )
        self.event_name = event_name
        self.raw = raw
        self.detail = detail


@dataclass(frozen=True)
class EventShape:
    name: str
    split_type: SplitType
    topic: str
    indexed: tuple[tuple[str, str], ...]
    data: tuple[tuple[str, str], ...]


def build_event_shapes(abi: list[dict[str, Any]]) -> dict[str, EventShape]:
    shapes: dict[str, EventShape] = {}
    for entry in abi:
        if entry.get('type') != 'event' or entry.get('name') not in EVENT_TYPES:
            continue
        inputs = entry.get('inputs', [])
        shape = EventShape(
            name=entry['name'],
            split_type=EVENT_TYPES[entry['name']],
            topic=hex_prefixed(Web3.keccak(text=event_signature(entry))),
            indexed=tuple((item['name'], item['type']) for item in inputs if item.get('indexed')),
            data=tuple((item['name'], item['type']) for item in inputs if not item.get('indexed'))
        )
        shapes[shape.topic] = shape

    missing = set(EVENT_TYPES) - {shape.name for shape in shapes.values()}
    if missing:
        raise ValueError(f"splitter abi is missing events: {', '.join(sorted(missing))}")
    return shapes


def _normalize(value: Any) -> Any:
    if isinstance(value, str) and value.startswith('0x'):
        return value.lower()
    if isinstance(value, (list, tuple)):
        return tuple(_normalize(item) for item in value)
    return value


class SplitEventDecoder:
    def __init__(self, abi: list[dict[str, Any]] | None = None) -> None:
        self.shapes = build_event_shapes(abi if abi is not None else SPLITTER_EVENTS_ABI)

    @property
    def topics(self) -> list[str]:
        return list(self.shapes.keys())

    def decode(self, raw: RawLog) -> SplitEvent | None:
        if not raw.topics:
            return None
        shape = self.shapes.get(raw.topics[0].lower())
        if shape is None:
            LOGGER.debug('ignoring unknown topic=%s tx_hash=%s', raw.topics[0], raw.transaction_hash)
            return None

        args = self._decode_args(shape, raw)
        return self._build_event(shape, raw, args)

    def _decode_args(self, shape: EventShape, raw: RawLog) -> dict[str, Any]:
        topics = raw.topics[1:]
        if len(topics) != len(shape.indexed):
            raise EventDecodeError(
                shape.name,
                raw,
                f'expected {len(shape.indexed)} indexed topics, got {len(topics)}'
            )

        args: dict[str, Any] = {}
        try:
            for (name, abi_type), topic in zip(shape.indexed, topics):
                (value,) = decode([abi_type], bytes.fromhex(topic[2:]))
                args[name] = _normalize(value)

            values = decode([abi_type for _, abi_type in shape.data], bytes(raw.data))
        except (DecodingError, ValueError, OverflowError, TypeError) as exc:
            raise EventDecodeError(shape.name, raw, str(exc)) from exc

        for (name, _), value in zip(shape.data, values):
            args[name] = _normalize(value)
        return args

    def _build_event(self, shape: EventShape, raw: RawLog, args: dict[str, Any]) -> SplitEvent:
        recipients = tuple(args.get('recipients') or ())
        if not recipients:
            raise EventDecodeError(shape.name, raw, 'event carries no recipients')

        total_amount = args.get('totalAmount')
        amounts: tuple[int, ...] | None = None
        amount_per_recipient: int | None = None

        if shape.split_type.is_equal:
            if total_amount is None:
                raise EventDecodeError(shape.name, raw, 'equal split without totalAmount')
            # Floor division: the remainder stays with the sender on-chain.
            amount_per_recipient = int(total_amount) // len(recipients)
        else:
            amounts = tuple(int(x) for x in args.get('amounts') or ())
            if len(amounts) != len(recipients):
                raise EventDecodeError(
                    shape.name,
                    raw,
                    f'{len(recipients)} recipients but {len(amounts)} amounts'
                )
            if total_amount is None:
                total_amount = sum(amounts)
            elif sum(amounts) != int(total_amount):
                raise EventDecodeError(
                    shape.name,
                    raw,
                    f'amounts sum to {sum(amounts)} but totalAmount is {total_amount}'
                )

        return SplitEvent(
            split_type=shape.split_type,
            chain_id=raw.chain_id,
            contract_address=raw.address.lower(),
            transaction_hash=raw.transaction_hash.lower(),
            log_index=raw.log_index,
            sender=str(args['sender']),
            total_amount=int(total_amount),
            recipients=recipients,
            block_number=raw.block_number,
            block_timestamp=raw.block_timestamp,
            amounts=amounts,
            amount_per_recipient=amount_per_recipient,
            token=str(args['token']) if shape.split_type.is_erc20 else None
        )
