from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ContextManager, Protocol

import psycopg2

from services.common.models import SplitEvent
from services.common.retry import RetryPolicy

LOGGER = logging.getLogger('splitter.aggregator')

PERSISTENCE_RETRY_ERRORS: tuple[type[BaseException], ...] = (
    psycopg2.OperationalError,
    psycopg2.InterfaceError
)

CHAIN_SCOPE = 'chain'
ROLE_SENDER = 'sender'
ROLE_RECIPIENT = 'recipient'


def token_scope(token_address: str) -> str:
    return f'token:{token_address.lower()}'


class SplitConflictError(Exception):
    def __init__(self, split_id: str, stored: SplitEvent | None, incoming: SplitEvent) -> None:
        super().__init__(f'split id={split_id} already stored with different content')
        self.split_id = split_id
        self.stored = stored
        self.incoming = incoming


@dataclass
class UserStatDelta:
    address: str
    chain_id: int
    eth_sent: int = 0
    eth_received: int = 0
    erc20_sent: int = 0
    erc20_received: int = 0
    eth_split_count: int = 0
    eth_received_count: int = 0
    erc20_split_count: int = 0
    erc20_received_count: int = 0
    last_activity_timestamp: int = 0


@dataclass
class TokenStatDelta:
    token_address: str
    chain_id: int
    token_symbol: str | None
    token_decimals: int | None
    volume: int
    split_count: int
    new_senders: int
    new_recipients: int
    last_activity_timestamp: int


@dataclass
class GlobalStatDelta:
    chain_id: int
    eth_volume: int
    erc20_volume: int
    eth_splits: int
    erc20_splits: int
    new_senders: int
    new_recipients: int
    last_activity_timestamp: int


class SplitTransaction(Protocol):
    def insert_split(self, event: SplitEvent) -> bool: ...

    def fetch_split(self, split_id: str) -> SplitEvent | None: ...

    def insert_recipients(self, event: SplitEvent) -> None: ...

    def apply_user_delta(self, delta: UserStatDelta) -> None: ...

    def add_participant(self, chain_id: int, scope: str, role: str, address: str) -> bool: ...

    def apply_token_delta(self, delta: TokenStatDelta) -> None: ...

    def apply_global_delta(self, delta: GlobalStatDelta) -> None: ...


class SplitStore(Protocol):
    def transaction(self) -> ContextManager[Any]: ...

    def load_checkpoint(self, chain_id: int) -> int | None: ...

    def save_checkpoint(self, chain_id: int, block_number: int) -> None: ...


def recipient_shares(event: SplitEvent) -> list[tuple[str, int]]:
    """Amount credited to each distinct recipient, in first-appearance order.

    A recipient listed more than once receives the sum of its entries, so the
    received totals always add up to what the split paid out.
    """
    shares: dict[str, int] = {}
    for recipient, amount in zip(event.recipients, event.recipient_amounts()):
        shares[recipient] = shares.get(recipient, 0) + amount
    return list(shares.items())


def user_stat_deltas(event: SplitEvent) -> list[UserStatDelta]:
    deltas: dict[str, UserStatDelta] = {}

    def delta_for(address: str) -> UserStatDelta:
        if address not in deltas:
            deltas[address] = UserStatDelta(
                address=address,
                chain_id=event.chain_id,
                last_activity_timestamp=event.block_timestamp
            )
        return deltas[address]

    sender = delta_for(event.sender)
    if event.is_erc20:
        sender.erc20_sent += event.total_amount
        sender.erc20_split_count += 1
    else:
        sender.eth_sent += event.total_amount
        sender.eth_split_count += 1

    for recipient, share in recipient_shares(event):
        delta = delta_for(recipient)
        if event.is_erc20:
            delta.erc20_received += share
            delta.erc20_received_count += 1
        else:
            delta.eth_received += share
            delta.eth_received_count += 1

    return list(deltas.values())


class SplitAggregator:
    """Commits one decoded split and every aggregate it touches atomically.

    Re-applying an already committed split is a no-op; a stored row whose
    log content differs from the incoming one raises SplitConflictError and
    is left untouched.
    """

    def __init__(self, store: SplitStore, retry: RetryPolicy | None = None) -> None:
        self.store = store
        self.retry = retry or RetryPolicy(retry_on=PERSISTENCE_RETRY_ERRORS, give_up_on=())

    def apply(self, event: SplitEvent) -> bool:
        return self.retry.call(lambda: self._apply_once(event), operation=f'persist split id={event.id}')

    def _apply_once(self, event: SplitEvent) -> bool:
        with self.store.transaction() as tx:
            if not tx.insert_split(event):
                stored = tx.fetch_split(event.id)
                if stored is None or stored.log_fingerprint() != event.log_fingerprint():
                    raise SplitConflictError(event.id, stored, event)
                LOGGER.info('duplicate split skipped id=%s', event.id)
                return False

            tx.insert_recipients(event)
            for delta in user_stat_deltas(event):
                tx.apply_user_delta(delta)

            new_chain_senders = int(tx.add_participant(event.chain_id, CHAIN_SCOPE, ROLE_SENDER, event.sender))
            new_chain_recipients = 0
            for recipient, _ in recipient_shares(event):
                new_chain_recipients += int(tx.add_participant(event.chain_id, CHAIN_SCOPE, ROLE_RECIPIENT, recipient))

            if event.is_erc20:
                self._apply_token_stats(tx, event)

            tx.apply_global_delta(
                GlobalStatDelta(
                    chain_id=event.chain_id,
                    eth_volume=0 if event.is_erc20 else event.total_amount,
                    erc20_volume=event.total_amount if event.is_erc20 else 0,
                    eth_splits=0 if event.is_erc20 else 1,
                    erc20_splits=1 if event.is_erc20 else 0,
                    new_senders=new_chain_senders,
                    new_recipients=new_chain_recipients,
                    last_activity_timestamp=event.block_timestamp
                )
            )

        LOGGER.info(
            'split committed id=%s type=%s sender=%s total_amount=%s recipients=%s block=%s',
            event.id,
            event.split_type.value,
            event.sender,
            event.total_amount,
            event.recipient_count,
            event.block_number
        )
        return True

    def _apply_token_stats(self, tx: SplitTransaction, event: SplitEvent) -> None:
        assert event.token is not None
        scope = token_scope(event.token)
        new_senders = int(tx.add_participant(event.chain_id, scope, ROLE_SENDER, event.sender))
        new_recipients = 0
        for recipient, _ in recipient_shares(event):
            new_recipients += int(tx.add_participant(event.chain_id, scope, ROLE_RECIPIENT, recipient))

        tx.apply_token_delta(
            TokenStatDelta(
                token_address=event.token,
                chain_id=event.chain_id,
                token_symbol=event.token_symbol,
                token_decimals=event.token_decimals,
                volume=event.total_amount,
                split_count=1,
                new_senders=new_senders,
                new_recipients=new_recipients,
                last_activity_timestamp=event.block_timestamp
            )
        )
