from __future__ import annotations

import copy
from contextlib import contextmanager
from typing import Any, Iterator

from services.common.models import FALLBACK_TOKEN_SYMBOL, SplitEvent
from services.split_writer.aggregator import GlobalStatDelta, TokenStatDelta, UserStatDelta

USER_FIELDS = (
    'total_eth_sent',
    'total_eth_received',
    'total_erc20_sent',
    'total_erc20_received',
    'eth_split_count',
    'eth_received_count',
    'erc20_split_count',
    'erc20_received_count'
)


class InMemorySplitStore:
    """Store double with the same transaction surface as PostgresSplitStore.

    Every transaction snapshots the whole state and restores it on error.
    Queue exceptions on `fail_on` (keyed by transaction method name) to make
    the next call to that method raise.
    """

    def __init__(self) -> None:
        self.splits: dict[str, SplitEvent] = {}
        self.recipients: list[tuple[str, int, str, int, int]] = []
        self.user_stats: dict[tuple[str, int], dict[str, int]] = {}
        self.token_stats: dict[tuple[str, int], dict[str, Any]] = {}
        self.global_stats: dict[int, dict[str, int]] = {}
        self.participants: set[tuple[int, str, str, str]] = set()
        self.checkpoints: dict[int, int] = {}
        self.fail_on: dict[str, list[BaseException]] = {}
        self.commits = 0
        self.rollbacks = 0

    def _state(self) -> dict[str, Any]:
        return {
            'splits': self.splits,
            'recipients': self.recipients,
            'user_stats': self.user_stats,
            'token_stats': self.token_stats,
            'global_stats': self.global_stats,
            'participants': self.participants
        }

    def _maybe_fail(self, method: str) -> None:
        queued = self.fail_on.get(method)
        if queued:
            raise queued.pop(0)

    @contextmanager
    def transaction(self) -> Iterator[_InMemoryTransaction]:
        snapshot = copy.deepcopy(self._state())
        try:
            yield _InMemoryTransaction(self)
        except BaseException:
            for name, value in snapshot.items():
                setattr(self, name, value)
            self.rollbacks += 1
            raise
        self.commits += 1

    def load_checkpoint(self, chain_id: int) -> int | None:
        self._maybe_fail('load_checkpoint')
        return self.checkpoints.get(chain_id)

    def save_checkpoint(self, chain_id: int, block_number: int) -> None:
        self._maybe_fail('save_checkpoint')
        self.checkpoints[chain_id] = max(block_number, self.checkpoints.get(chain_id, block_number))

    def close(self) -> None:
        pass

    def user(self, address: str, chain_id: int) -> dict[str, int]:
        return self.user_stats.get((address, chain_id), {name: 0 for name in USER_FIELDS})


class _InMemoryTransaction:
    def __init__(self, store: InMemorySplitStore) -> None:
        self.store = store

    def insert_split(self, event: SplitEvent) -> bool:
        self.store._maybe_fail('insert_split')
        if event.id in self.store.splits:
            return False
        self.store.splits[event.id] = event
        return True

    def fetch_split(self, split_id: str) -> SplitEvent | None:
        return self.store.splits.get(split_id)

    def insert_recipients(self, event: SplitEvent) -> None:
        self.store._maybe_fail('insert_recipients')
        for index, (recipient, amount) in enumerate(zip(event.recipients, event.recipient_amounts())):
            self.store.recipients.append((event.id, index, recipient, amount, event.chain_id))

    def apply_user_delta(self, delta: UserStatDelta) -> None:
        self.store._maybe_fail('apply_user_delta')
        row = self.store.user_stats.setdefault(
            (delta.address, delta.chain_id),
            {**{name: 0 for name in USER_FIELDS}, 'last_activity_timestamp': 0}
        )
        row['total_eth_sent'] += delta.eth_sent
        row['total_eth_received'] += delta.eth_received
        row['total_erc20_sent'] += delta.erc20_sent
        row['total_erc20_received'] += delta.erc20_received
        row['eth_split_count'] += delta.eth_split_count
        row['eth_received_count'] += delta.eth_received_count
        row['erc20_split_count'] += delta.erc20_split_count
        row['erc20_received_count'] += delta.erc20_received_count
        row['last_activity_timestamp'] = max(row['last_activity_timestamp'], delta.last_activity_timestamp)

    def add_participant(self, chain_id: int, scope: str, role: str, address: str) -> bool:
        key = (chain_id, scope, role, address)
        if key in self.store.participants:
            return False
        self.store.participants.add(key)
        return True

    def apply_token_delta(self, delta: TokenStatDelta) -> None:
        self.store._maybe_fail('apply_token_delta')
        row = self.store.token_stats.get((delta.token_address, delta.chain_id))
        if row is None:
            row = {
                'token_symbol': delta.token_symbol,
                'token_decimals': delta.token_decimals,
                'total_volume': 0,
                'split_count': 0,
                'unique_senders': 0,
                'unique_recipients': 0,
                'last_activity_timestamp': 0
            }
            self.store.token_stats[(delta.token_address, delta.chain_id)] = row
        elif delta.token_symbol is not None and delta.token_symbol != FALLBACK_TOKEN_SYMBOL:
            row['token_symbol'] = delta.token_symbol
            row['token_decimals'] = delta.token_decimals
        elif row['token_symbol'] is None:
            row['token_symbol'] = delta.token_symbol
            row['token_decimals'] = delta.token_decimals

        row['total_volume'] += delta.volume
        row['split_count'] += delta.split_count
        row['unique_senders'] += delta.new_senders
        row['unique_recipients'] += delta.new_recipients
        row['last_activity_timestamp'] = max(row['last_activity_timestamp'], delta.last_activity_timestamp)

    def apply_global_delta(self, delta: GlobalStatDelta) -> None:
        self.store._maybe_fail('apply_global_delta')
        row = self.store.global_stats.setdefault(
            delta.chain_id,
            {
                'total_eth_volume': 0,
                'total_erc20_volume': 0,
                'total_eth_splits': 0,
                'total_erc20_splits': 0,
                'total_unique_senders': 0,
                'total_unique_recipients': 0,
                'last_activity_timestamp': 0
            }
        )
        row['total_eth_volume'] += delta.eth_volume
        row['total_erc20_volume'] += delta.erc20_volume
        row['total_eth_splits'] += delta.eth_splits
        row['total_erc20_splits'] += delta.erc20_splits
        row['total_unique_senders'] += delta.new_senders
        row['total_unique_recipients'] += delta.new_recipients
        row['last_activity_timestamp'] = max(row['last_activity_timestamp'], delta.last_activity_timestamp)
