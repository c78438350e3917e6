from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import psycopg2
from psycopg2.extras import Json, RealDictCursor, execute_values

from services.common.models import FALLBACK_TOKEN_SYMBOL, SplitEvent, split_from_row
from services.split_writer.aggregator import GlobalStatDelta, TokenStatDelta, UserStatDelta

LOGGER = logging.getLogger('splitter.store')

SCHEMA_STATEMENTS: tuple[str, ...] = (
    '''
    CREATE TABLE IF NOT EXISTS split_events (
      id TEXT PRIMARY KEY,
      split_type TEXT NOT NULL CHECK (
        split_type IN ('ETH_SPLIT', 'ETH_EQUAL_SPLIT', 'ERC20_SPLIT', 'ERC20_EQUAL_SPLIT')
      ),
      chain_id BIGINT NOT NULL,
      contract_address TEXT NOT NULL,
      transaction_hash TEXT NOT NULL,
      log_index INTEGER NOT NULL,
      sender TEXT NOT NULL,
      total_amount NUMERIC(78, 0) NOT NULL CHECK (total_amount >= 0),
      recipients JSONB NOT NULL,
      recipient_count INTEGER NOT NULL,
      amounts JSONB,
      amount_per_recipient NUMERIC(78, 0),
      token TEXT,
      token_symbol TEXT,
      token_decimals SMALLINT,
      block_number BIGINT NOT NULL,
      block_timestamp BIGINT NOT NULL,
      indexed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
      UNIQUE (chain_id, transaction_hash, log_index),
      CHECK ((amounts IS NULL) <> (amount_per_recipient IS NULL)),
      CHECK (recipient_count = jsonb_array_length(recipients)),
      CHECK ((split_type LIKE 'ERC20%') = (token IS NOT NULL))
    )
    ''',
    'CREATE INDEX IF NOT EXISTS split_events_sender_block_idx ON split_events (sender, block_number, id)',
    'CREATE INDEX IF NOT EXISTS split_events_block_timestamp_idx ON split_events (block_timestamp)',
    'CREATE INDEX IF NOT EXISTS split_events_chain_idx ON split_events (chain_id)',
    '''
    CREATE TABLE IF NOT EXISTS split_recipients (
      split_id TEXT NOT NULL REFERENCES split_events (id),
      recipient_index INTEGER NOT NULL,
      recipient TEXT NOT NULL,
      amount NUMERIC(78, 0) NOT NULL,
      chain_id BIGINT NOT NULL,
      PRIMARY KEY (split_id, recipient_index)
    )
    ''',
    'CREATE INDEX IF NOT EXISTS split_recipients_recipient_idx ON split_recipients (recipient)',
    '''
    CREATE TABLE IF NOT EXISTS user_stats (
      address TEXT NOT NULL,
      chain_id BIGINT NOT NULL,
      total_eth_sent NUMERIC NOT NULL DEFAULT 0,
      total_eth_received NUMERIC NOT NULL DEFAULT 0,
      total_erc20_sent NUMERIC NOT NULL DEFAULT 0,
      total_erc20_received NUMERIC NOT NULL DEFAULT 0,
      eth_split_count BIGINT NOT NULL DEFAULT 0,
      eth_received_count BIGINT NOT NULL DEFAULT 0,
      erc20_split_count BIGINT NOT NULL DEFAULT 0,
      erc20_received_count BIGINT NOT NULL DEFAULT 0,
      last_activity_timestamp BIGINT NOT NULL DEFAULT 0,
      PRIMARY KEY (address, chain_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS token_stats (
      token_address TEXT NOT NULL,
      chain_id BIGINT NOT NULL,
      token_symbol TEXT,
      token_decimals SMALLINT,
      total_volume NUMERIC NOT NULL DEFAULT 0,
      split_count BIGINT NOT NULL DEFAULT 0,
      unique_senders BIGINT NOT NULL DEFAULT 0,
      unique_recipients BIGINT NOT NULL DEFAULT 0,
      last_activity_timestamp BIGINT NOT NULL DEFAULT 0,
      PRIMARY KEY (token_address, chain_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS global_stats (
      chain_id BIGINT PRIMARY KEY,
      total_eth_volume NUMERIC NOT NULL DEFAULT 0,
      total_erc20_volume NUMERIC NOT NULL DEFAULT 0,
      total_eth_splits BIGINT NOT NULL DEFAULT 0,
      total_erc20_splits BIGINT NOT NULL DEFAULT 0,
      total_unique_senders BIGINT NOT NULL DEFAULT 0,
      total_unique_recipients BIGINT NOT NULL DEFAULT 0,
      last_activity_timestamp BIGINT NOT NULL DEFAULT 0
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS split_participants (
      chain_id BIGINT NOT NULL,
      scope TEXT NOT NULL,
      role TEXT NOT NULL CHECK (role IN ('sender', 'recipient')),
      address TEXT NOT NULL,
      PRIMARY KEY (chain_id, scope, role, address)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS indexer_checkpoints (
      chain_id BIGINT PRIMARY KEY,
      last_block BIGINT NOT NULL,
      updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    '''
)

SPLIT_COLUMNS = '''
  id,
  split_type,
  chain_id,
  contract_address,
  transaction_hash,
  log_index,
  sender,
  total_amount,
  recipients,
  recipient_count,
  amounts,
  amount_per_recipient,
  token,
  token_symbol,
  token_decimals,
  block_number,
  block_timestamp
'''


class PostgresSplitTransaction:
    def __init__(self, cur) -> None:
        self.cur = cur

    def insert_split(self, event: SplitEvent) -> bool:
        self.cur.execute(
            '''
            INSERT INTO split_events ('''
            + SPLIT_COLUMNS
            + ''')
            VALUES (
              %s, %s, %s, %s, %s, %s, %s, %s, %s,
              %s, %s, %s, %s, %s, %s, %s, %s
            )
            ON CONFLICT (id) DO NOTHING
            RETURNING id
            ''',
            (
                event.id,
                event.split_type.value,
                event.chain_id,
                event.contract_address,
                event.transaction_hash,
                event.log_index,
                event.sender,
                event.total_amount,
                Json(list(event.recipients)),
                event.recipient_count,
                Json([str(x) for x in event.amounts]) if event.amounts is not None else None,
                event.amount_per_recipient,
                event.token,
                event.token_symbol,
                event.token_decimals,
                event.block_number,
                event.block_timestamp
            )
        )
        return self.cur.fetchone() is not None

    def fetch_split(self, split_id: str) -> SplitEvent | None:
        self.cur.execute('SELECT ' + SPLIT_COLUMNS + ' FROM split_events WHERE id = %s', (split_id,))
        row = self.cur.fetchone()
        if row is None:
            return None
        return split_from_row(row)

    def insert_recipients(self, event: SplitEvent) -> None:
        execute_values(
            self.cur,
            '''
            INSERT INTO split_recipients (
              split_id,
              recipient_index,
              recipient,
              amount,
              chain_id
            )
            VALUES %s
            ''',
            [
                (event.id, index, recipient, amount, event.chain_id)
                for index, (recipient, amount) in enumerate(zip(event.recipients, event.recipient_amounts()))
            ]
        )

    def apply_user_delta(self, delta: UserStatDelta) -> None:
        self.cur.execute(
            '''
            INSERT INTO user_stats (
              address,
              chain_id,
              total_eth_sent,
              total_eth_received,
              total_erc20_sent,
              total_erc20_received,
              eth_split_count,
              eth_received_count,
              erc20_split_count,
              erc20_received_count,
              last_activity_timestamp
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (address, chain_id) DO UPDATE SET
              total_eth_sent = user_stats.total_eth_sent + EXCLUDED.total_eth_sent,
              total_eth_received = user_stats.total_eth_received + EXCLUDED.total_eth_received,
              total_erc20_sent = user_stats.total_erc20_sent + EXCLUDED.total_erc20_sent,
              total_erc20_received = user_stats.total_erc20_received + EXCLUDED.total_erc20_received,
              eth_split_count = user_stats.eth_split_count + EXCLUDED.eth_split_count,
              eth_received_count = user_stats.eth_received_count + EXCLUDED.eth_received_count,
              erc20_split_count = user_stats.erc20_split_count + EXCLUDED.erc20_split_count,
              erc20_received_count = user_stats.erc20_received_count + EXCLUDED.erc20_received_count,
              last_activity_timestamp = GREATEST(user_stats.last_activity_timestamp, EXCLUDED.last_activity_timestamp)
            ''',
            (
                delta.address,
                delta.chain_id,
                delta.eth_sent,
                delta.eth_received,
                delta.erc20_sent,
                delta.erc20_received,
                delta.eth_split_count,
                delta.eth_received_count,
                delta.erc20_split_count,
                delta.erc20_received_count,
                delta.last_activity_timestamp
            )
        )

    def add_participant(self, chain_id: int, scope: str, role: str, address: str) -> bool:
        self.cur.execute(
            '''
            INSERT INTO split_participants (chain_id, scope, role, address)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING address
            ''',
            (chain_id, scope, role, address)
        )
        return self.cur.fetchone() is not None

    def apply_token_delta(self, delta: TokenStatDelta) -> None:
        # A fallback symbol never replaces one that was resolved earlier.
        self.cur.execute(
            '''
            INSERT INTO token_stats (
              token_address,
              chain_id,
              token_symbol,
              token_decimals,
              total_volume,
              split_count,
              unique_senders,
              unique_recipients,
              last_activity_timestamp
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (token_address, chain_id) DO UPDATE SET
              token_symbol = CASE
                WHEN EXCLUDED.token_symbol IS NULL OR EXCLUDED.token_symbol = %s
                THEN COALESCE(token_stats.token_symbol, EXCLUDED.token_symbol)
                ELSE EXCLUDED.token_symbol
              END,
              token_decimals = CASE
                WHEN EXCLUDED.token_symbol IS NULL OR EXCLUDED.token_symbol = %s
                THEN COALESCE(token_stats.token_decimals, EXCLUDED.token_decimals)
                ELSE EXCLUDED.token_decimals
              END,
              total_volume = token_stats.total_volume + EXCLUDED.total_volume,
              split_count = token_stats.split_count + EXCLUDED.split_count,
              unique_senders = token_stats.unique_senders + EXCLUDED.unique_senders,
              unique_recipients = token_stats.unique_recipients + EXCLUDED.unique_recipients,
              last_activity_timestamp = GREATEST(token_stats.last_activity_timestamp, EXCLUDED.last_activity_timestamp)
            ''',
            (
                delta.token_address,
                delta.chain_id,
                delta.token_symbol,
                delta.token_decimals,
                delta.volume,
                delta.split_count,
                delta.new_senders,
                delta.new_recipients,
                delta.last_activity_timestamp,
                FALLBACK_TOKEN_SYMBOL,
                FALLBACK_TOKEN_SYMBOL
            )
        )

    def apply_global_delta(self, delta: GlobalStatDelta) -> None:
        self.cur.execute(
            '''
            INSERT INTO global_stats (
              chain_id,
              total_eth_volume,
              total_erc20_volume,
              total_eth_splits,
              total_erc20_splits,
              total_unique_senders,
              total_unique_recipients,
              last_activity_timestamp
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (chain_id) DO UPDATE SET
              total_eth_volume = global_stats.total_eth_volume + EXCLUDED.total_eth_volume,
              total_erc20_volume = global_stats.total_erc20_volume + EXCLUDED.total_erc20_volume,
              total_eth_splits = global_stats.total_eth_splits + EXCLUDED.total_eth_splits,
              total_erc20_splits = global_stats.total_erc20_splits + EXCLUDED.total_erc20_splits,
              total_unique_senders = global_stats.total_unique_senders + EXCLUDED.total_unique_senders,
              total_unique_recipients = global_stats.total_unique_recipients + EXCLUDED.total_unique_recipients,
              last_activity_timestamp = GREATEST(global_stats.last_activity_timestamp, EXCLUDED.last_activity_timestamp)
            ''',
            (
                delta.chain_id,
                delta.eth_volume,
                delta.erc20_volume,
                delta.eth_splits,
                delta.erc20_splits,
                delta.new_senders,
                delta.new_recipients,
                delta.last_activity_timestamp
            )
        )


class PostgresSplitStore:
    """psycopg2-backed store. One instance per chain thread; connections are not shared."""

    def __init__(self, dsn: str, *, connect: Callable[..., Any] = psycopg2.connect) -> None:
        self.dsn = dsn
        self._connect = connect
        self._conn = None

    def _connection(self):
        if self._conn is None or self._conn.closed:
            self._conn = self._connect(self.dsn)
            self._conn.autocommit = False
        return self._conn

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        conn = self._connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            conn.commit()
        except BaseException:
            self._abort(conn)
            raise

    def _abort(self, conn) -> None:
        if conn.closed:
            self._conn = None
            return
        try:
            conn.rollback()
        except psycopg2.Error as exc:
            LOGGER.warning('rollback failed, dropping connection: %s', exc)
            conn.close()
            self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[PostgresSplitTransaction]:
        with self._cursor() as cur:
            yield PostgresSplitTransaction(cur)

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        LOGGER.info('split schema ensured tables=%s', sum(1 for x in SCHEMA_STATEMENTS if 'CREATE TABLE' in x))

    def load_checkpoint(self, chain_id: int) -> int | None:
        with self._cursor() as cur:
            cur.execute('SELECT last_block FROM indexer_checkpoints WHERE chain_id = %s', (chain_id,))
            row = cur.fetchone()
        return int(row['last_block']) if row is not None else None

    def save_checkpoint(self, chain_id: int, block_number: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                '''
                INSERT INTO indexer_checkpoints (chain_id, last_block, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (chain_id) DO UPDATE SET
                  last_block = GREATEST(indexer_checkpoints.last_block, EXCLUDED.last_block),
                  updated_at = NOW()
                ''',
                (chain_id, block_number)
            )

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None
