from __future__ import annotations

import re
from typing import Any, Mapping

from services.common.models import SplitType, split_from_row

ORDER_COLUMNS = {'block_number', 'block_timestamp'}
DIRECTIONS = {'asc', 'desc'}
MAX_PAGE_SIZE = 500

HISTORY_COLUMNS = '''
  id,
  split_type,
  chain_id,
  contract_address,
  transaction_hash,
  log_index,
  sender,
  total_amount::text AS total_amount,
  recipients::text AS recipients,
  recipient_count,
  amounts::text AS amounts,
  amount_per_recipient::text AS amount_per_recipient,
  token,
  token_symbol,
  token_decimals,
  block_number,
  block_timestamp
'''


class HistoryQueryError(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def normalize_address(value: str) -> str:
    candidate = str(value or '').strip().lower()
    if not re.fullmatch(r'0x[a-f0-9]{40}', candidate):
        raise HistoryQueryError(422, f'invalid address {value!r}: expected 0x followed by 40 hex characters')
    return candidate


def _split_type(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    candidate = value.strip().upper()
    if candidate not in {item.value for item in SplitType}:
        allowed = ', '.join(item.value for item in SplitType)
        raise HistoryQueryError(422, f'invalid split_type {value!r}: expected one of {allowed}')
    return candidate


def build_history_query(
    address: str,
    *,
    role: str = 'sender',
    order_by: str = 'block_number',
    direction: str = 'desc',
    chain_id: int | None = None,
    split_type: str | None = None,
    limit: int = 100,
    offset: int = 0
) -> tuple[str, list[Any]]:
    """SQL and asyncpg parameters for one page of an address's split history.

    role='sender' matches splits the address paid out; role='recipient'
    matches splits that credited it. Rows with equal sort keys are ordered by
    id in the same direction so pages are stable.
    """
    normalized = normalize_address(address)
    if order_by not in ORDER_COLUMNS:
        raise HistoryQueryError(422, f"invalid order_by {order_by!r}: expected one of {', '.join(sorted(ORDER_COLUMNS))}")
    direction = direction.strip().lower()
    if direction not in DIRECTIONS:
        raise HistoryQueryError(422, f'invalid direction {direction!r}: expected asc or desc')
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise HistoryQueryError(422, f'limit must be between 1 and {MAX_PAGE_SIZE}')
    if offset < 0:
        raise HistoryQueryError(422, 'offset must be >= 0')

    params: list[Any] = [normalized]
    if role == 'sender':
        filters = ['sender = $1']
    elif role == 'recipient':
        filters = ['id IN (SELECT split_id FROM split_recipients WHERE recipient = $1)']
    else:
        raise HistoryQueryError(422, f'invalid role {role!r}')

    if chain_id is not None:
        params.append(chain_id)
        filters.append(f'chain_id = ${len(params)}')

    normalized_type = _split_type(split_type)
    if normalized_type is not None:
        params.append(normalized_type)
        filters.append(f'split_type = ${len(params)}')

    params.append(limit)
    limit_placeholder = f'${len(params)}'
    params.append(offset)
    offset_placeholder = f'${len(params)}'

    sql = (
        'SELECT'
        + HISTORY_COLUMNS
        + 'FROM split_events\n'
        + f"WHERE {' AND '.join(filters)}\n"
        + f'ORDER BY {order_by} {direction.upper()}, id {direction.upper()}\n'
        + f'LIMIT {limit_placeholder} OFFSET {offset_placeholder}'
    )
    return sql, params


def history_row_payload(row: Mapping[str, Any]) -> dict[str, Any]:
    return split_from_row(row).to_payload()


def build_user_stats_query(address: str, chain_id: int | None = None) -> tuple[str, list[Any]]:
    params: list[Any] = [normalize_address(address)]
    where_clause = 'WHERE address = $1'
    if chain_id is not None:
        params.append(chain_id)
        where_clause += ' AND chain_id = $2'

    sql = (
        '''
        SELECT
          address,
          chain_id,
          total_eth_sent::text AS total_eth_sent,
          total_eth_received::text AS total_eth_received,
          total_erc20_sent::text AS total_erc20_sent,
          total_erc20_received::text AS total_erc20_received,
          eth_split_count,
          eth_received_count,
          erc20_split_count,
          erc20_received_count,
          last_activity_timestamp
        FROM user_stats
        '''
        + where_clause
        + '''
        ORDER BY chain_id
        '''
    )
    return sql, params


def build_token_stats_query(chain_id: int | None = None, limit: int = 100) -> tuple[str, list[Any]]:
    params: list[Any] = []
    where_clause = ''
    if chain_id is not None:
        params.append(chain_id)
        where_clause = 'WHERE chain_id = $1'
    params.append(limit)

    sql = (
        '''
        SELECT
          token_address,
          chain_id,
          token_symbol,
          token_decimals,
          total_volume::text AS total_volume,
          split_count,
          unique_senders,
          unique_recipients,
          last_activity_timestamp
        FROM token_stats
        '''
        + where_clause
        + '''
        ORDER BY token_stats.total_volume DESC, token_stats.chain_id, token_stats.token_address
        LIMIT $'''
        + str(len(params))
    )
    return sql, params


def build_global_stats_query(chain_id: int | None = None) -> tuple[str, list[Any]]:
    params: list[Any] = []
    where_clause = ''
    if chain_id is not None:
        params.append(chain_id)
        where_clause = 'WHERE chain_id = $1'

    sql = (
        '''
        SELECT
          chain_id,
          total_eth_volume::text AS total_eth_volume,
          total_erc20_volume::text AS total_erc20_volume,
          total_eth_splits,
          total_erc20_splits,
          total_unique_senders,
          total_unique_recipients,
          last_activity_timestamp
        FROM global_stats
        '''
        + where_clause
        + '''
        ORDER BY chain_id
        '''
    )
    return sql, params
