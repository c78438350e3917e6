from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from web3 import Web3

from services.common.chain_registry import ChainConfig
from services.common.models import RawLog, hex_prefixed
from services.common.retry import RetryPolicy

LOGGER = logging.getLogger('splitter.log_source')


@dataclass
class LogBatch:
    chain_id: int
    from_block: int
    to_block: int
    logs: list[RawLog] = field(default_factory=list)


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith('0x'):
        text = text[2:]
    return bytes.fromhex(text)


class SplitLogSource:
    def __init__(
        self,
        chain: ChainConfig,
        web3: Web3,
        topics: list[str],
        *,
        retry: RetryPolicy | None = None,
        block_cache_size: int = 4096
    ) -> None:
        self.chain = chain
        self.web3 = web3
        self.topics = list(topics)
        self.retry = retry or RetryPolicy()
        self._addresses = [Web3.to_checksum_address(x) for x in chain.contract_addresses]
        self._block_ts_cache: dict[int, int] = {}
        self._block_cache_size = block_cache_size

    def safe_head(self) -> int:
        head = self.retry.call(
            lambda: int(self.web3.eth.block_number),
            operation=f'eth_blockNumber chain_id={self.chain.chain_id}'
        )
        return head - self.chain.confirmation_depth

    def next_batch(self, from_block: int) -> LogBatch | None:
        safe_head = self.safe_head()
        if safe_head < 0 or from_block > safe_head:
            return None

        to_block = min(safe_head, from_block + self.chain.batch_size - 1)
        raw_logs = self.retry.call(
            lambda: self.web3.eth.get_logs(
                {
                    'fromBlock': from_block,
                    'toBlock': to_block,
                    'address': self._addresses,
                    'topics': [self.topics]
                }
            ),
            operation=f'eth_getLogs chain_id={self.chain.chain_id} from={from_block} to={to_block}'
        )

        logs = [self._to_raw_log(log) for log in raw_logs if not log.get('removed', False)]
        logs.sort(key=lambda item: (item.block_number, item.log_index))

        LOGGER.debug(
            'fetched logs chain_id=%s from=%s to=%s count=%s',
            self.chain.chain_id,
            from_block,
            to_block,
            len(logs)
        )
        return LogBatch(chain_id=self.chain.chain_id, from_block=from_block, to_block=to_block, logs=logs)

    def _to_raw_log(self, log: Any) -> RawLog:
        block_number = int(log['blockNumber'])
        return RawLog(
            chain_id=self.chain.chain_id,
            address=str(log['address']).lower(),
            topics=tuple(hex_prefixed(topic) for topic in log['topics']),
            data=_as_bytes(log['data']),
            block_number=block_number,
            block_timestamp=self._block_timestamp(block_number),
            transaction_hash=hex_prefixed(log['transactionHash']),
            log_index=int(log['logIndex'])
        )

    def _block_timestamp(self, block_number: int) -> int:
        if block_number in self._block_ts_cache:
            return self._block_ts_cache[block_number]

        block = self.retry.call(
            lambda: self.web3.eth.get_block(block_number),
            operation=f'eth_getBlockByNumber chain_id={self.chain.chain_id} block={block_number}'
        )
        ts = int(block['timestamp'])
        if len(self._block_ts_cache) >= self._block_cache_size:
            self._block_ts_cache.clear()
        self._block_ts_cache[block_number] = ts
        return ts
