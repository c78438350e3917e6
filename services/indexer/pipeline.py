from __future__ import annotations

import logging
import threading

from prometheus_client import Counter, Gauge

from services.common.chain_registry import ChainConfig
from services.common.models import RawLog
from services.common.retry import RetryExhaustedError, RetryPolicy
from services.indexer.decoder import EventDecodeError, SplitEventDecoder
from services.indexer.log_source import SplitLogSource
from services.indexer.token_metadata import TokenMetadataResolver
from services.split_writer.aggregator import PERSISTENCE_RETRY_ERRORS, SplitAggregator, SplitConflictError, SplitStore

LOGGER = logging.getLogger('splitter.pipeline')

EVENTS_INDEXED_TOTAL = Counter(
    'splitter_events_indexed_total',
    'Split events committed to the store',
    ['chain_id', 'split_type']
)
EVENTS_DUPLICATE_TOTAL = Counter(
    'splitter_events_duplicate_total',
    'Split events skipped because they were already committed',
    ['chain_id']
)
INDEXED_BLOCK = Gauge(
    'splitter_indexed_block',
    'Last block whose split events are all committed',
    ['chain_id']
)
CHAIN_UP = Gauge(
    'splitter_chain_up',
    'Whether the chain pipeline is making progress (1) or degraded/halted (0)',
    ['chain_id']
)


class ChainPipeline:
    """Moves one chain from its checkpoint towards the confirmed head.

    Events inside a batch are committed strictly in (block, log index) order;
    the checkpoint only moves once the whole batch is committed, so a crash
    replays at most one batch and the aggregator's idempotency absorbs it.
    """

    def __init__(
        self,
        chain: ChainConfig,
        source: SplitLogSource,
        decoder: SplitEventDecoder,
        resolver: TokenMetadataResolver,
        aggregator: SplitAggregator,
        store: SplitStore,
        *,
        poll_interval_seconds: float = 5.0,
        persist_retry: RetryPolicy | None = None
    ) -> None:
        self.chain = chain
        self.source = source
        self.decoder = decoder
        self.resolver = resolver
        self.aggregator = aggregator
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self.persist_retry = persist_retry or RetryPolicy(retry_on=PERSISTENCE_RETRY_ERRORS, give_up_on=())
        self.next_block: int | None = None
        self.halted_by: Exception | None = None
        self._label = str(chain.chain_id)

    def resume_block(self) -> int:
        checkpoint = self.persist_retry.call(
            lambda: self.store.load_checkpoint(self.chain.chain_id),
            operation=f'load checkpoint chain_id={self.chain.chain_id}'
        )
        if checkpoint is None:
            LOGGER.info('no checkpoint chain_id=%s; starting at block=%s', self.chain.chain_id, self.chain.start_block)
            return self.chain.start_block
        return max(checkpoint + 1, self.chain.start_block)

    def run_once(self) -> bool:
        if self.next_block is None:
            self.next_block = self.resume_block()

        batch = self.source.next_batch(self.next_block)
        if batch is None:
            return False

        committed = 0
        for raw in batch.logs:
            if self.process_log(raw):
                committed += 1

        self.persist_retry.call(
            lambda: self.store.save_checkpoint(self.chain.chain_id, batch.to_block),
            operation=f'save checkpoint chain_id={self.chain.chain_id} block={batch.to_block}'
        )
        INDEXED_BLOCK.labels(chain_id=self._label).set(batch.to_block)
        self.next_block = batch.to_block + 1

        LOGGER.info(
            'batch committed chain_id=%s from=%s to=%s logs=%s new_events=%s',
            self.chain.chain_id,
            batch.from_block,
            batch.to_block,
            len(batch.logs),
            committed
        )
        return True

    def process_log(self, raw: RawLog) -> bool:
        event = self.decoder.decode(raw)
        if event is None:
            return False

        if event.is_erc20:
            assert event.token is not None
            metadata = self.resolver.resolve(self.source.web3, event.chain_id, event.token)
            event = event.with_token_metadata(metadata)

        inserted = self.aggregator.apply(event)
        if inserted:
            EVENTS_INDEXED_TOTAL.labels(chain_id=self._label, split_type=event.split_type.value).inc()
        else:
            EVENTS_DUPLICATE_TOTAL.labels(chain_id=self._label).inc()
        return inserted

    def run(self, stop_event: threading.Event) -> None:
        LOGGER.info(
            'pipeline starting chain_key=%s chain_id=%s contracts=%s confirmation_depth=%s batch_size=%s',
            self.chain.chain_key,
            self.chain.chain_id,
            ','.join(self.chain.contract_addresses),
            self.chain.confirmation_depth,
            self.chain.batch_size
        )
        chain_up = CHAIN_UP.labels(chain_id=self._label)
        chain_up.set(1)

        while not stop_event.is_set():
            try:
                processed = self.run_once()
            except RetryExhaustedError as exc:
                chain_up.set(0)
                LOGGER.error(
                    'liveness alert chain_id=%s operation=%s attempts=%s error=%s; resuming from block=%s',
                    self.chain.chain_id,
                    exc.operation,
                    exc.attempts,
                    exc.last_error,
                    self.next_block
                )
                stop_event.wait(self.poll_interval_seconds)
                continue
            except (EventDecodeError, SplitConflictError) as exc:
                chain_up.set(0)
                self.halted_by = exc
                LOGGER.critical('chain halted chain_id=%s block=%s error=%s', self.chain.chain_id, self.next_block, exc)
                return
            except Exception:
                chain_up.set(0)
                LOGGER.exception('pipeline iteration failed chain_id=%s', self.chain.chain_id)
                stop_event.wait(self.poll_interval_seconds)
                continue

            chain_up.set(1)
            if not processed:
                stop_event.wait(self.poll_interval_seconds)

        LOGGER.info('pipeline stopped chain_id=%s next_block=%s', self.chain.chain_id, self.next_block)
