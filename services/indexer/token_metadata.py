from __future__ import annotations

import logging
import threading
from concurrent.futures import Future

from eth_abi.exceptions import DecodingError
from prometheus_client import Counter
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from services.common.abi import ERC20_BYTES32_SYMBOL_ABI, ERC20_META_ABI
from services.common.models import FALLBACK_TOKEN_DECIMALS, FALLBACK_TOKEN_SYMBOL, TokenMetadata
from services.common.retry import RetryExhaustedError, RetryPolicy

LOGGER = logging.getLogger('splitter.token_metadata')

TOKEN_METADATA_FALLBACKS_TOTAL = Counter(
    'splitter_token_metadata_fallbacks_total',
    'Token metadata lookups that fell back to default symbol/decimals',
    ['chain_id', 'reason']
)

# Raised by tokens that do not implement the optional ERC20 metadata getters.
NON_CONFORMANT_ERRORS = (
    ContractLogicError,
    BadFunctionCallOutput,
    DecodingError,
    OverflowError,
    UnicodeDecodeError,
    ValueError
)

FALLBACK_METADATA = TokenMetadata(symbol=FALLBACK_TOKEN_SYMBOL, decimals=FALLBACK_TOKEN_DECIMALS)


class TokenMetadataResolver:
    def __init__(self, retry: RetryPolicy | None = None) -> None:
        self.retry = retry or RetryPolicy()
        self._lock = threading.Lock()
        self._cache: dict[tuple[int, str], TokenMetadata] = {}
        self._inflight: dict[tuple[int, str], Future] = {}

    def cached(self, chain_id: int, token_address: str) -> TokenMetadata | None:
        with self._lock:
            return self._cache.get((chain_id, token_address.lower()))

    def resolve(self, web3: Web3, chain_id: int, token_address: str) -> TokenMetadata:
        key = (chain_id, token_address.lower())

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            pending = self._inflight.get(key)
            owner = pending is None
            if pending is None:
                pending = Future()
                self._inflight[key] = pending

        if not owner:
            return pending.result()

        try:
            metadata, cacheable = self._fetch(web3, chain_id, key[1])
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            pending.set_exception(exc)
            raise

        with self._lock:
            if cacheable:
                self._cache[key] = metadata
            self._inflight.pop(key, None)
        pending.set_result(metadata)
        return metadata

    def _fetch(self, web3: Web3, chain_id: int, token_address: str) -> tuple[TokenMetadata, bool]:
        checksum = Web3.to_checksum_address(token_address)
        try:
            symbol = self._read_symbol(web3, chain_id, checksum)
        except NON_CONFORMANT_ERRORS as exc:
            return self._fallback(chain_id, token_address, exc, FALLBACK_TOKEN_SYMBOL, cacheable=True), True
        except RetryExhaustedError as exc:
            return self._fallback(chain_id, token_address, exc.last_error, FALLBACK_TOKEN_SYMBOL, cacheable=False), False

        try:
            decimals = int(
                self.retry.call(
                    lambda: web3.eth.contract(address=checksum, abi=ERC20_META_ABI).functions.decimals().call(),
                    operation=f'decimals() chain_id={chain_id} token={token_address}'
                )
            )
        except NON_CONFORMANT_ERRORS as exc:
            return self._fallback(chain_id, token_address, exc, symbol, cacheable=True), True
        except RetryExhaustedError as exc:
            return self._fallback(chain_id, token_address, exc.last_error, symbol, cacheable=False), False

        if decimals < 0 or decimals > 255:
            LOGGER.warning('token decimals out of range chain_id=%s token=%s decimals=%s', chain_id, token_address, decimals)
            decimals = FALLBACK_TOKEN_DECIMALS

        LOGGER.info('token metadata resolved chain_id=%s token=%s symbol=%s decimals=%s', chain_id, token_address, symbol, decimals)
        return TokenMetadata(symbol=symbol, decimals=decimals), True

    def _fallback(
        self,
        chain_id: int,
        token_address: str,
        error: BaseException,
        symbol: str,
        *,
        cacheable: bool
    ) -> TokenMetadata:
        # A symbol that already resolved is kept; only the missing fields default.
        if cacheable:
            LOGGER.warning(
                'token metadata unavailable chain_id=%s token=%s error=%s; using %s/%s',
                chain_id,
                token_address,
                error,
                symbol,
                FALLBACK_TOKEN_DECIMALS
            )
            reason = 'non_conformant'
        else:
            LOGGER.warning(
                'token metadata rpc unavailable chain_id=%s token=%s error=%s; using %s/%s without caching',
                chain_id,
                token_address,
                error,
                symbol,
                FALLBACK_TOKEN_DECIMALS
            )
            reason = 'rpc_unavailable'
        TOKEN_METADATA_FALLBACKS_TOTAL.labels(chain_id=str(chain_id), reason=reason).inc()
        if symbol == FALLBACK_TOKEN_SYMBOL:
            return FALLBACK_METADATA
        return TokenMetadata(symbol=symbol, decimals=FALLBACK_TOKEN_DECIMALS)

    def _read_symbol(self, web3: Web3, chain_id: int, checksum: str) -> str:
        operation = f'symbol() chain_id={chain_id} token={checksum.lower()}'
        try:
            symbol = self.retry.call(
                lambda: web3.eth.contract(address=checksum, abi=ERC20_META_ABI).functions.symbol().call(),
                operation=operation
            )
        except (BadFunctionCallOutput, DecodingError, OverflowError, UnicodeDecodeError):
            raw = self.retry.call(
                lambda: web3.eth.contract(address=checksum, abi=ERC20_BYTES32_SYMBOL_ABI).functions.symbol().call(),
                operation=operation
            )
            symbol = bytes(raw).rstrip(b'\x00').decode('utf-8')

        symbol = str(symbol).strip().strip('\x00')
        if not symbol:
            raise ValueError('empty symbol')
        return symbol
