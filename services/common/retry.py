from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import requests
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TimeExhausted, Web3RPCError

LOGGER = logging.getLogger('splitter.retry')

T = TypeVar('T')

TRANSIENT_RPC_ERRORS: tuple[type[BaseException], ...] = (
    requests.exceptions.RequestException,
    ConnectionError,
    TimeoutError,
    TimeExhausted,
    Web3RPCError
)

# Reverts and undecodable returns come back the same on every attempt.
NON_RETRYABLE_RPC_ERRORS: tuple[type[BaseException], ...] = (
    ContractLogicError,
    BadFunctionCallOutput
)


class RetryExhaustedError(Exception):
    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f'{operation} failed after {attempts} attempts: {last_error}')
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_RPC_ERRORS
    give_up_on: tuple[type[BaseException], ...] = NON_RETRYABLE_RPC_ERRORS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** attempt))

    def call(self, fn: Callable[[], T], *, operation: str) -> T:
        attempts = max(1, self.attempts)
        last_error: BaseException | None = None

        for attempt in range(attempts):
            try:
                result = fn()
            except self.give_up_on:
                raise
            except self.retry_on as exc:
                last_error = exc
                if attempt >= attempts - 1:
                    break
                delay = self.delay_for(attempt)
                LOGGER.warning(
                    '%s failed attempt=%s/%s error=%s; retrying in %.1fs',
                    operation,
                    attempt + 1,
                    attempts,
                    exc,
                    delay
                )
                self.sleep(delay)
                continue

            if attempt > 0:
                LOGGER.info('%s succeeded attempt=%s/%s', operation, attempt + 1, attempts)
            return result

        assert last_error is not None
        raise RetryExhaustedError(operation, attempts, last_error) from last_error
