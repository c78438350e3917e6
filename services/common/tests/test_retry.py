import unittest
from unittest.mock import MagicMock

import requests
from web3.exceptions import ContractLogicError

from services.common.retry import RetryExhaustedError, RetryPolicy


class RetryPolicyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.policy = RetryPolicy(attempts=4, base_delay_seconds=0.5, max_delay_seconds=2, sleep=self.sleeps.append)

    def test_backoff_doubles_up_to_ceiling(self) -> None:
        self.assertEqual([self.policy.delay_for(n) for n in range(5)], [0.5, 1, 2, 2, 2])

    def test_returns_first_success(self) -> None:
        fn = MagicMock(side_effect=[requests.exceptions.Timeout('t1'), requests.exceptions.Timeout('t2'), 42])

        self.assertEqual(self.policy.call(fn, operation='eth_blockNumber'), 42)
        self.assertEqual(fn.call_count, 3)
        self.assertEqual(self.sleeps, [0.5, 1])

    def test_exhaustion_chains_last_error(self) -> None:
        last = ConnectionError('refused')
        fn = MagicMock(side_effect=[TimeoutError('slow'), TimeoutError('slow'), TimeoutError('slow'), last])

        with self.assertRaises(RetryExhaustedError) as ctx:
            self.policy.call(fn, operation='eth_getLogs chain_id=1')

        self.assertIs(ctx.exception.last_error, last)
        self.assertIs(ctx.exception.__cause__, last)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual(len(self.sleeps), 3)

    def test_contract_revert_is_not_retried(self) -> None:
        fn = MagicMock(side_effect=ContractLogicError('execution reverted'))

        with self.assertRaises(ContractLogicError):
            self.policy.call(fn, operation='symbol()')

        self.assertEqual(fn.call_count, 1)
        self.assertEqual(self.sleeps, [])

    def test_unlisted_error_propagates_immediately(self) -> None:
        fn = MagicMock(side_effect=KeyError('timestamp'))

        with self.assertRaises(KeyError):
            self.policy.call(fn, operation='eth_getBlockByNumber')

        self.assertEqual(fn.call_count, 1)


if __name__ == '__main__':
    unittest.main()
