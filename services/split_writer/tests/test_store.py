import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

import psycopg2

from services.common.models import SplitEvent, SplitType
from services.split_writer.aggregator import TokenStatDelta, UserStatDelta
from services.split_writer.store import SCHEMA_STATEMENTS, PostgresSplitStore, PostgresSplitTransaction

ALICE = '0x' + 'a' * 40
BOB = '0x' + 'b' * 40
CAROL = '0x' + 'c' * 40


def _event(**overrides) -> SplitEvent:
    values = {
        'split_type': SplitType.ETH_SPLIT,
        'chain_id': 84532,
        'contract_address': '0x' + '1' * 40,
        'transaction_hash': '0x' + 'f' * 64,
        'log_index': 4,
        'sender': ALICE,
        'total_amount': 3 * 10**24,
        'recipients': (BOB, CAROL),
        'block_number': 14_200_001,
        'block_timestamp': 1_720_000_000,
        'amounts': (10**24, 2 * 10**24)
    }
    values.update(overrides)
    return SplitEvent(**values)


class PostgresSplitTransactionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cur = MagicMock()
        self.tx = PostgresSplitTransaction(self.cur)

    def test_insert_split_reports_new_row_from_returning_clause(self) -> None:
        event = _event()
        self.cur.fetchone.return_value = {'id': event.id}

        self.assertTrue(self.tx.insert_split(event))

        sql, params = self.cur.execute.call_args[0]
        self.assertIn('ON CONFLICT (id) DO NOTHING', sql)
        self.assertIn('RETURNING id', sql)
        self.assertEqual(params[0], '84532:' + '0x' + 'f' * 64 + ':4')
        self.assertEqual(params[7], 3 * 10**24)
        self.assertEqual(params[8].adapted, [BOB, CAROL])
        self.assertEqual(params[10].adapted, [str(10**24), str(2 * 10**24)])
        self.assertIsNone(params[11])

    def test_insert_split_conflict_returns_false(self) -> None:
        self.cur.fetchone.return_value = None

        self.assertFalse(self.tx.insert_split(_event()))

    def test_fetch_split_rebuilds_event_from_row(self) -> None:
        event = _event()
        self.cur.fetchone.return_value = {
            'id': event.id,
            'split_type': 'ETH_SPLIT',
            'chain_id': 84532,
            'contract_address': event.contract_address,
            'transaction_hash': event.transaction_hash,
            'log_index': 4,
            'sender': ALICE,
            'total_amount': Decimal(3 * 10**24),
            'recipients': [BOB, CAROL],
            'recipient_count': 2,
            'amounts': [str(10**24), str(2 * 10**24)],
            'amount_per_recipient': None,
            'token': None,
            'token_symbol': None,
            'token_decimals': None,
            'block_number': 14_200_001,
            'block_timestamp': 1_720_000_000
        }

        stored = self.tx.fetch_split(event.id)

        self.assertEqual(stored.log_fingerprint(), event.log_fingerprint())

    def test_recipient_rows_carry_each_share(self) -> None:
        with patch('services.split_writer.store.execute_values') as execute_values:
            self.tx.insert_recipients(_event())

        rows = execute_values.call_args[0][2]
        self.assertEqual(rows[0][1:4], (0, BOB, 10**24))
        self.assertEqual(rows[1][1:4], (1, CAROL, 2 * 10**24))

    def test_user_delta_upsert_is_additive(self) -> None:
        self.tx.apply_user_delta(UserStatDelta(address=BOB, chain_id=1, eth_received=5, eth_received_count=1))

        sql, params = self.cur.execute.call_args[0]
        self.assertIn('total_eth_received = user_stats.total_eth_received + EXCLUDED.total_eth_received', sql)
        self.assertIn('GREATEST(user_stats.last_activity_timestamp', sql)
        self.assertEqual(params[:4], (BOB, 1, 0, 5))

    def test_add_participant_is_true_only_for_new_membership(self) -> None:
        self.cur.fetchone.return_value = {'address': BOB}
        self.assertTrue(self.tx.add_participant(1, 'chain', 'recipient', BOB))

        self.cur.fetchone.return_value = None
        self.assertFalse(self.tx.add_participant(1, 'chain', 'recipient', BOB))

    def test_token_delta_protects_resolved_symbol(self) -> None:
        self.tx.apply_token_delta(
            TokenStatDelta(
                token_address='0x' + 'd' * 40,
                chain_id=1,
                token_symbol='UNKNOWN',
                token_decimals=18,
                volume=10,
                split_count=1,
                new_senders=1,
                new_recipients=2,
                last_activity_timestamp=5
            )
        )

        sql, params = self.cur.execute.call_args[0]
        self.assertIn('COALESCE(token_stats.token_symbol, EXCLUDED.token_symbol)', sql)
        self.assertEqual(params[-2:], ('UNKNOWN', 'UNKNOWN'))


class PostgresSplitStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = MagicMock()
        self.conn.closed = 0
        self.cur = self.conn.cursor.return_value.__enter__.return_value
        self.connect = MagicMock(return_value=self.conn)
        self.store = PostgresSplitStore('postgresql://test', connect=self.connect)

    def test_transaction_commits_on_success(self) -> None:
        with self.store.transaction() as tx:
            self.assertIs(tx.cur, self.cur)

        self.assertFalse(self.conn.autocommit)
        self.conn.commit.assert_called_once()
        self.conn.rollback.assert_not_called()

    def test_transaction_rolls_back_on_error(self) -> None:
        with self.assertRaises(psycopg2.OperationalError):
            with self.store.transaction():
                raise psycopg2.OperationalError('connection reset')

        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()

    def test_closed_connection_is_replaced(self) -> None:
        with self.assertRaises(psycopg2.InterfaceError):
            with self.store.transaction():
                self.conn.closed = 2
                raise psycopg2.InterfaceError('connection already closed')

        fresh = MagicMock()
        fresh.closed = 0
        self.connect.return_value = fresh
        with self.store.transaction():
            pass

        self.assertEqual(self.connect.call_count, 2)
        fresh.commit.assert_called_once()

    def test_checkpoint_roundtrip(self) -> None:
        self.cur.fetchone.return_value = None
        self.assertIsNone(self.store.load_checkpoint(1))

        self.cur.fetchone.return_value = {'last_block': 812}
        self.assertEqual(self.store.load_checkpoint(1), 812)

    def test_checkpoint_never_moves_backwards(self) -> None:
        self.store.save_checkpoint(1, 900)

        sql, params = self.cur.execute.call_args[0]
        self.assertIn('GREATEST(indexer_checkpoints.last_block, EXCLUDED.last_block)', sql)
        self.assertEqual(params, (1, 900))
        self.conn.commit.assert_called_once()

    def test_ensure_schema_runs_every_statement_in_one_transaction(self) -> None:
        self.store.ensure_schema()

        self.assertEqual(self.cur.execute.call_count, len(SCHEMA_STATEMENTS))
        self.conn.commit.assert_called_once()


if __name__ == '__main__':
    unittest.main()
