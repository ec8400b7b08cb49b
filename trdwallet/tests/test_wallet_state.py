import json

from trdwallet import constants
from trdwallet.address import AddressDerivationMismatch
from trdwallet.transaction import TxRecord
from trdwallet.util import WalletFileException
from trdwallet.wallet_state import WalletState, AddressRecord

from . import TrdWalletTestCase


MPK = 'pub294709fe'


class TestWalletState(TrdWalletTestCase):

    def test_fresh_state_defaults(self):
        state = WalletState(master_public_key=MPK)
        self.assertEqual(0, state.get_block_height())
        self.assertEqual(['TRD'], state.get_enabled_tokens())
        self.assertEqual('0', state.get_balance('TRD'))
        self.assertEqual({'TRD': [], 'TRDB': [], 'TRDC': []}, state.transactions)
        self.assertEqual(0, state.get_unused_address_index())
        # the key was set, so there is something to save
        self.assertTrue(state.is_modified())

    def test_dump_and_load(self):
        state = WalletState(master_public_key=MPK)
        state.set_block_height(1234)
        state.enable_tokens(['TRDB'])
        state.ensure_address(2)
        state.set_address_info(1, ['tx1'], {'TRD': '10', 'TRDB': '3'})
        state.mark_address_used(1)
        state.queue_txid('tx1')
        state.add_gap_limit_addresses(['2_' + MPK])
        state.set_total_balances(state.compute_total_balances())
        state.add_transaction('TRD', TxRecord(txid='tx0', timestamp=5, currency_code='TRD', native_amount='7'))

        state2 = WalletState(state.dump(), master_public_key=MPK)
        self.assertEqual(state.to_json(), state2.to_json())
        self.assertFalse(state2.is_modified())
        self.assertEqual(1, state2.get_address_index('1_' + MPK))
        self.assertEqual('3', state2.get_balance('TRDB'))
        self.assertEqual('7', state2.get_transactions('TRD')[0].native_amount)

    def test_version_is_stored(self):
        state = WalletState(master_public_key=MPK)
        self.assertEqual(1, json.loads(state.dump())['version'])

    def test_corrupt_input_raises(self):
        for s in ('{not json', '[1, 2]', '"hello"',
                  json.dumps({'addresses': [{'txids': None}]}),
                  json.dumps({'total_balances': {'TRD': 'lots'}}),
                  json.dumps({'transactions': {'TRD': [{'currency_code': 'TRD'}]}})):
            with self.assertRaises(WalletFileException, msg=s):
                WalletState(s, master_public_key=MPK)

    def test_master_public_key_mismatch(self):
        s = WalletState(master_public_key=MPK).dump()
        with self.assertRaises(WalletFileException):
            WalletState(s, master_public_key='someoneelse')
        WalletState(s, master_public_key=MPK)

    def test_clear_modified_only_covers_snapshot(self):
        state = WalletState(master_public_key=MPK)
        data, gen = state.snapshot()
        self.assertTrue(state.clear_modified(gen))
        self.assertFalse(state.is_modified())

        data, gen = state.snapshot()
        state.set_block_height(5)  # lands between snapshot and the end of the write
        self.assertFalse(state.clear_modified(gen))
        self.assertTrue(state.is_modified())

    def test_set_block_height_reports_change(self):
        state = WalletState(master_public_key=MPK)
        self.assertTrue(state.set_block_height(10))
        self.assertFalse(state.set_block_height(10))

    def test_ensure_address_fills_holes(self):
        state = WalletState(master_public_key=MPK)
        self.assertEqual('3_' + MPK, state.ensure_address(3))
        self.assertEqual(4, state.num_addresses())
        self.assertEqual('0_' + MPK + '__600000', state.get_address_record(0).address)
        self.assertIsNone(state.get_address_record(4))
        self.assertFalse(state.get_address_record(2).is_resolved())

    def test_ensure_address_detects_mismatch(self):
        data = {'master_public_key': MPK,
                'addresses': [{'address': '0_' + MPK + '__600000'}, {'address': '7_evil'}]}
        state = WalletState(json.dumps(data), master_public_key=MPK)
        state.ensure_address(0)
        with self.assertRaises(AddressDerivationMismatch):
            state.ensure_address(1)

    def test_unused_index_is_monotonic(self):
        state = WalletState(master_public_key=MPK)
        self.assertTrue(state.mark_address_used(4))
        self.assertEqual(5, state.get_unused_address_index())
        self.assertFalse(state.mark_address_used(2))
        self.assertEqual(5, state.get_unused_address_index())

    def test_transactions_sorted_newest_first_and_upserted(self):
        state = WalletState(master_public_key=MPK)
        self.assertTrue(state.add_transaction('TRD', TxRecord(txid='a', timestamp=100, currency_code='TRD')))
        self.assertTrue(state.add_transaction('TRD', TxRecord(txid='b', timestamp=300, currency_code='TRD')))
        self.assertTrue(state.add_transaction('TRD', TxRecord(txid='c', timestamp=200, currency_code='TRD')))
        self.assertEqual(['b', 'c', 'a'], [tx.txid for tx in state.get_transactions('TRD')])

        updated = TxRecord(txid='c', timestamp=200, currency_code='TRD', block_height=77)
        self.assertFalse(state.add_transaction('TRD', updated))
        self.assertEqual(3, state.num_transactions('TRD'))
        self.assertEqual(77, state.get_transactions('TRD')[1].block_height)
        self.assertTrue(state.is_known_txid('c'))
        self.assertFalse(state.is_known_txid('d'))
        self.assertEqual(0, state.num_transactions('TRDB'))

    def test_balances_only_count_enabled_tokens(self):
        state = WalletState(master_public_key=MPK)
        state.ensure_address(2)
        state.set_address_info(0, ['t0'], {'TRD': '1.5', 'TRDB': '4'})
        state.set_address_info(1, ['t1'], {'TRD': '2'})
        # address 2 never resolved
        self.assertEqual({'TRD': '3.5'}, state.compute_total_balances())
        state.enable_tokens(['TRDB'])
        self.assertEqual({'TRD': '3.5', 'TRDB': '4'}, state.compute_total_balances())

    def test_set_total_balances_reports_changed(self):
        state = WalletState(master_public_key=MPK)
        self.assertEqual(['TRD', 'TRDB'], state.set_total_balances({'TRD': '5', 'TRDB': '1'}))
        self.assertEqual(['TRDB'], state.set_total_balances({'TRD': '5'}))
        self.assertEqual([], state.set_total_balances({'TRD': '5'}))
        self.assertEqual('0', state.get_balance('TRDB'))

    def test_is_address_used(self):
        state = WalletState(master_public_key=MPK)
        state.ensure_address(1)
        state.set_address_info(0, [], {})
        state.set_address_info(1, ['tx9'], {'TRD': '0'})
        self.assertFalse(state.is_address_used(state.derive_address(0)))
        self.assertTrue(state.is_address_used(state.derive_address(1)))
        self.assertFalse(state.is_address_used('5_' + MPK))
        state.add_gap_limit_addresses(['5_' + MPK])
        self.assertTrue(state.is_address_used('5_' + MPK))

    def test_queue_txid_deduplicates(self):
        state = WalletState(master_public_key=MPK)
        self.assertTrue(state.queue_txid('x'))
        self.assertFalse(state.queue_txid('x'))
        self.assertEqual(['x'], state.get_transactions_to_fetch())
        self.assertTrue(state.remove_txid_to_fetch('x'))
        self.assertFalse(state.remove_txid_to_fetch('x'))

    def test_accessors_return_copies(self):
        state = WalletState(master_public_key=MPK)
        state.ensure_address(0)
        recs = state.get_address_records()
        recs[0].txids = ['mutated']
        self.assertIsNone(state.get_address_record(0).txids)
        state.get_enabled_tokens().append('TRDC')
        self.assertFalse(state.is_token_enabled('TRDC'))


class TestAddressRecord(TrdWalletTestCase):

    def test_amount_defaults(self):
        rec = AddressRecord(address='a')
        self.assertFalse(rec.is_resolved())
        self.assertEqual('0', rec.get_amount(constants.net.CURRENCY_CODE))
        rec = AddressRecord.from_json({'address': 'a', 'txids': ['t'], 'amounts': {'TRD': '3'}})
        self.assertTrue(rec.has_history())
        self.assertEqual('3', rec.get_amount('TRD'))
        self.assertEqual('0', rec.get_amount('TRDC'))
