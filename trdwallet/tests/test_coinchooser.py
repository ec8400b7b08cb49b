from unittest import mock

from trdwallet import constants
from trdwallet.coinchooser import SpendBuilder, SpendInfo, SpendTarget, get_spend_builder
from trdwallet.simple_config import SimpleConfig
from trdwallet.util import InsufficientFunds, SpendValidationError, add_amounts
from trdwallet.wallet_state import WalletState

from . import TrdWalletTestCase


MPK = 'pub294709fe'


def make_funded_state(*holdings) -> WalletState:
    """holdings[i] is the amounts dict of address i."""
    state = WalletState(master_public_key=MPK)
    for index, amounts in enumerate(holdings):
        state.ensure_address(index)
        state.set_address_info(index, [f'funding{index}'], amounts)
        state.mark_address_used(index)
    state.set_total_balances(state.compute_total_balances())
    return state


def spend(*targets, **kwargs) -> SpendInfo:
    return SpendInfo(spend_targets=[{'public_address': addr, 'native_amount': amount}
                                    for addr, amount in targets], **kwargs)


class TestSpendBuilder(TrdWalletTestCase):

    def test_value_is_conserved(self):
        state = make_funded_state({'TRD': '1000000'})
        tx = SpendBuilder(state).make_spend(spend(('dest', '400000')))

        a0, a1 = state.derive_address(0), state.derive_address(1)
        self.assertEqual([(a0, '1000000')], [(x.address, x.amount) for x in tx.chain_params.inputs])
        self.assertEqual([('dest', '400000'), (a1, '550000')],
                         [(x.address, x.amount) for x in tx.chain_params.outputs])
        total_in = add_amounts(*[x.amount for x in tx.chain_params.inputs])
        total_out = add_amounts(*[x.amount for x in tx.chain_params.outputs])
        self.assertEqual(total_in, add_amounts(total_out, '50000'))

        self.assertEqual('-450000', tx.native_amount)
        self.assertEqual([a1], tx.our_receive_addresses)
        self.assertEqual('', tx.txid)
        self.assertEqual(0, tx.timestamp)
        self.assertEqual('0', tx.network_fee)
        self.assertEqual('TRD', tx.currency_code)
        self.assertFalse(tx.is_signed())

    def test_insufficient_funds_before_selection(self):
        state = make_funded_state({'TRD': '1000000'})
        builder = SpendBuilder(state)
        with mock.patch.object(builder, 'choose_coins') as choose_coins:
            with self.assertRaises(InsufficientFunds):
                builder.make_spend(spend(('dest', '2000000')))
            choose_coins.assert_not_called()

    def test_fee_counts_against_balance(self):
        state = make_funded_state({'TRD': '1000000'})
        with self.assertRaises(InsufficientFunds):
            SpendBuilder(state).make_spend(spend(('dest', '960000')))

    def test_exact_amount_leaves_no_change(self):
        state = make_funded_state({'TRD': '1000000'})
        tx = SpendBuilder(state).make_spend(spend(('dest', '950000')))
        self.assertEqual(1, len(tx.chain_params.outputs))
        self.assertEqual([], tx.our_receive_addresses)

    def test_greedy_selection_in_derivation_order(self):
        state = make_funded_state({'TRD': '300'}, {'TRD': '300'}, {'TRD': '300'})
        tx = SpendBuilder(state).make_spend(spend(('dest', '500'), network_fee_option='custom',
                                                  custom_network_fee='0'))
        self.assertEqual([state.derive_address(0), state.derive_address(1)],
                         [x.address for x in tx.chain_params.inputs])
        change = tx.chain_params.outputs[-1]
        self.assertEqual((state.derive_address(3), '100'), (change.address, change.amount))

    def test_shortfall_in_spendable_coins(self):
        state = make_funded_state({'TRD': '100'})
        # cached total disagrees with what the addresses hold
        state.set_total_balances({'TRD': '100000000'})
        with self.assertRaises(InsufficientFunds):
            SpendBuilder(state).make_spend(spend(('dest', '500')))

    def test_multiple_targets(self):
        state = make_funded_state({'TRD': '1000000'})
        tx = SpendBuilder(state).make_spend(spend(('d1', '100'), ('d2', '200.5')))
        self.assertEqual('-50300.5', tx.native_amount)

    def test_token_spend(self):
        state = make_funded_state({'TRD': '100000', 'TRDB': '50'})
        state.enable_tokens(['TRDB'])
        state.set_total_balances(state.compute_total_balances())
        info = SpendInfo(spend_targets=[SpendTarget(public_address='dest', native_amount='20', currency_code='TRDB')],
                         currency_code='TRDB')
        tx = SpendBuilder(state).make_spend(info)

        a0, a1 = state.derive_address(0), state.derive_address(1)
        self.assertEqual('TRDB', tx.currency_code)
        self.assertEqual('-20', tx.native_amount)
        self.assertEqual([('TRD', a0, '100000'), ('TRDB', a0, '50')],
                         [(x.currency_code, x.address, x.amount) for x in tx.chain_params.inputs])
        self.assertEqual([('TRDB', 'dest', '20'), ('TRD', a1, '50000'), ('TRDB', a1, '30')],
                         [(x.currency_code, x.address, x.amount) for x in tx.chain_params.outputs])
        self.assertEqual([a1], tx.our_receive_addresses)

    def test_selection_does_not_touch_state(self):
        state = make_funded_state({'TRD': '1000000'})
        before = state.to_json()
        SpendBuilder(state).make_spend(spend(('dest', '1')))
        self.assertEqual(before, state.to_json())


class TestNetworkFee(TrdWalletTestCase):

    def setUp(self):
        super().setUp()
        self.builder = SpendBuilder(make_funded_state({'TRD': '1'}))

    def test_tiers(self):
        self.assertEqual('50000', self.builder.get_network_fee(SpendInfo()))
        self.assertEqual('50000', self.builder.get_network_fee(SpendInfo(network_fee_option='standard')))
        self.assertEqual('60000', self.builder.get_network_fee(SpendInfo(network_fee_option='high')))
        self.assertEqual('40000', self.builder.get_network_fee(SpendInfo(network_fee_option='low')))
        self.assertEqual('123', self.builder.get_network_fee(
            SpendInfo(network_fee_option='custom', custom_network_fee='123')))
        self.assertEqual('0', self.builder.get_network_fee(
            SpendInfo(network_fee_option='custom', custom_network_fee='0')))

    def test_bad_fees(self):
        for info in (SpendInfo(network_fee_option='custom'),
                     SpendInfo(network_fee_option='custom', custom_network_fee='-1'),
                     SpendInfo(network_fee_option='custom', custom_network_fee='cheap'),
                     SpendInfo(network_fee_option='turbo')):
            with self.assertRaises(SpendValidationError, msg=repr(info)):
                self.builder.get_network_fee(info)

    def test_default_fee_from_config(self):
        config = SimpleConfig({'data_dir': self.data_dir, 'default_network_fee': '1000.0'})
        builder = get_spend_builder(self.builder.state, config)
        self.assertEqual('1000', builder.get_network_fee(SpendInfo()))
        self.assertEqual('11000', builder.get_network_fee(SpendInfo(network_fee_option='high')))


class TestSpendValidation(TrdWalletTestCase):

    def setUp(self):
        super().setUp()
        self.builder = SpendBuilder(make_funded_state({'TRD': '1000000'}))

    def test_rejections(self):
        bad = [
            SpendInfo(),
            spend(('dest', '1'), currency_code='XYZ'),
            spend(('dest', '1'), currency_code='TRDB'),  # not enabled
            spend(('', '1')),
            SpendInfo(spend_targets=[SpendTarget(public_address='dest')]),
            spend(('dest', '0')),
            spend(('dest', '-5')),
            spend(('dest', 'abc')),
            spend(('dest', 5)),
            SpendInfo(spend_targets=[SpendTarget(public_address='dest', native_amount='1', currency_code='XYZ')]),
        ]
        for info in bad:
            with self.assertRaises(SpendValidationError, msg=repr(info)):
                self.builder.make_spend(info)

    def test_primary_currency_is_the_default(self):
        self.assertEqual(constants.net.CURRENCY_CODE, self.builder.validate(spend(('dest', '1'))))
