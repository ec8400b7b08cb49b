#!/usr/bin/env python
#
# trdwallet - wallet state synchronization engine
# Copyright (C) 2024 The trdwallet developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
from typing import NamedTuple, List, Dict, Optional, Tuple, TYPE_CHECKING

import attr

from . import constants
from .transaction import TxRecord, TxIO, ChainParams
from .util import (InsufficientFunds, SpendValidationError, add_amounts, sub_amounts,
                   compare_amounts, is_zero_amount, negate_amount, to_decimal)
from .logging import Logger

if TYPE_CHECKING:
    from .wallet_state import WalletState
    from .simple_config import SimpleConfig


FEE_OPTION_STANDARD = 'standard'
FEE_OPTION_HIGH = 'high'
FEE_OPTION_LOW = 'low'
FEE_OPTION_CUSTOM = 'custom'


@attr.s(kw_only=True)
class SpendTarget:
    public_address = attr.ib(type=str)
    native_amount = attr.ib(default=None)  # type: Optional[str]
    currency_code = attr.ib(default=None)  # type: Optional[str]


def _to_targets(items) -> List[SpendTarget]:
    return [x if isinstance(x, SpendTarget) else SpendTarget(**x) for x in items]


@attr.s(kw_only=True)
class SpendInfo:
    spend_targets = attr.ib(factory=list, converter=_to_targets)  # type: List[SpendTarget]
    currency_code = attr.ib(default=None)       # type: Optional[str]
    network_fee_option = attr.ib(default=None)  # type: Optional[str]
    custom_network_fee = attr.ib(default=None)  # type: Optional[str]


class Coin(NamedTuple):
    """The whole balance one address holds in one currency."""
    address: str
    currency_code: str
    amount: str


def _is_positive_amount(x) -> bool:
    if not isinstance(x, str):
        return False
    try:
        return to_decimal(x) > 0
    except ValueError:
        return False


class SpendBuilder(Logger):
    """Builds unsigned spend proposals against the wallet state.

    Selection is greedy: for each currency, walk the addresses in derivation
    order and take an address's entire balance until the requested total is
    covered. Whatever is left over goes back to the first unused address.
    """

    def __init__(self, state: 'WalletState', *, default_fee: str = constants.DEFAULT_NETWORK_FEE):
        Logger.__init__(self)
        self.state = state
        self.default_fee = default_fee

    def get_network_fee(self, spend_info: SpendInfo) -> str:
        option = spend_info.network_fee_option
        if option in (None, FEE_OPTION_STANDARD):
            return self.default_fee
        if option == FEE_OPTION_HIGH:
            return add_amounts(self.default_fee, constants.FEE_TIER_DELTA)
        if option == FEE_OPTION_LOW:
            return sub_amounts(self.default_fee, constants.FEE_TIER_DELTA)
        if option == FEE_OPTION_CUSTOM:
            fee = spend_info.custom_network_fee
            if not isinstance(fee, str):
                raise SpendValidationError("Invalid custom fee: none given")
            try:
                d = to_decimal(fee)
            except ValueError:
                raise SpendValidationError(f"Invalid custom fee: {fee!r}") from None
            if d < 0:
                raise SpendValidationError(f"Invalid custom fee: {fee!r} is negative")
            return fee
        raise SpendValidationError(f"Unknown network fee option: {option!r}")

    def _check_currency(self, currency_code) -> None:
        if currency_code not in constants.net.token_codes():
            raise SpendValidationError(f"Token not supported: {currency_code!r}")
        if not self.state.is_token_enabled(currency_code):
            raise SpendValidationError(f"Token not enabled: {currency_code!r}")

    def validate(self, spend_info: SpendInfo) -> str:
        """Raises SpendValidationError. Returns the currency of the spend."""
        if not spend_info.spend_targets:
            raise SpendValidationError("No spend targets given")
        currency_code = spend_info.currency_code
        if currency_code is None:
            currency_code = constants.net.CURRENCY_CODE
        self._check_currency(currency_code)
        for target in spend_info.spend_targets:
            if not isinstance(target.public_address, str) or not target.public_address:
                raise SpendValidationError("Spend target without an address")
            if target.native_amount is None:
                raise SpendValidationError(f"No amount specified for {target.public_address}")
            if not _is_positive_amount(target.native_amount):
                raise SpendValidationError(f"Invalid amount {target.native_amount!r} for {target.public_address}")
            if target.currency_code is not None:
                self._check_currency(target.currency_code)
        return currency_code

    def get_coins(self, currency_code: str) -> List[Coin]:
        coins = []
        for rec in self.state.get_address_records():
            if not rec.is_resolved():
                continue
            amount = rec.get_amount(currency_code)
            if compare_amounts(amount, '0') > 0:
                coins.append(Coin(rec.address, currency_code, amount))
        return coins

    def choose_coins(self, coins: List[Coin], total: str) -> Tuple[List[Coin], str]:
        selected = []
        selected_total = '0'
        for coin in coins:
            if compare_amounts(selected_total, total) >= 0:
                break
            selected.append(coin)
            selected_total = add_amounts(selected_total, coin.amount)
        return selected, selected_total

    def make_spend(self, spend_info: SpendInfo) -> TxRecord:
        currency_code = self.validate(spend_info)
        network_fee = self.get_network_fee(spend_info)
        primary = constants.net.CURRENCY_CODE

        total_spends = {primary: '0'}  # type: Dict[str, str]
        outputs = []  # type: List[TxIO]
        for target in spend_info.spend_targets:
            target_currency = target.currency_code or primary
            total_spends[target_currency] = add_amounts(total_spends.get(target_currency, '0'), target.native_amount)
            outputs.append(TxIO(currency_code=target_currency, address=target.public_address,
                                amount=target.native_amount))
        total_spends[primary] = add_amounts(total_spends[primary], network_fee)

        state = self.state
        with state.lock:
            enabled_tokens = state.get_enabled_tokens()
            to_fund = [c for c in enabled_tokens
                       if c in total_spends and not is_zero_amount(total_spends[c])]
            for c in to_fund:
                if compare_amounts(total_spends[c], state.get_balance(c)) > 0:
                    self.logger.info(f"insufficient balance for {c}: "
                                     f"need {total_spends[c]}, have {state.get_balance(c)}")
                    raise InsufficientFunds()

            inputs = []  # type: List[TxIO]
            our_receive_addresses = []  # type: List[str]
            change_address = state.derive_address(state.get_unused_address_index())
            for c in to_fund:
                selected, selected_total = self.choose_coins(self.get_coins(c), total_spends[c])
                if compare_amounts(selected_total, total_spends[c]) < 0:
                    self.logger.info(f"insufficient spendable coins for {c}")
                    raise InsufficientFunds()
                inputs += [TxIO(currency_code=c, address=coin.address, amount=coin.amount) for coin in selected]
                change = sub_amounts(selected_total, total_spends[c])
                if compare_amounts(change, '0') > 0:
                    outputs.append(TxIO(currency_code=c, address=change_address, amount=change))
                    if change_address not in our_receive_addresses:
                        our_receive_addresses.append(change_address)

        return TxRecord(
            txid='',
            timestamp=0,
            currency_code=currency_code,
            block_height=0,
            native_amount=negate_amount(total_spends.get(currency_code, '0')),
            network_fee='0',
            our_receive_addresses=our_receive_addresses,
            signed_tx=constants.UNSIGNED_MARKER,
            chain_params=ChainParams(inputs=inputs, outputs=outputs),
        )


def get_spend_builder(state: 'WalletState', config: 'SimpleConfig') -> SpendBuilder:
    return SpendBuilder(state, default_fee=config.SPEND_DEFAULT_FEE)
