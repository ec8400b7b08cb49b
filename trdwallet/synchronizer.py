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
from typing import Dict, List, Tuple, TYPE_CHECKING, Sequence

from . import constants
from .transaction import TxRecord, ChainParams
from .util import PeriodicJob, OldTaskGroup, add_amounts, sub_amounts, is_zero_amount
from .interface import NetworkException, RequestCorrupted, TxDetails

if TYPE_CHECKING:
    from .engine import Engine


class GapLimitScanner(PeriodicJob):
    """Discover which addresses of the wallet are in use, and what they hold.

    Every cycle checks addresses 0 .. unused_address_index + gap_limit - 1
    in parallel, so the window always extends gap_limit addresses past the
    last used one. Balances are then recomputed from scratch.
    """

    LOGGING_SHORTCUT = 'S'

    def __init__(self, engine: 'Engine', *, interval: float, gap_limit: int = constants.GAP_LIMIT):
        PeriodicJob.__init__(self, engine, interval=interval)
        self.gap_limit = gap_limit
        self.addresses_checked = False  # set once per engine lifetime
        self._num_checked = 0
        self._num_to_check = 0
        self._num_failed = 0

    async def run_once(self) -> None:
        state = self.engine.state
        with state.lock:
            num_to_check = state.get_unused_address_index() + self.gap_limit
            # raises AddressDerivationMismatch, which halts this job
            addresses = [state.ensure_address(i) for i in range(num_to_check)]
        self._num_checked = 0
        self._num_failed = 0
        self._num_to_check = len(addresses)
        self.reset_request_counters()
        async with OldTaskGroup() as group:
            for index, address in enumerate(addresses):
                await group.spawn(self._check_address(index, address))

        if self._num_failed == self._num_to_check:
            self.logger.info(f"no address could be checked this cycle ({self._num_failed} failures)")
            return
        self._update_balances()
        if self._num_failed == 0 and not self.addresses_checked:
            self.addresses_checked = True
            self.engine.trigger('addresses_checked', 1.0)
        sent, answered = self.num_requests_sent_and_answered()
        self.logger.debug(f"checked {self._num_checked}/{self._num_to_check} addresses "
                          f"({answered}/{sent} requests answered), "
                          f"unused index is now {state.get_unused_address_index()}")

    async def _check_address(self, index: int, address: str) -> None:
        self._requests_sent += 1
        try:
            txids, amounts = await self.engine.client.get_address(address)
        except (NetworkException, RequestCorrupted) as e:
            self._num_failed += 1
            self.logger.info(f"error checking address {address}: {e!r}")
            return
        finally:
            self._requests_answered += 1
        self.receive_address_info(index, address, txids, amounts)
        self._num_checked += 1
        progress = self._num_checked / self._num_to_check
        if progress < 1:
            self.engine.trigger('addresses_checked', progress)

    def receive_address_info(self, index: int, address: str, txids, amounts) -> None:
        state = self.engine.state
        with state.lock:
            state.set_address_info(index, txids, amounts)
            for txid in txids or []:
                if not state.is_known_txid(txid) and state.queue_txid(txid):
                    self.logger.debug(f"queued tx {txid} seen on {address}")
            if txids or state.is_gap_limit_address(address):
                if state.mark_address_used(index):
                    self.logger.info(f"unused address index advanced to {index + 1}")

    def _update_balances(self) -> None:
        state = self.engine.state
        with state.lock:
            totals = state.compute_total_balances()
            changed = state.set_total_balances(totals)
        for currency_code in changed:
            self.engine.trigger('balance_changed', currency_code, totals.get(currency_code, '0'))


class TransactionFetcher(PeriodicJob):
    """Fetch the details of every queued txid and fold them into the ledger."""

    LOGGING_SHORTCUT = 'T'

    def __init__(self, engine: 'Engine', *, interval: float):
        PeriodicJob.__init__(self, engine, interval=interval)
        self._changed = {}  # type: Dict[Tuple[str, str], TxRecord]

    async def run_once(self) -> None:
        state = self.engine.state
        txids = state.get_transactions_to_fetch()
        if txids:
            async with OldTaskGroup() as group:
                for txid in txids:
                    await group.spawn(self._get_transaction(txid))
        if not state.get_transactions_to_fetch() and self._changed:
            batch = list(self._changed.values())
            self._changed.clear()
            self.logger.info(f"{len(batch)} transactions changed")
            self.engine.trigger('transactions_changed', batch)

    async def _get_transaction(self, txid: str) -> None:
        self._requests_sent += 1
        try:
            details = await self.engine.client.get_transaction(txid)
        except (NetworkException, RequestCorrupted) as e:
            # stays queued, retried next cycle
            self.logger.info(f"error fetching tx {txid}: {e!r}")
            return
        finally:
            self._requests_answered += 1
        for tx in self.receive_tx(details):
            self._changed[(tx.currency_code, tx.txid)] = tx

    def receive_tx(self, details: TxDetails) -> Sequence[TxRecord]:
        """Fold one validated transaction into the ledger. Returns the records written."""
        state = self.engine.state
        records = []  # type: List[TxRecord]
        with state.lock:
            for currency_code in constants.net.token_codes():
                spent = add_amounts(*[x.amount for x in details.inputs
                                      if x.currency_code == currency_code and state.is_mine(x.address)])
                ours = [x for x in details.outputs
                        if x.currency_code == currency_code and state.is_mine(x.address)]
                received = add_amounts(*[x.amount for x in ours])
                if is_zero_amount(spent) and is_zero_amount(received):
                    continue
                tx = TxRecord(
                    txid=details.txid,
                    timestamp=details.tx_date,
                    currency_code=currency_code,
                    block_height=details.block_height,
                    native_amount=sub_amounts(received, spent),
                    network_fee=details.network_fee,
                    our_receive_addresses=list(dict.fromkeys(x.address for x in ours)),
                    chain_params=ChainParams(inputs=list(details.inputs), outputs=list(details.outputs)),
                )
                state.add_transaction(currency_code, tx)
                records.append(tx)
            state.remove_txid_to_fetch(details.txid)
        self.logger.debug(f"received tx {details.txid}, touching {[tx.currency_code for tx in records]}")
        return records
