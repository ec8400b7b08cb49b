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
import copy
import json
import threading
from typing import Optional, List, Dict, Sequence, Tuple, Iterable, Mapping

import attr

from . import constants
from .address import AddressDeriver
from .transaction import TxRecord, sort_newest_first
from .util import WalletFileException, MyEncoder, profiler, add_amounts, format_amount, to_decimal
from .logging import Logger


STATE_VERSION = 1


def locked(func):
    def wrapper(self, *args, **kwargs):
        with self.lock:
            return func(self, *args, **kwargs)
    return wrapper


@attr.s(kw_only=True)
class AddressRecord:
    address = attr.ib(type=str)
    txids = attr.ib(default=None)    # type: Optional[List[str]]
    amounts = attr.ib(default=None)  # type: Optional[Dict[str, str]]

    def is_resolved(self) -> bool:
        return self.amounts is not None

    def has_history(self) -> bool:
        return bool(self.txids)

    def get_amount(self, currency_code: str) -> str:
        if not self.amounts:
            return '0'
        return self.amounts.get(currency_code, '0')

    def to_json(self) -> dict:
        return {'address': self.address, 'txids': self.txids, 'amounts': self.amounts}

    @classmethod
    def from_json(cls, d: dict) -> 'AddressRecord':
        return AddressRecord(address=d['address'], txids=d.get('txids'), amounts=d.get('amounts'))


class WalletState(Logger):
    """The one mutable aggregate of an engine.

    Every accessor takes self.lock, so host threads and the event loop can
    share an instance. Compound updates should hold the lock for the whole
    update:

        with state.lock:
            state.set_address_info(...)
            state.mark_address_used(...)

    Every mutation bumps a generation counter. The state is "modified" while
    that counter is ahead of the last generation known to be on disk.
    """

    def __init__(self, s: str = '', *, master_public_key: Optional[str] = None):
        Logger.__init__(self)
        self.lock = threading.RLock()
        self._generation = 0
        self._saved_generation = 0

        self.block_height = 0
        self.master_public_key = ''
        self.total_balances = {}        # type: Dict[str, str]
        self.enabled_tokens = [constants.net.CURRENCY_CODE]  # type: List[str]
        self.gap_limit_addresses = []   # type: List[str]
        self.transactions = {c: [] for c in constants.net.token_codes()}  # type: Dict[str, List[TxRecord]]
        self.transactions_to_fetch = []  # type: List[str]
        self.addresses = []             # type: List[AddressRecord]
        self.unused_address_index = 0

        if s:
            self._load(s)
        self._address_to_index = {rec.address: i for i, rec in enumerate(self.addresses)}

        if master_public_key is not None:
            if not self.master_public_key:
                self.master_public_key = master_public_key
                self._touch()
            elif self.master_public_key != master_public_key:
                raise WalletFileException("stored state belongs to a different master public key")
        self._deriver = AddressDeriver(self.master_public_key)

    def diagnostic_name(self):
        return ''

    def _load(self, s: str) -> None:
        try:
            data = json.loads(s)
        except Exception:
            raise WalletFileException("Cannot read wallet state. (parsing failed)")
        if not isinstance(data, dict):
            raise WalletFileException("Malformed wallet state (not dict)")
        try:
            if isinstance(data.get('block_height'), int):
                self.block_height = data['block_height']
            if isinstance(data.get('master_public_key'), str):
                self.master_public_key = data['master_public_key']
            if isinstance(data.get('total_balances'), dict):
                self.total_balances = {k: format_amount(to_decimal(v)) for k, v in data['total_balances'].items()}
            if isinstance(data.get('enabled_tokens'), list):
                self.enabled_tokens = list(dict.fromkeys(data['enabled_tokens']))
                if constants.net.CURRENCY_CODE not in self.enabled_tokens:
                    self.enabled_tokens.insert(0, constants.net.CURRENCY_CODE)
            if isinstance(data.get('gap_limit_addresses'), list):
                self.gap_limit_addresses = list(dict.fromkeys(data['gap_limit_addresses']))
            if isinstance(data.get('transactions'), dict):
                for currency_code, txs in data['transactions'].items():
                    self.transactions[currency_code] = [TxRecord.from_json(tx) for tx in txs]
            if isinstance(data.get('transactions_to_fetch'), list):
                self.transactions_to_fetch = list(dict.fromkeys(data['transactions_to_fetch']))
            if isinstance(data.get('addresses'), list):
                self.addresses = [AddressRecord.from_json(x) for x in data['addresses']]
            if isinstance(data.get('unused_address_index'), int):
                self.unused_address_index = data['unused_address_index']
        except (KeyError, TypeError, ValueError) as e:
            raise WalletFileException(f"Malformed wallet state: {e!r}") from e
        self.logger.info(f"loaded state: height={self.block_height}, "
                         f"{len(self.addresses)} addresses, unused index {self.unused_address_index}")

    # --- dirty tracking

    def _touch(self) -> None:
        with self.lock:
            self._generation += 1

    @locked
    def is_modified(self) -> bool:
        return self._generation != self._saved_generation

    @locked
    def set_modified(self, b: bool) -> None:
        if b:
            self._touch()
        else:
            self._saved_generation = self._generation

    @locked
    def get_generation(self) -> int:
        return self._generation

    @locked
    @profiler(min_threshold=0.05)
    def snapshot(self) -> Tuple[str, int]:
        """Serialized state, and the generation it was taken at."""
        return self.dump(), self._generation

    @locked
    def clear_modified(self, generation: int) -> bool:
        """Record that the snapshot taken at 'generation' is on disk.
        Returns whether the state is now clean; it is not if anything
        changed after that snapshot was taken.
        """
        self._saved_generation = max(self._saved_generation, generation)
        return self._generation == self._saved_generation

    @locked
    def to_json(self) -> dict:
        return {
            'version': STATE_VERSION,
            'block_height': self.block_height,
            'master_public_key': self.master_public_key,
            'total_balances': dict(self.total_balances),
            'enabled_tokens': list(self.enabled_tokens),
            'gap_limit_addresses': list(self.gap_limit_addresses),
            'transactions': {c: [tx.to_json() for tx in txs] for c, txs in self.transactions.items()},
            'transactions_to_fetch': list(self.transactions_to_fetch),
            'addresses': [rec.to_json() for rec in self.addresses],
            'unused_address_index': self.unused_address_index,
        }

    @locked
    def dump(self, *, human_readable: bool = False) -> str:
        return json.dumps(
            self.to_json(),
            indent=4 if human_readable else None,
            sort_keys=bool(human_readable),
            cls=MyEncoder,
        )

    # --- block height

    @locked
    def get_block_height(self) -> int:
        return self.block_height

    @locked
    def set_block_height(self, height: int) -> bool:
        if height == self.block_height:
            return False
        self.block_height = height
        self._touch()
        return True

    # --- tokens

    @locked
    def get_enabled_tokens(self) -> Sequence[str]:
        return list(self.enabled_tokens)

    @locked
    def is_token_enabled(self, currency_code: str) -> bool:
        return currency_code in self.enabled_tokens

    @locked
    def enable_tokens(self, tokens: Iterable[str]) -> List[str]:
        added = []
        for token in tokens:
            if token not in self.enabled_tokens:
                self.enabled_tokens.append(token)
                added.append(token)
        if added:
            self._touch()
        return added

    # --- addresses

    @locked
    def get_gap_limit_addresses(self) -> Sequence[str]:
        return list(self.gap_limit_addresses)

    @locked
    def is_gap_limit_address(self, address: str) -> bool:
        return address in self.gap_limit_addresses

    @locked
    def add_gap_limit_addresses(self, addresses: Iterable[str]) -> None:
        changed = False
        for addr in addresses:
            if addr not in self.gap_limit_addresses:
                self.gap_limit_addresses.append(addr)
                changed = True
        if changed:
            self._touch()

    @locked
    def num_addresses(self) -> int:
        return len(self.addresses)

    @locked
    def get_address_records(self) -> Sequence[AddressRecord]:
        return [copy.deepcopy(rec) for rec in self.addresses]

    @locked
    def get_address_record(self, index: int) -> Optional[AddressRecord]:
        if 0 <= index < len(self.addresses):
            return copy.deepcopy(self.addresses[index])
        return None

    @locked
    def get_address_index(self, address: str) -> Optional[int]:
        return self._address_to_index.get(address)

    @locked
    def is_mine(self, address: str) -> bool:
        return address in self._address_to_index

    def derive_address(self, index: int) -> str:
        return self._deriver.derive(index)

    @locked
    def ensure_address(self, index: int) -> str:
        """Make sure addresses[index] exists and is the one we derive.
        Raises AddressDerivationMismatch if the stored record disagrees.
        """
        address = self._deriver.derive(index)
        if index < len(self.addresses):
            self._deriver.check(index, self.addresses[index].address)
            return address
        if index > len(self.addresses):
            # never leave holes: addresses[i] must always exist for i < len
            self.ensure_address(index - 1)
        self.addresses.append(AddressRecord(address=address))
        self._address_to_index[address] = index
        self._touch()
        return address

    @locked
    def set_address_info(self, index: int, txids: Optional[Sequence[str]], amounts: Optional[Mapping[str, str]]) -> None:
        rec = self.addresses[index]
        rec.txids = list(txids) if txids is not None else None
        rec.amounts = dict(amounts) if amounts is not None else {}
        self._touch()

    @locked
    def get_unused_address_index(self) -> int:
        return self.unused_address_index

    @locked
    def mark_address_used(self, index: int) -> bool:
        """Advance unused_address_index past 'index'. It never moves backwards."""
        if index < self.unused_address_index:
            return False
        self.unused_address_index = index + 1
        self._touch()
        return True

    @locked
    def is_address_used(self, address: str) -> bool:
        index = self._address_to_index.get(address)
        if index is not None and self.addresses[index].has_history():
            return True
        return address in self.gap_limit_addresses

    # --- balances

    @locked
    def get_balance(self, currency_code: str) -> str:
        return self.total_balances.get(currency_code, '0')

    @locked
    def get_total_balances(self) -> Dict[str, str]:
        return dict(self.total_balances)

    @locked
    def compute_total_balances(self) -> Dict[str, str]:
        """Sum over every resolved address, restricted to enabled tokens."""
        totals = {constants.net.CURRENCY_CODE: '0'}
        for rec in self.addresses:
            if not rec.is_resolved():
                continue
            for currency_code, amount in rec.amounts.items():
                if currency_code not in self.enabled_tokens:
                    continue
                totals[currency_code] = add_amounts(totals.get(currency_code, '0'), amount)
        return totals

    @locked
    def set_total_balances(self, totals: Mapping[str, str]) -> List[str]:
        """Replace the balances wholesale. Returns the currencies whose total moved."""
        changed = [c for c in set(totals) | set(self.total_balances)
                   if totals.get(c, '0') != self.total_balances.get(c, '0')]
        self.total_balances = dict(totals)
        self._touch()
        return sorted(changed)

    # --- transactions

    @locked
    def find_transaction(self, currency_code: str, txid: str) -> int:
        for i, tx in enumerate(self.transactions.get(currency_code, [])):
            if tx.txid == txid:
                return i
        return -1

    @locked
    def is_known_txid(self, txid: str) -> bool:
        return any(self.find_transaction(c, txid) != -1 for c in self.transactions)

    @locked
    def add_transaction(self, currency_code: str, tx: TxRecord) -> bool:
        """Insert or update by txid. Returns True if the record is new."""
        txs = self.transactions.setdefault(currency_code, [])
        idx = self.find_transaction(currency_code, tx.txid)
        self._touch()
        if idx == -1:
            txs.append(tx)
            self.transactions[currency_code] = sort_newest_first(txs)
            return True
        txs[idx] = tx
        return False

    @locked
    def get_transactions(self, currency_code: str) -> List[TxRecord]:
        return list(self.transactions.get(currency_code, []))

    @locked
    def num_transactions(self, currency_code: str) -> int:
        return len(self.transactions.get(currency_code, []))

    @locked
    def get_transactions_to_fetch(self) -> List[str]:
        return list(self.transactions_to_fetch)

    @locked
    def queue_txid(self, txid: str) -> bool:
        if txid in self.transactions_to_fetch:
            return False
        self.transactions_to_fetch.append(txid)
        self._touch()
        return True

    @locked
    def remove_txid_to_fetch(self, txid: str) -> bool:
        if txid not in self.transactions_to_fetch:
            return False
        self.transactions_to_fetch.remove(txid)
        self._touch()
        return True
