# Copyright (C) 2024 The trdwallet developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

from typing import List, Sequence, Dict, Any

import attr

from .constants import UNSIGNED_MARKER


@attr.s(kw_only=True, frozen=True)
class TxIO:
    """One input or output leg, as the indexer reports it."""
    currency_code = attr.ib(type=str)
    address = attr.ib(type=str)
    amount = attr.ib(type=str)

    def to_json(self) -> Dict[str, str]:
        return {'currency_code': self.currency_code, 'address': self.address, 'amount': self.amount}

    def to_wire(self) -> Dict[str, str]:
        return {'currencyCode': self.currency_code, 'address': self.address, 'amount': self.amount}

    @classmethod
    def from_json(cls, d: dict) -> 'TxIO':
        return TxIO(currency_code=d['currency_code'], address=d['address'], amount=d['amount'])

    @classmethod
    def from_wire(cls, d: dict) -> 'TxIO':
        return TxIO(currency_code=d['currencyCode'], address=d['address'], amount=d['amount'])


def _to_txio_list(items) -> List[TxIO]:
    return [x if isinstance(x, TxIO) else TxIO.from_json(x) for x in items]


@attr.s(kw_only=True)
class ChainParams:
    """Chain-level body of a transaction. Opaque to everything but the
    indexer's spend endpoint.
    """
    inputs = attr.ib(factory=list, converter=_to_txio_list)   # type: List[TxIO]
    outputs = attr.ib(factory=list, converter=_to_txio_list)  # type: List[TxIO]

    def to_json(self) -> Dict[str, Any]:
        return {
            'inputs': [x.to_json() for x in self.inputs],
            'outputs': [x.to_json() for x in self.outputs],
        }

    def to_wire(self) -> Dict[str, Any]:
        return {
            'inputs': [x.to_wire() for x in self.inputs],
            'outputs': [x.to_wire() for x in self.outputs],
        }

    @classmethod
    def from_json(cls, d: dict) -> 'ChainParams':
        return ChainParams(inputs=d.get('inputs', []), outputs=d.get('outputs', []))

    @classmethod
    def from_wire(cls, d: dict) -> 'ChainParams':
        return ChainParams(
            inputs=[TxIO.from_wire(x) for x in d.get('inputs', [])],
            outputs=[TxIO.from_wire(x) for x in d.get('outputs', [])],
        )


def _to_chain_params(v) -> ChainParams:
    if isinstance(v, ChainParams):
        return v
    if v is None:
        return ChainParams()
    return ChainParams.from_json(v)


@attr.s(kw_only=True)
class TxRecord:
    """A ledger entry of one transaction, seen from one currency.

    native_amount is signed: positive when the wallet gained, negative when
    it lost. A transaction touching two currencies yields two records sharing
    the txid.
    """
    txid = attr.ib(type=str)
    timestamp = attr.ib(type=int, default=0)
    currency_code = attr.ib(type=str)
    block_height = attr.ib(type=int, default=0)
    native_amount = attr.ib(type=str, default='0')
    network_fee = attr.ib(type=str, default='0')
    our_receive_addresses = attr.ib(factory=list, converter=list)  # type: List[str]
    signed_tx = attr.ib(type=str, default=UNSIGNED_MARKER)
    chain_params = attr.ib(factory=ChainParams, converter=_to_chain_params)  # type: ChainParams

    def is_signed(self) -> bool:
        return self.signed_tx != UNSIGNED_MARKER

    def to_json(self) -> Dict[str, Any]:
        return {
            'txid': self.txid,
            'timestamp': self.timestamp,
            'currency_code': self.currency_code,
            'block_height': self.block_height,
            'native_amount': self.native_amount,
            'network_fee': self.network_fee,
            'our_receive_addresses': list(self.our_receive_addresses),
            'signed_tx': self.signed_tx,
            'chain_params': self.chain_params.to_json(),
        }

    @classmethod
    def from_json(cls, d: dict) -> 'TxRecord':
        return TxRecord(**d)


def sort_newest_first(txs: Sequence[TxRecord]) -> List[TxRecord]:
    # sorted() is stable, so records sharing a timestamp keep their relative order
    return sorted(txs, key=lambda tx: tx.timestamp, reverse=True)
