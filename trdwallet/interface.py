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
import asyncio
from typing import Any, Optional, Sequence, List, Dict, Tuple, TYPE_CHECKING
from urllib.parse import quote

import aiohttp
import attr

from .transaction import TxIO
from .util import make_aiohttp_session, is_native_amount_str
from .logging import Logger

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


class NetworkException(Exception): pass


class RequestTimedOut(NetworkException):
    def __str__(self):
        return "Network request timed out."


class RequestCorrupted(Exception): pass


def is_non_negative_integer(val) -> bool:
    if isinstance(val, int) and not isinstance(val, bool):
        return val >= 0
    return False


def is_non_negative_int_or_float(val) -> bool:
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        return val >= 0
    return False


def assert_non_negative_integer(val: Any) -> None:
    if not is_non_negative_integer(val):
        raise RequestCorrupted(f'{val!r} should be a non-negative integer')


def assert_non_negative_int_or_float(val: Any) -> None:
    if not is_non_negative_int_or_float(val):
        raise RequestCorrupted(f'{val!r} should be a non-negative int or float')


def assert_native_amount_str(val: Any) -> None:
    if not is_native_amount_str(val):
        raise RequestCorrupted(f'{val!r} should be a non-negative integer amount string')


def assert_str(val: Any) -> None:
    if not isinstance(val, str):
        raise RequestCorrupted(f'{val!r} should be a str')


def assert_dict_contains_field(d: Any, *, field_name: str) -> Any:
    if not isinstance(d, dict):
        raise RequestCorrupted(f'{d!r} should be a dict')
    if field_name not in d:
        raise RequestCorrupted(f'required field {field_name!r} missing from dict')
    return d[field_name]


def assert_list_or_tuple(val: Any) -> None:
    if not isinstance(val, (list, tuple)):
        raise RequestCorrupted(f'{val!r} should be a list or tuple')


@attr.s(kw_only=True, frozen=True)
class TxDetails:
    """A transaction as the indexer describes it."""
    txid = attr.ib(type=str)
    network_fee = attr.ib(type=str)
    tx_date = attr.ib(default=0)
    block_height = attr.ib(type=int, default=0)
    inputs = attr.ib(factory=tuple, converter=tuple)   # type: Sequence[TxIO]
    outputs = attr.ib(factory=tuple, converter=tuple)  # type: Sequence[TxIO]


@attr.s(kw_only=True, frozen=True)
class SpendReceipt:
    txid = attr.ib(type=str)
    block_height = attr.ib(type=int, default=0)
    tx_date = attr.ib(default=0)


class ResponseValidator:
    """Shape checks for indexer replies.

    Each method either returns the reply converted to our own types,
    or raises RequestCorrupted.
    """

    def validate_height(self, resp: Any) -> int:
        height = assert_dict_contains_field(resp, field_name='height')
        assert_non_negative_integer(height)
        return height

    def validate_address(self, resp: Any, *, address: str) -> Tuple[Optional[List[str]], Dict[str, str]]:
        resp_address = assert_dict_contains_field(resp, field_name='address')
        if resp_address != address:
            raise RequestCorrupted(f'asked about {address!r}, got a reply for {resp_address!r}')
        txids = assert_dict_contains_field(resp, field_name='txids')
        if txids is not None:
            assert_list_or_tuple(txids)
            for txid in txids:
                assert_str(txid)
            txids = list(txids)
        amounts = assert_dict_contains_field(resp, field_name='amounts')
        if not isinstance(amounts, dict):
            raise RequestCorrupted(f'{amounts!r} should be a dict')
        for currency_code, amount in amounts.items():
            assert_native_amount_str(amount)
        return txids, dict(amounts)

    def _validate_txio_list(self, items: Any) -> List[TxIO]:
        assert_list_or_tuple(items)
        res = []
        for item in items:
            currency_code = assert_dict_contains_field(item, field_name='currencyCode')
            address = assert_dict_contains_field(item, field_name='address')
            amount = assert_dict_contains_field(item, field_name='amount')
            assert_str(currency_code)
            assert_str(address)
            assert_native_amount_str(amount)
            res.append(TxIO(currency_code=currency_code, address=address, amount=amount))
        return res

    def validate_transaction(self, resp: Any, *, txid: str) -> TxDetails:
        resp_txid = assert_dict_contains_field(resp, field_name='txid')
        if resp_txid != txid:
            raise RequestCorrupted(f'asked for tx {txid!r}, got {resp_txid!r}')
        network_fee = assert_dict_contains_field(resp, field_name='networkFee')
        assert_native_amount_str(network_fee)
        inputs = self._validate_txio_list(assert_dict_contains_field(resp, field_name='inputs'))
        outputs = self._validate_txio_list(assert_dict_contains_field(resp, field_name='outputs'))
        tx_date = resp.get('txDate', 0)
        assert_non_negative_int_or_float(tx_date)
        block_height = resp.get('blockHeight', 0)
        assert_non_negative_integer(block_height)
        return TxDetails(
            txid=txid,
            network_fee=network_fee,
            tx_date=tx_date,
            block_height=block_height,
            inputs=inputs,
            outputs=outputs,
        )

    def validate_spend(self, resp: Any) -> SpendReceipt:
        txid = assert_dict_contains_field(resp, field_name='txid')
        assert_str(txid)
        block_height = assert_dict_contains_field(resp, field_name='blockHeight')
        assert_non_negative_integer(block_height)
        tx_date = assert_dict_contains_field(resp, field_name='txDate')
        assert_non_negative_int_or_float(tx_date)
        return SpendReceipt(txid=txid, block_height=block_height, tx_date=tx_date)


class IndexerClient(Logger):
    """HTTP client of the indexing service.

    Requests go to the first configured server; on a transport failure the
    next one is tried. Every request is bounded by the configured timeout.
    """

    LOGGING_SHORTCUT = 'I'

    def __init__(self, config: 'SimpleConfig', *, validator: ResponseValidator = None):
        Logger.__init__(self)
        self.config = config
        self.servers = list(config.get_servers())
        self.proxy = config.get_proxy()
        self.timeout = config.NETWORK_TIMEOUT
        self.validator = validator or ResponseValidator()
        self._semaphore = asyncio.Semaphore(config.NETWORK_MAX_INCOMING_REQUESTS)

    def set_servers(self, servers: Sequence[str]) -> None:
        if not servers:
            raise ValueError("at least one indexer server is required")
        self.servers = [s.rstrip('/') for s in servers]
        self.logger.info(f"servers set to {self.servers}")

    async def _send_on_server(self, server: str, method: str, path: str, *, json: dict = None) -> Any:
        url = f"{server}/api/{path}"
        async with make_aiohttp_session(self.proxy, timeout=self.timeout) as session:
            if method == 'get':
                async with session.get(url) as resp:
                    resp.raise_for_status()
                    # set content_type to None to disable checking MIME type
                    return await resp.json(content_type=None)
            elif method == 'post':
                async with session.post(url, json=json) as resp:
                    resp.raise_for_status()
                    return await resp.json(content_type=None)
            else:
                raise Exception(f"unexpected {method=!r}")

    async def _send(self, method: str, cmd: str, param: str = None, *, json: dict = None) -> Any:
        path = cmd if param is None else f"{cmd}/{quote(param, safe='')}"
        last_exc = None
        async with self._semaphore:
            for server in self.servers:
                try:
                    return await self._send_on_server(server, method, path, json=json)
                except asyncio.TimeoutError:
                    last_exc = RequestTimedOut()
                except (aiohttp.ClientError, OSError) as e:
                    last_exc = NetworkException(f"{method} {path} on {server} failed: {e!r}")
                except ValueError as e:
                    # body was not json
                    raise RequestCorrupted(f"{method} {path} on {server}: bad json: {e!r}") from e
                self.logger.debug(f"{method} {path} on {server} failed: {last_exc!r}")
        if last_exc is None:
            raise NetworkException("no indexer servers configured")
        raise last_exc

    async def get_height(self) -> int:
        resp = await self._send('get', 'height')
        return self.validator.validate_height(resp)

    async def get_address(self, address: str) -> Tuple[Optional[List[str]], Dict[str, str]]:
        resp = await self._send('get', 'address', address)
        return self.validator.validate_address(resp, address=address)

    async def get_transaction(self, txid: str) -> TxDetails:
        resp = await self._send('get', 'transaction', txid)
        return self.validator.validate_transaction(resp, txid=txid)

    async def post_spend(self, chain_params: dict) -> SpendReceipt:
        resp = await self._send('post', 'spend', json=chain_params)
        return self.validator.validate_spend(resp)
