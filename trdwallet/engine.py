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
import concurrent.futures
from typing import Optional, Sequence, List, Dict, Any, TYPE_CHECKING

from aiorpcx import ignore_after

from . import constants
from . import util
from .util import OldTaskGroup, NotSupported, log_exceptions
from .logging import Logger
from .transaction import TxRecord
from .storage import WalletStorage, LocalStatePersister, get_local_state_path, load_wallet_state
from .interface import IndexerClient
from .blockchain import BlockHeightPoller
from .synchronizer import GapLimitScanner, TransactionFetcher
from .coinchooser import SpendInfo, get_spend_builder

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


class ReferenceSigner:
    """Signer of the reference indexer deployment. Does no cryptography,
    it only marks the record as signed.
    """
    SIGNED_MARKER = 'iwassignedjusttrustme'

    async def sign_transaction(self, tx: TxRecord) -> TxRecord:
        tx.signed_tx = self.SIGNED_MARKER
        return tx


class Engine(Logger):
    """Keeps the local state of one wallet in sync with the indexer.

    Host commands may be called from any thread. Notifications go out through
    util.trigger_callback, with the engine as first argument:

        block_height_changed(engine, height)
        addresses_checked(engine, progress)
        transactions_changed(engine, [TxRecord, ...])
        balance_changed(engine, currency_code, amount)
        engine_fault(engine, exception)
    """

    LOGGING_SHORTCUT = 'E'

    # host commands this engine does not implement
    CAPABILITIES = {
        'disable_tokens': False,
        'get_enabled_tokens': False,
        'add_custom_token': False,
        'resync_blockchain': False,
        'dump_data': False,
        'get_display_private_seed': False,
        'get_display_public_seed': False,
    }

    def __init__(
            self,
            config: 'SimpleConfig',
            *,
            master_public_key: str,
            wallet_folder: str = None,
            client: IndexerClient = None,
            signer: ReferenceSigner = None,
    ):
        self.config = config
        self.master_public_key = master_public_key
        Logger.__init__(self)
        if wallet_folder is None:
            wallet_folder = config.get_wallet_folder(master_public_key)
        self.wallet_folder = wallet_folder
        self.storage = WalletStorage(get_local_state_path(wallet_folder))
        self.state = load_wallet_state(self.storage, master_public_key)
        self.client = client or IndexerClient(config)
        self.signer = signer or ReferenceSigner()
        self.settings = {}  # type: Dict[str, Any]
        self.spend_builder = get_spend_builder(self.state, config)

        self.block_height_poller = BlockHeightPoller(self, interval=config.POLL_BLOCKHEIGHT_SECONDS)
        self.scanner = GapLimitScanner(self, interval=config.POLL_ADDRESSES_SECONDS,
                                       gap_limit=config.WALLET_GAP_LIMIT)
        self.tx_fetcher = TransactionFetcher(self, interval=config.POLL_TRANSACTIONS_SECONDS)
        self.persister = LocalStatePersister(self, self.storage, interval=config.SAVE_STATE_SECONDS)

        self._running = False
        self._stop_event = None  # type: Optional[asyncio.Event]
        self._main_fut = None  # type: Optional[concurrent.futures.Future]
        self._fault = None  # type: Optional[Exception]
        self.taskgroup = None  # type: Optional[OldTaskGroup]

    def diagnostic_name(self):
        return self.master_public_key[:8]

    @property
    def jobs(self) -> Sequence[util.PeriodicJob]:
        return [self.block_height_poller, self.scanner, self.tx_fetcher, self.persister]

    def trigger(self, event: str, *args) -> None:
        util.trigger_callback(event, self, *args)

    # --- lifecycle

    def is_running(self) -> bool:
        return self._running

    def start_engine(self) -> None:
        """Spawn the periodic jobs on the event loop. Can be called from any thread."""
        if self._running:
            return
        self._running = True
        loop = util.get_asyncio_loop()
        self._main_fut = asyncio.run_coroutine_threadsafe(self._run(), loop)

    @log_exceptions
    async def _run(self) -> None:
        self._stop_event = asyncio.Event()
        self.logger.info("starting engine")
        self._do_initial_callbacks()
        self.taskgroup = OldTaskGroup()
        async with self.taskgroup as group:
            for job in self.jobs:
                await group.spawn(job.run())

    def _do_initial_callbacks(self) -> None:
        self.trigger('block_height_changed', self.state.get_block_height())
        for currency_code in constants.net.token_codes():
            self.trigger('transactions_changed', self.state.get_transactions(currency_code))
            self.trigger('balance_changed', currency_code, self.state.get_balance(currency_code))

    async def sleep(self, interval: float) -> None:
        """Sleep between two cycles of a job. Returns early if the engine is stopped."""
        if not self._running:
            return
        if self._stop_event is None:
            await asyncio.sleep(interval)
            return
        async with ignore_after(interval):
            await self._stop_event.wait()

    async def stop(self) -> None:
        """Stop the jobs, let running cycles finish, then flush the state to disk."""
        self.logger.info("stopping engine")
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            if self._main_fut is not None:
                await asyncio.wrap_future(self._main_fut)
        finally:
            self._main_fut = None
            await self.persister.save()

    def kill_engine(self) -> None:
        """Blocking stop(), for callers outside the event loop thread."""
        loop = util.get_asyncio_loop()
        assert util.get_running_loop() != loop, 'must not be called from asyncio thread'
        asyncio.run_coroutine_threadsafe(self.stop(), loop).result()

    def on_fault(self, exc: Exception) -> None:
        self._fault = exc
        self.logger.error(f"engine fault: {exc!r}")
        self.trigger('engine_fault', exc)

    def get_fault(self) -> Optional[Exception]:
        return self._fault

    def update_settings(self, settings: Dict[str, Any]) -> None:
        self.settings = dict(settings)
        if servers := settings.get('indexer_servers'):
            self.client.set_servers(servers)

    # --- queries

    def get_block_height(self) -> int:
        return self.state.get_block_height()

    def enable_tokens(self, tokens: Sequence[str]) -> None:
        added = self.state.enable_tokens(tokens)
        if added:
            self.logger.info(f"enabled tokens {added}")

    def get_token_status(self, token: str) -> bool:
        return self.state.is_token_enabled(token)

    def get_balance(self, currency_code: str = None) -> str:
        if currency_code is None:
            currency_code = constants.net.CURRENCY_CODE
        return self.state.get_balance(currency_code)

    def get_num_transactions(self, currency_code: str = None) -> int:
        if currency_code is None:
            currency_code = constants.net.CURRENCY_CODE
        return self.state.num_transactions(currency_code)

    def get_transactions(self, currency_code: str = None, *, start_index: int = 0,
                         num_entries: int = 0) -> List[TxRecord]:
        """Newest first. num_entries=0 means up to the end.
        A start_index past the end is clamped to the last entry.
        """
        if currency_code is None:
            currency_code = constants.net.CURRENCY_CODE
        txs = self.state.get_transactions(currency_code)
        if start_index > 0:
            start_index = min(start_index, len(txs) - 1)
        else:
            start_index = 0
        if num_entries > 0:
            num_entries = min(num_entries, len(txs) - start_index)
            return txs[start_index:start_index + num_entries]
        return txs[start_index:]

    def get_fresh_address(self) -> str:
        return self.state.derive_address(self.state.get_unused_address_index())

    def add_gap_limit_addresses(self, addresses: Sequence[str]) -> None:
        self.state.add_gap_limit_addresses(addresses)

    def is_address_used(self, address: str) -> bool:
        return self.state.is_address_used(address)

    # --- spending

    def make_spend(self, spend_info: SpendInfo) -> TxRecord:
        return self.spend_builder.make_spend(spend_info)

    async def sign_tx(self, tx: TxRecord) -> TxRecord:
        return await self.signer.sign_transaction(tx)

    async def broadcast_tx(self, tx: TxRecord) -> TxRecord:
        receipt = await self.client.post_spend(tx.chain_params.to_wire())
        tx.txid = receipt.txid
        tx.block_height = receipt.block_height
        tx.timestamp = receipt.tx_date
        self.logger.info(f"broadcast tx {tx.txid}")
        return tx

    def save_tx(self, tx: TxRecord) -> None:
        self.state.add_transaction(tx.currency_code, tx)

    # --- not implemented

    @classmethod
    def supports(cls, capability: str) -> bool:
        return cls.CAPABILITIES.get(capability, hasattr(cls, capability))

    def disable_tokens(self, tokens: Sequence[str]) -> None:
        raise NotSupported('disable_tokens')

    def get_enabled_tokens(self) -> Sequence[str]:
        raise NotSupported('get_enabled_tokens')

    def add_custom_token(self, token: Dict[str, Any]) -> None:
        raise NotSupported('add_custom_token')

    def resync_blockchain(self) -> None:
        raise NotSupported('resync_blockchain')

    def dump_data(self) -> Dict[str, Any]:
        raise NotSupported('dump_data')

    def get_display_private_seed(self) -> str:
        raise NotSupported('get_display_private_seed')

    def get_display_public_seed(self) -> str:
        raise NotSupported('get_display_public_seed')
