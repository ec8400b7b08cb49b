import asyncio
import os
import unittest
import threading
import tempfile
import shutil
from typing import Dict, List, Optional, Sequence

import trdwallet
import trdwallet.logging
from trdwallet import constants
from trdwallet import util
from trdwallet.engine import Engine
from trdwallet.interface import NetworkException, RequestCorrupted, TxDetails, SpendReceipt
from trdwallet.simple_config import SimpleConfig
from trdwallet.transaction import TxIO


trdwallet.logging._configure_stderr_logging()

trdwallet.util.AS_LIB_USER_I_WANT_TO_MANAGE_MY_OWN_ASYNCIO_LOOP = True


class TrdWalletTestCase(unittest.IsolatedAsyncioTestCase):
    """Base class for our unit tests."""

    TESTNET = False
    # maxDiff = None  # for debugging

    # some unit tests are modifying globals... so we run sequentially:
    _test_lock = threading.Lock()

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        if cls.TESTNET:
            constants.set_testnet()

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        if cls.TESTNET:
            constants.set_mainnet()

    def setUp(self):
        have_lock = self._test_lock.acquire(timeout=0.1)
        if not have_lock:
            # This can happen when trying to run the tests in parallel,
            # or if a prior test raised during `setUp` or `asyncSetUp` and never released the lock.
            raise Exception("timed out waiting for test_lock")
        super().setUp()
        self.data_dir = tempfile.mkdtemp()
        self.config = SimpleConfig({
            'data_dir': self.data_dir,
            'poll_addresses_seconds': 0.01,
            'poll_transactions_seconds': 0.01,
            'poll_blockheight_seconds': 0.01,
            'save_state_seconds': 0.01,
        })
        self._registered_callbacks = []

    async def asyncSetUp(self):
        await super().asyncSetUp()
        loop = util.get_asyncio_loop()
        # IsolatedAsyncioTestCase creates event loops with debug=True, which makes the tests take ~4x time
        if not (os.environ.get("PYTHONASYNCIODEBUG") or os.environ.get("PYTHONDEVMODE")):
            loop.set_debug(False)

    def tearDown(self):
        for cb in self._registered_callbacks:
            util.unregister_callback(cb)
        shutil.rmtree(self.data_dir)
        super().tearDown()
        self._test_lock.release()

    def make_engine(self, *, master_public_key: str = 'pub294709fe', client=None, **kwargs) -> Engine:
        if client is None:
            client = MockIndexer()
        return Engine(self.config, master_public_key=master_public_key, client=client, **kwargs)

    def record_events(self, engine: Engine, events: Sequence[str]) -> List[tuple]:
        """Collect the notifications of one engine, as (event, *args) tuples."""
        recorded = []
        def make_cb(event):
            def cb(engine_, *args):
                if engine_ is engine:
                    recorded.append((event, *args))
            return cb
        for event in events:
            cb = make_cb(event)
            util.register_callback(cb, [event])
            self._registered_callbacks.append(cb)
        return recorded

    async def wait_until(self, predicate, *, timeout: float = 5) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                self.fail("condition not reached in time")
            await asyncio.sleep(0.01)


class MockIndexer:
    """In-memory stand-in for IndexerClient."""

    def __init__(self):
        self.height = 0
        self.txids = {}    # type: Dict[str, List[str]]
        self.amounts = {}  # type: Dict[str, Dict[str, str]]
        self.txs = {}      # type: Dict[str, TxDetails]
        self.failing_addresses = set()
        self.corrupt_txids = set()
        self.offline = False
        self.address_queries = []  # type: List[str]
        self.tx_queries = []       # type: List[str]
        self.spends = []           # type: List[dict]
        self.servers = ['http://mock']

    def set_servers(self, servers: Sequence[str]) -> None:
        self.servers = list(servers)

    def set_address(self, address: str, *, txids: Optional[List[str]] = None, amounts: Dict[str, str] = None) -> None:
        self.txids[address] = txids
        self.amounts[address] = dict(amounts or {})

    def add_tx(self, txid: str, *, inputs=(), outputs=(), tx_date=0, block_height=0, network_fee='0') -> None:
        self.txs[txid] = TxDetails(
            txid=txid,
            network_fee=network_fee,
            tx_date=tx_date,
            block_height=block_height,
            inputs=[TxIO(currency_code=c, address=a, amount=v) for c, a, v in inputs],
            outputs=[TxIO(currency_code=c, address=a, amount=v) for c, a, v in outputs],
        )

    def _check_online(self):
        if self.offline:
            raise NetworkException("mock indexer is offline")

    async def get_height(self) -> int:
        self._check_online()
        return self.height

    async def get_address(self, address: str):
        self.address_queries.append(address)
        self._check_online()
        if address in self.failing_addresses:
            raise NetworkException(f"cannot look up {address}")
        return self.txids.get(address), dict(self.amounts.get(address, {}))

    async def get_transaction(self, txid: str) -> TxDetails:
        self.tx_queries.append(txid)
        self._check_online()
        if txid in self.corrupt_txids:
            raise RequestCorrupted(f"garbage for {txid}")
        if txid not in self.txs:
            raise NetworkException(f"unknown tx {txid}")
        return self.txs[txid]

    async def post_spend(self, chain_params: dict) -> SpendReceipt:
        self._check_online()
        self.spends.append(chain_params)
        return SpendReceipt(txid=f"spent{len(self.spends)}", block_height=self.height, tx_date=1700000000)
