import io
import json
import threading
from contextlib import redirect_stdout

from trdwallet import util
from trdwallet.commands import (get_parser, cmd_sync, cmd_getbalance, cmd_history, cmd_getaddress, get_wallet_state,
                                EventPrinter)
from trdwallet.util import WalletFileException
from trdwallet.storage import WalletStorage, get_local_state_path
from trdwallet.transaction import TxRecord
from trdwallet.wallet_state import WalletState

from . import TrdWalletTestCase


MPK = 'pub294709fe'


class TestCommands(TrdWalletTestCase):

    def _store_state(self):
        state = WalletState(master_public_key=MPK)
        state.set_total_balances({'TRD': '42', 'TRDB': '1.5'})
        state.add_transaction('TRD', TxRecord(txid='t1', timestamp=3, currency_code='TRD', native_amount='42'))
        state.mark_address_used(2)
        WalletStorage(get_local_state_path(self.config.get_wallet_folder(MPK))).write(state.dump())

    def _run(self, func, argv):
        options = get_parser().parse_args(argv)
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(0, func(self.config, options))
        return out.getvalue()

    def test_parser(self):
        options = get_parser().parse_args(['sync', '--mpk', MPK, '--seconds', '5', '-s', 'http://a,http://b'])
        self.assertEqual('sync', options.cmd)
        self.assertEqual(MPK, options.master_public_key)
        self.assertEqual(5.0, options.seconds)
        self.assertEqual('http://a,http://b', options.indexer_servers)

    def test_missing_state_reads_as_empty(self):
        state = get_wallet_state(self.config, MPK)
        self.assertEqual(0, state.get_block_height())
        self.assertEqual({}, json.loads(self._run(cmd_getbalance, ['getbalance', '--mpk', MPK])))

    def test_getbalance(self):
        self._store_state()
        self.assertEqual({'TRD': '42', 'TRDB': '1.5'},
                         json.loads(self._run(cmd_getbalance, ['getbalance', '--mpk', MPK])))
        self.assertEqual({'TRDB': '1.5'},
                         json.loads(self._run(cmd_getbalance, ['getbalance', '--mpk', MPK, '--currency', 'TRDB'])))

    def test_history(self):
        self._store_state()
        history = json.loads(self._run(cmd_history, ['history', '--mpk', MPK]))
        self.assertEqual(['t1'], [tx['txid'] for tx in history])
        self.assertEqual([], json.loads(self._run(cmd_history, ['history', '--mpk', MPK, '--currency', 'TRDC'])))

    def test_getaddress(self):
        self._store_state()
        self.assertEqual('3_' + MPK, self._run(cmd_getaddress, ['getaddress', '--mpk', MPK]).strip())

    def test_sync_on_corrupt_state_stops_event_loop(self):
        WalletStorage(get_local_state_path(self.config.get_wallet_folder(MPK))).write('{"addresses": 5')
        options = get_parser().parse_args(['sync', '--mpk', MPK, '--seconds', '0'])
        with self.assertRaises(WalletFileException):
            cmd_sync(self.config, options)
        self.assertIsNone(util._asyncio_event_loop)
        self.assertFalse([t for t in threading.enumerate() if t.name == 'EventLoop' and t.is_alive()])

    async def test_event_printer(self):
        engine = self.make_engine(master_public_key=MPK)
        other = self.make_engine(master_public_key='pubother')
        printer = EventPrinter(engine)
        printer.register_callbacks()
        out = io.StringIO()
        try:
            with redirect_stdout(out):
                engine.trigger('block_height_changed', 12)
                other.trigger('block_height_changed', 99)
                engine.trigger('balance_changed', 'TRD', '4.5')
                engine.trigger('addresses_checked', 0.5)
        finally:
            printer.unregister_callbacks()
        self.assertEqual(['block_height_changed 12', 'balance_changed TRD 4.5', 'addresses_checked 0.50'],
                         out.getvalue().splitlines())
