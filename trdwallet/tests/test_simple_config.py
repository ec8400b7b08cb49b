import json
import os

from trdwallet import constants
from trdwallet.simple_config import SimpleConfig, deserialize_proxy, read_user_config

from . import TrdWalletTestCase


class TestSimpleConfig(TrdWalletTestCase):

    def test_defaults(self):
        config = SimpleConfig({'data_dir': self.data_dir})
        self.assertEqual(10, config.WALLET_GAP_LIMIT)
        self.assertEqual(45, config.NETWORK_TIMEOUT)
        self.assertEqual('50000', config.SPEND_DEFAULT_FEE)
        self.assertEqual(20, config.POLL_ADDRESSES_SECONDS)
        self.assertEqual(3, config.POLL_TRANSACTIONS_SECONDS)
        self.assertEqual(60, config.POLL_BLOCKHEIGHT_SECONDS)
        self.assertEqual(10, config.SAVE_STATE_SECONDS)
        self.assertEqual(list(constants.TrdMainnet.DEFAULT_SERVERS), config.get_servers())
        self.assertIsNone(config.get_proxy())

    def test_cmdline_overrides_user_config(self):
        def read_user_config_function(path):
            return {'gap_limit': 30, 'network_timeout': 10}
        config = SimpleConfig({'data_dir': self.data_dir, 'gap_limit': '20'},
                              read_user_config_function=read_user_config_function)
        self.assertEqual(20, config.WALLET_GAP_LIMIT)
        self.assertEqual(10, config.NETWORK_TIMEOUT)
        self.assertFalse(config.is_modifiable(config.cv.WALLET_GAP_LIMIT))
        config.WALLET_GAP_LIMIT = 50  # ignored, set on the command line
        self.assertEqual(20, config.WALLET_GAP_LIMIT)

    def test_user_config_is_saved(self):
        config = SimpleConfig({'data_dir': self.data_dir})
        config.NETWORK_TIMEOUT = 12
        with open(os.path.join(self.data_dir, 'config')) as f:
            self.assertEqual(12, json.load(f)['network_timeout'])
        self.assertEqual(12, SimpleConfig({'data_dir': self.data_dir}).NETWORK_TIMEOUT)
        config.cv.NETWORK_TIMEOUT.set(None)
        self.assertEqual(45, SimpleConfig({'data_dir': self.data_dir}).NETWORK_TIMEOUT)

    def test_invalid_user_config_file(self):
        with open(os.path.join(self.data_dir, 'config'), 'w') as f:
            f.write('[1, 2')
        with self.assertRaises(ValueError):
            read_user_config(self.data_dir)

    def test_setattr_guard(self):
        config = SimpleConfig({'data_dir': self.data_dir})
        with self.assertRaises(AttributeError):
            config.NETORK_TIMEOUT = 10
        with self.assertRaises(ValueError):
            config.NETWORK_TIMEOUT = '10'

    def test_cv(self):
        config = SimpleConfig({'data_dir': self.data_dir})
        self.assertEqual('gap_limit', config.cv.WALLET_GAP_LIMIT.key())
        self.assertFalse(config.cv.WALLET_GAP_LIMIT.is_set())
        self.assertEqual(10, config.cv.from_key('gap_limit').get_default_value())
        with self.assertRaises(KeyError):
            config.cv.from_key('no_such_key')

    def test_server_list_conversion(self):
        config = SimpleConfig({'data_dir': self.data_dir,
                               'indexer_servers': 'https://a.example/, https://b.example'})
        self.assertEqual(['https://a.example', 'https://b.example'], config.get_servers())

    def test_testnet_paths(self):
        config = SimpleConfig({'data_dir': self.data_dir, 'testnet': True})
        self.assertIs(constants.TrdTestnet, config.get_selected_chain())
        self.assertEqual(os.path.join(self.data_dir, 'testnet'), config.path)
        self.assertEqual(list(constants.TrdTestnet.DEFAULT_SERVERS), config.get_servers())

    def test_wallet_folder_per_key(self):
        config = SimpleConfig({'data_dir': self.data_dir})
        f1 = config.get_wallet_folder('pubA')
        self.assertEqual(f1, config.get_wallet_folder('pubA'))
        self.assertNotEqual(f1, config.get_wallet_folder('pubB'))
        self.assertTrue(f1.startswith(os.path.join(self.data_dir, 'wallets')))


class TestProxy(TrdWalletTestCase):

    def test_deserialize_proxy(self):
        self.assertEqual({'mode': 'socks5', 'host': 'localhost', 'port': '9050', 'user': None, 'password': None},
                         deserialize_proxy('localhost:9050'))
        self.assertEqual('socks4', deserialize_proxy('socks4:10.0.0.1:1080')['mode'])
        self.assertEqual('::1', deserialize_proxy('socks5:::1:9050')['host'])
        for bad in (None, 'none', 'None', 'localhost', 'localhost:99999', 'localhost:port', ':9050'):
            self.assertIsNone(deserialize_proxy(bad), msg=bad)
