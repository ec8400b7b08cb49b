import hashlib
import json
import threading
import os
import stat
from typing import Union, Optional, Dict, Sequence, Any, Set, Callable, Type
from functools import cached_property

from copy import deepcopy

from . import constants
from .util import os_chmod, user_dir, make_dir, to_decimal, format_amount
from .logging import get_logger, Logger


_logger = get_logger(__name__)


FINAL_CONFIG_VERSION = 1


_config_var_from_key = {}  # type: Dict[str, 'ConfigVar']


class ConfigVar(property):

    def __init__(
        self,
        key: str,
        *,
        default: Union[Any, Callable[['SimpleConfig'], Any]],  # typically a literal, but can also be a callable
        type_=None,
        convert_getter: Callable[[Any], Any] = None,
        short_desc: Optional[str] = None,
    ):
        self._key = key
        self._default = default
        self._type = type_
        self._convert_getter = convert_getter
        self._short_desc = short_desc
        property.__init__(self, self._get_config_value, self._set_config_value)
        assert key not in _config_var_from_key, f"duplicate config key str: {key!r}"
        _config_var_from_key[key] = self

    def _get_config_value(self, config: 'SimpleConfig'):
        with config.lock:
            if config.is_set(self._key):
                value = config.get(self._key)
                if self._convert_getter is not None:
                    value = self._convert_getter(value)
                if self._type is not None:
                    assert value is not None, f"got None for key={self._key!r}"
                    try:
                        value = self._type(value)
                    except Exception as e:
                        raise ValueError(
                            f"ConfigVar.get type-check and auto-conversion failed. "
                            f"key={self._key!r}. type={self._type}. value={value!r}") from e
            else:
                d = self._default
                value = d(config) if callable(d) else d
            return value

    def _set_config_value(self, config: 'SimpleConfig', value, *, save=True):
        if self._type is not None and value is not None:
            if not isinstance(value, self._type):
                raise ValueError(
                    f"ConfigVar.set type-check failed. "
                    f"key={self._key!r}. type={self._type}. value={value!r}")
        config.set_key(self._key, value, save=save)

    def key(self) -> str:
        return self._key

    def get_default_value(self) -> Any:
        return self._default

    def get_short_desc(self) -> Optional[str]:
        return self._short_desc

    def __repr__(self):
        return f"<ConfigVar key={self._key!r}>"

    def __deepcopy__(self, memo):
        return self


class ConfigVarWithConfig:

    def __init__(self, *, config: 'SimpleConfig', config_var: 'ConfigVar'):
        self._config = config
        self._config_var = config_var

    def get(self) -> Any:
        return self._config_var._get_config_value(self._config)

    def set(self, value: Any, *, save=True) -> None:
        self._config_var._set_config_value(self._config, value, save=save)

    def key(self) -> str:
        return self._config_var.key()

    def get_default_value(self) -> Any:
        return self._config_var.get_default_value()

    def is_modifiable(self) -> bool:
        return self._config.is_modifiable(self._config_var)

    def is_set(self) -> bool:
        return self._config.is_set(self._config_var)

    def __repr__(self):
        return f"<ConfigVarWithConfig key={self.key()!r}>"


def _convert_server_list(value) -> Sequence[str]:
    if isinstance(value, str):
        value = [x.strip() for x in value.split(',') if x.strip()]
    return [s.rstrip('/') for s in value]


def _convert_amount(value) -> str:
    return format_amount(to_decimal(value))


class SimpleConfig(Logger):
    """
    The SimpleConfig class is responsible for handling operations involving
    configuration files.

    There are two different sources of possible configuration values:
        1. Command line options.
        2. User configuration (in the user's config directory)
    They are taken in order (1. overrides config options set in 2.)
    """

    def __init__(self, options=None, read_user_config_function=None,
                 read_user_dir_function=None):
        if options is None:
            options = {}
        for config_key in options:
            assert isinstance(config_key, str), f"{config_key=!r} has type={type(config_key)}, expected str"

        Logger.__init__(self)

        # This lock needs to be acquired for updating and reading the config in
        # a thread-safe way.
        self.lock = threading.RLock()

        # dependency injection for tests
        if read_user_config_function is None:
            read_user_config_function = read_user_config
        if read_user_dir_function is None:
            self.user_dir = user_dir
        else:
            self.user_dir = read_user_dir_function

        self.cmdline_options = deepcopy(options)
        # don't allow to be set on CLI:
        self.cmdline_options.pop('config_version', None)

        self.user_config = {}  # for self.get in data_path()
        self.path = self.data_path()
        self.user_config = read_user_config_function(self.path)
        if not self.user_config:
            self.user_config = {'config_version': FINAL_CONFIG_VERSION}

        self._not_modifiable_keys = set()  # type: Set[str]

        if self.get_config_version() > FINAL_CONFIG_VERSION:
            self.logger.warning(f'config version ({self.get_config_version()}) '
                                f'is higher than latest ({FINAL_CONFIG_VERSION})')

        self._init_done = True

    def data_path_root(self):
        # Read data_dir from command line
        # Otherwise use the user's default data directory.
        path = self.get('data_dir') or self.user_dir()
        make_dir(path, allow_symlink=False)
        return path

    def get_selected_chain(self) -> Type[constants.AbstractNet]:
        if self.get('testnet'):
            return constants.TrdTestnet
        return constants.TrdMainnet

    def data_path(self):
        path = self.data_path_root()
        chain = self.get_selected_chain()
        if chain.NET_NAME != 'mainnet':
            path = os.path.join(path, chain.NET_NAME)
            make_dir(path, allow_symlink=False)
        self.logger.info(f"trdwallet directory {path} (chain={chain.NET_NAME})")
        return path

    def get_wallet_folder(self, master_public_key: str) -> str:
        """Folder holding the local state of one wallet."""
        wallet_id = hashlib.sha256(master_public_key.encode("utf-8")).hexdigest()[:16]
        return os.path.join(self.path, "wallets", wallet_id)

    def set_key(self, key: Union[str, ConfigVar, ConfigVarWithConfig], value, *, save=True) -> None:
        """Set the value for an arbitrary string config key.
        note: try to use explicit predefined ConfigVars instead of this method, whenever possible.
        """
        if isinstance(key, (ConfigVar, ConfigVarWithConfig)):
            key = key.key()
        assert isinstance(key, str), key
        if not self.is_modifiable(key):
            self.logger.warning(f"not changing config key '{key}' set on the command line")
            return
        try:
            json.dumps(key)
            json.dumps(value)
        except Exception:
            self.logger.info(f"json error: cannot save {repr(key)} ({repr(value)})")
            return
        with self.lock:
            if value is not None:
                self.user_config[key] = value
            else:
                self.user_config.pop(key, None)
            if save:
                self.save_user_config()

    def get(self, key: str, default=None) -> Any:
        assert isinstance(key, str), key
        with self.lock:
            out = self.cmdline_options.get(key)
            if out is None:
                out = self.user_config.get(key, default)
        return out

    def is_set(self, key: Union[str, ConfigVar, ConfigVarWithConfig]) -> bool:
        """Returns whether the config key has any explicit value set/defined."""
        if isinstance(key, (ConfigVar, ConfigVarWithConfig)):
            key = key.key()
        assert isinstance(key, str), key
        return self.get(key, default=...) is not ...

    def get_config_version(self):
        return self.get('config_version', 1)

    def is_modifiable(self, key: Union[str, ConfigVar, ConfigVarWithConfig]) -> bool:
        if isinstance(key, (ConfigVar, ConfigVarWithConfig)):
            key = key.key()
        return (key not in self.cmdline_options
                and key not in self._not_modifiable_keys)

    def make_key_not_modifiable(self, key: Union[str, ConfigVar, ConfigVarWithConfig]) -> None:
        if isinstance(key, (ConfigVar, ConfigVarWithConfig)):
            key = key.key()
        assert isinstance(key, str), key
        self._not_modifiable_keys.add(key)

    def save_user_config(self):
        if not self.path:
            return
        path = os.path.join(self.path, "config")
        s = json.dumps(self.user_config, indent=4, sort_keys=True)
        try:
            with open(path, "w", encoding='utf-8') as f:
                os_chmod(path, stat.S_IREAD | stat.S_IWRITE)  # set restrictive perms *before* we write data
                f.write(s)
        except OSError:
            # datadir probably deleted while running
            if os.path.exists(self.path):
                raise

    def get_proxy(self) -> Optional[dict]:
        return deserialize_proxy(self.NETWORK_PROXY)

    def get_servers(self) -> Sequence[str]:
        servers = self.INDEXER_SERVERS
        if not servers:
            servers = list(self.get_selected_chain().DEFAULT_SERVERS)
        return servers

    def __setattr__(self, name, value):
        """Disallows setting instance attributes outside __init__.

        The point is to make the following code raise:
        >>> config.NETORK_TIMEOUT = 10
        (i.e. catch mistyped or non-existent ConfigVars)
        """
        if not getattr(self, "_init_done", False) or hasattr(self, name):
            return super().__setattr__(name, value)
        raise AttributeError(
            f"Tried to define new instance attribute for config: {name=!r}. "
            "Did you perhaps mistype a ConfigVar?"
        )

    @cached_property
    def cv(config):
        """Allows getting a reference to a config variable without dereferencing it.

        Compare:
        >>> config.NETWORK_TIMEOUT
        45
        >>> config.cv.NETWORK_TIMEOUT
        <ConfigVarWithConfig key='network_timeout'>
        """
        class CVLookupHelper:
            def __getattribute__(self, name: str) -> ConfigVarWithConfig:
                if name in ("from_key", ):
                    return super().__getattribute__(name)
                config_var = config.__class__.__getattribute__(type(config), name)
                if not isinstance(config_var, ConfigVar):
                    raise AttributeError()
                return ConfigVarWithConfig(config=config, config_var=config_var)
            def from_key(self, key: str) -> ConfigVarWithConfig:
                try:
                    config_var = _config_var_from_key[key]
                except KeyError:
                    raise KeyError(f"No ConfigVar with key={key!r}") from None
                return ConfigVarWithConfig(config=config, config_var=config_var)
            def __setattr__(self, name, value):
                raise Exception(
                    f"Cannot assign value to config.cv.{name} directly. "
                    f"Either use config.cv.{name}.set() or assign to config.{name} instead.")
        return CVLookupHelper()

    # config variables ----->
    INDEXER_SERVERS = ConfigVar(
        'indexer_servers', default=None, convert_getter=_convert_server_list,
        short_desc='Base URLs of the indexing service, tried in order',
    )
    NETWORK_PROXY = ConfigVar('proxy', default=None, type_=str)
    NETWORK_TIMEOUT = ConfigVar('network_timeout', default=45, type_=int)
    NETWORK_MAX_INCOMING_REQUESTS = ConfigVar('network_max_parallel_requests', default=10, type_=int)

    WALLET_GAP_LIMIT = ConfigVar('gap_limit', default=constants.GAP_LIMIT, type_=int)
    POLL_ADDRESSES_SECONDS = ConfigVar('poll_addresses_seconds', default=constants.ADDRESS_POLL_SECONDS, type_=float)
    POLL_TRANSACTIONS_SECONDS = ConfigVar('poll_transactions_seconds', default=constants.TRANSACTION_POLL_SECONDS, type_=float)
    POLL_BLOCKHEIGHT_SECONDS = ConfigVar('poll_blockheight_seconds', default=constants.BLOCKHEIGHT_POLL_SECONDS, type_=float)
    SAVE_STATE_SECONDS = ConfigVar('save_state_seconds', default=constants.SAVE_DATASTORE_SECONDS, type_=float)

    SPEND_DEFAULT_FEE = ConfigVar(
        'default_network_fee', default=constants.DEFAULT_NETWORK_FEE, convert_getter=_convert_amount,
        short_desc='Network fee of the default tier, in native units',
    )

    LOG_TO_FILE = ConfigVar('log_to_file', default=False, type_=bool)
    LOGS_NUM_FILES_KEEP = ConfigVar('logs_num_files_keep', default=10, type_=int)
    VERBOSITY = ConfigVar('verbosity', default="", type_=str)
    VERBOSITY_SHORTCUTS = ConfigVar('verbosity_shortcuts', default="", type_=str)


proxy_modes = ['socks4', 'socks5']


def deserialize_proxy(s: Optional[str], user: str = None, password: str = None) -> Optional[dict]:
    """Parses '[socks4|socks5:]host:port' into the dict make_aiohttp_session takes."""
    if not isinstance(s, str):
        return None
    if s.lower() == 'none':
        return None
    proxy = {"mode": "socks5", "host": "localhost"}

    args = s.split(':')
    if args[0] in proxy_modes:
        proxy['mode'] = args[0]
        args = args[1:]

    def is_valid_port(ps: str):
        try:
            return 0 < int(ps) < 65535
        except ValueError:
            return False

    if len(args) < 2:
        return None
    proxy['host'] = ':'.join(args[:-1])
    proxy['port'] = args[-1]

    if not proxy['host'] or not is_valid_port(proxy['port']):
        return None

    proxy['user'] = user
    proxy['password'] = password
    return proxy


def read_user_config(path: Optional[str]) -> Dict[str, Any]:
    """Parse and store the user config settings in <data dir>/config into user_config[]."""
    if not path:
        return {}
    config_path = os.path.join(path, "config")
    if not os.path.exists(config_path):
        return {}
    try:
        with open(config_path, "r", encoding='utf-8') as f:
            data = f.read()
        result = json.loads(data)
        assert isinstance(result, dict), "config file is not a dict"
    except Exception as e:
        raise ValueError(f"Invalid config file at {config_path}: {str(e)}")
    return result
