from .version import TRDWALLET_VERSION
from .util import InsufficientFunds, SpendValidationError, NotSupported
from .address import derive_address, AddressDerivationMismatch
from .transaction import TxRecord, ChainParams, TxIO
from .wallet_state import WalletState, AddressRecord
from .storage import WalletStorage, LocalStatePersister
from .interface import IndexerClient, ResponseValidator
from .coinchooser import SpendBuilder, SpendInfo, SpendTarget
from .simple_config import SimpleConfig
from .engine import Engine, ReferenceSigner
from .logging import get_logger


__version__ = TRDWALLET_VERSION

_logger = get_logger(__name__)


# Ensure that asserts are enabled. For sanity and paranoia, we require this.
# Code *should not rely* on asserts being enabled. In particular, safety and security checks should
# always explicitly raise exceptions.
try:
    assert False  # noqa: B011
except AssertionError:
    pass
else:
    raise ImportError("Running with asserts disabled. Refusing to continue. Exiting...")
