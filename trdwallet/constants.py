# Copyright (C) 2024 The trdwallet developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

from typing import Sequence


DATA_STORE_FOLDER = 'txEngineFolder'
DATA_STORE_FILE = 'walletLocalData.json'

GAP_LIMIT = 10

ADDRESS_POLL_SECONDS = 20
TRANSACTION_POLL_SECONDS = 3
BLOCKHEIGHT_POLL_SECONDS = 60
SAVE_DATASTORE_SECONDS = 10

DEFAULT_NETWORK_FEE = '50000'
FEE_TIER_DELTA = '10000'

# placeholder signing status of a proposal that has not been through a signer yet
UNSIGNED_MARKER = 'unsigned_right_now'


class AbstractNet:

    NET_NAME: str
    CURRENCY_CODE: str
    SUPPORTED_TOKENS: Sequence[str]
    DEFAULT_SERVERS: Sequence[str]

    @classmethod
    def token_codes(cls) -> Sequence[str]:
        """Primary currency first, then every token the indexer knows about."""
        return (cls.CURRENCY_CODE,) + tuple(cls.SUPPORTED_TOKENS)


class TrdMainnet(AbstractNet):

    NET_NAME = "mainnet"
    CURRENCY_CODE = 'TRD'
    SUPPORTED_TOKENS = ('TRDB', 'TRDC')
    DEFAULT_SERVERS = ('https://trd-indexer.example.org',)


class TrdTestnet(AbstractNet):

    NET_NAME = "testnet"
    CURRENCY_CODE = 'TRD'
    SUPPORTED_TOKENS = ('TRDB', 'TRDC')
    DEFAULT_SERVERS = ('https://testnet.trd-indexer.example.org',)


# don't import net directly, import the module instead (so that net is singleton)
net = TrdMainnet  # type: type[AbstractNet]

def set_mainnet():
    global net
    net = TrdMainnet

def set_testnet():
    global net
    net = TrdTestnet
