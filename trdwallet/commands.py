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
import argparse
import sys
import time
from typing import Optional, Sequence

from . import constants
from . import util
from .util import print_msg, print_stderr, json_encode, WalletFileException, EventListener, event_listener
from .simple_config import SimpleConfig
from .logging import configure_logging
from .storage import WalletStorage, get_local_state_path, load_wallet_state
from .wallet_state import WalletState
from .engine import Engine


class EventPrinter(EventListener):
    """Prints the notifications of one engine on stdout."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _print(self, engine, event, *args):
        if engine is self.engine:
            print_msg(event, *args)

    @event_listener
    def on_event_block_height_changed(self, engine, height):
        self._print(engine, 'block_height_changed', height)

    @event_listener
    def on_event_addresses_checked(self, engine, progress):
        self._print(engine, 'addresses_checked', f"{progress:.2f}")

    @event_listener
    def on_event_transactions_changed(self, engine, txs):
        self._print(engine, 'transactions_changed', json_encode([tx.to_json() for tx in txs]))

    @event_listener
    def on_event_balance_changed(self, engine, currency_code, amount):
        self._print(engine, 'balance_changed', currency_code, amount)

    @event_listener
    def on_event_engine_fault(self, engine, exc):
        self._print(engine, 'engine_fault', repr(exc))


def get_wallet_state(config: SimpleConfig, master_public_key: str) -> WalletState:
    """Read the persisted state of a wallet, without starting an engine."""
    storage = WalletStorage(get_local_state_path(config.get_wallet_folder(master_public_key)))
    return load_wallet_state(storage, master_public_key)


def cmd_sync(config: SimpleConfig, options) -> int:
    loop, stopping_fut, loop_thread = util.create_and_start_event_loop()
    try:
        engine = Engine(config, master_public_key=options.master_public_key)
        printer = EventPrinter(engine)
        printer.register_callbacks()
        try:
            engine.start_engine()
            try:
                time.sleep(options.seconds)
            except KeyboardInterrupt:
                print_stderr("interrupted, stopping")
            engine.kill_engine()
        finally:
            printer.unregister_callbacks()
    finally:
        loop.call_soon_threadsafe(stopping_fut.set_result, 1)
        loop_thread.join(timeout=1)
    if fault := engine.get_fault():
        print_stderr(f"engine stopped on fault: {fault}")
        return 1
    return 0


def cmd_getbalance(config: SimpleConfig, options) -> int:
    state = get_wallet_state(config, options.master_public_key)
    if options.currency_code:
        print_msg(json_encode({options.currency_code: state.get_balance(options.currency_code)}))
    else:
        print_msg(json_encode(state.get_total_balances()))
    return 0


def cmd_history(config: SimpleConfig, options) -> int:
    state = get_wallet_state(config, options.master_public_key)
    currency_code = options.currency_code or constants.net.CURRENCY_CODE
    print_msg(json_encode([tx.to_json() for tx in state.get_transactions(currency_code)]))
    return 0


def cmd_getaddress(config: SimpleConfig, options) -> int:
    state = get_wallet_state(config, options.master_public_key)
    print_msg(state.derive_address(state.get_unused_address_index()))
    return 0


known_commands = {
    'sync': cmd_sync,
    'getbalance': cmd_getbalance,
    'history': cmd_history,
    'getaddress': cmd_getaddress,
}


def add_network_options(parser):
    group = parser.add_argument_group('network options')
    group.add_argument(
        "-s", "--server", dest=SimpleConfig.INDEXER_SERVERS.key(), default=None,
        help="indexer base URL(s), comma separated")
    group.add_argument(
        "-p", "--proxy", dest=SimpleConfig.NETWORK_PROXY.key(), default=None,
        help="set proxy [type:]host:port (or 'none' to disable proxy), where type is socks4 or socks5")
    group.add_argument(
        "--timeout", dest=SimpleConfig.NETWORK_TIMEOUT.key(), type=int, default=None,
        help="timeout of a single request to the indexer, in seconds")


def add_global_options(parser, suppress=False):
    group = parser.add_argument_group('global options')
    group.add_argument(
        "-v", dest=SimpleConfig.VERBOSITY.key(), default='',
        help=argparse.SUPPRESS if suppress else "Set verbosity (log levels)")
    group.add_argument(
        "-V", dest=SimpleConfig.VERBOSITY_SHORTCUTS.key(), default='',
        help=argparse.SUPPRESS if suppress else "Set verbosity (shortcut-filter list)")
    group.add_argument(
        "-D", "--dir", dest="data_dir",
        help=argparse.SUPPRESS if suppress else "trdwallet directory")
    group.add_argument(
        "--testnet", action="store_true", dest="testnet", default=False,
        help=argparse.SUPPRESS if suppress else "Use testnet")


def add_wallet_options(parser):
    parser.add_argument("--mpk", dest="master_public_key", required=True, help="master public key of the wallet")


def get_parser():
    parser = argparse.ArgumentParser(
        prog='trdwallet',
        epilog="Run 'trdwallet <command> -h' to see the help for a command")
    add_global_options(parser)
    subparsers = parser.add_subparsers(dest='cmd', metavar='<command>')
    # sync
    parser_sync = subparsers.add_parser('sync', help="Synchronize the wallet with the indexer for a while")
    add_wallet_options(parser_sync)
    parser_sync.add_argument("--seconds", dest="seconds", type=float, default=60,
                             help="how long to run the engine before stopping")
    add_network_options(parser_sync)
    add_global_options(parser_sync, suppress=True)
    # offline commands
    parser_balance = subparsers.add_parser('getbalance', help="Print the balances stored locally")
    add_wallet_options(parser_balance)
    parser_balance.add_argument("--currency", dest="currency_code", default=None, help="currency or token code")
    add_global_options(parser_balance, suppress=True)
    parser_history = subparsers.add_parser('history', help="Print the stored transactions, newest first")
    add_wallet_options(parser_history)
    parser_history.add_argument("--currency", dest="currency_code", default=None, help="currency or token code")
    add_global_options(parser_history, suppress=True)
    parser_address = subparsers.add_parser('getaddress', help="Print the first unused address")
    add_wallet_options(parser_address)
    add_global_options(parser_address, suppress=True)
    return parser


_command_only_options = ('cmd', 'master_public_key', 'seconds', 'currency_code')


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = get_parser()
    options = parser.parse_args(argv)
    if not options.cmd:
        parser.print_help()
        return 1
    # options given on the command line override the user config
    config_options = {k: v for k, v in vars(options).items()
                      if v is not None and v != '' and k not in _command_only_options}
    if not config_options.get('testnet'):
        config_options.pop('testnet', None)
    config = SimpleConfig(config_options)
    if config.get_selected_chain() is constants.TrdTestnet:
        constants.set_testnet()
    configure_logging(config)
    try:
        return known_commands[options.cmd](config, options)
    except WalletFileException as e:
        print_stderr(f"error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
