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
import os
import stat
from typing import TYPE_CHECKING

from aiorpcx import run_in_thread

from . import constants
from .util import standardize_path, os_chmod, make_dir, PeriodicJob, WalletFileException
from .wallet_state import WalletState
from .logging import Logger

if TYPE_CHECKING:
    from .engine import Engine


class StorageReadWriteError(Exception): pass


def get_local_state_path(wallet_folder: str) -> str:
    return os.path.join(wallet_folder, constants.DATA_STORE_FOLDER, constants.DATA_STORE_FILE)


class WalletStorage(Logger):
    """One JSON file on disk, replaced atomically on every write."""

    def __init__(self, path):
        Logger.__init__(self)
        self.path = standardize_path(path)
        self._file_exists = bool(self.path and os.path.exists(self.path))
        self.logger.info(f"wallet state path {self.path}")

    def read(self) -> str:
        try:
            with open(self.path, "rb") as f:
                return f.read().decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StorageReadWriteError(e) from e

    def write(self, data: str) -> None:
        make_dir(os.path.dirname(self.path))
        try:
            mode = os.stat(self.path).st_mode
        except FileNotFoundError:
            mode = stat.S_IREAD | stat.S_IWRITE
        temp_path = "%s.tmp.%s" % (self.path, os.getpid())
        with open(temp_path, "wb") as f:
            os_chmod(temp_path, mode)  # set restrictive perms *before* we write data
            f.write(data.encode("utf-8"))
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, self.path)
        self._file_exists = True
        self.logger.debug(f"saved {self.path}")

    def file_exists(self) -> bool:
        return self._file_exists


def load_wallet_state(storage: WalletStorage, master_public_key: str) -> WalletState:
    """Read the persisted state, or start empty if nothing was saved yet."""
    if not storage.file_exists():
        return WalletState(master_public_key=master_public_key)
    try:
        s = storage.read()
    except StorageReadWriteError as e:
        raise WalletFileException(f"cannot read wallet state: {e}") from e
    return WalletState(s, master_public_key=master_public_key)


class LocalStatePersister(PeriodicJob):
    """Flushes the wallet state to disk whenever it is modified.

    Nothing else in the engine writes the state to disk.
    """

    LOGGING_SHORTCUT = 'P'

    def __init__(self, engine: 'Engine', storage: WalletStorage, *, interval: float):
        PeriodicJob.__init__(self, engine, interval=interval)
        self.storage = storage

    async def run_once(self) -> None:
        await self.save()

    async def save(self) -> bool:
        """Returns True if a snapshot made it to disk."""
        state = self.engine.state
        if not state.is_modified():
            return False
        data, generation = state.snapshot()
        try:
            await run_in_thread(self.storage.write, data)
        except OSError as e:
            # keep the state modified, next cycle tries again
            self.logger.warning(f"failed to save wallet state: {e!r}")
            return False
        if not state.clear_modified(generation):
            self.logger.debug("state changed while saving, will save again")
        return True

