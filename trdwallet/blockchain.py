# Copyright (C) 2024 The trdwallet developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

from typing import TYPE_CHECKING

from .util import PeriodicJob
from .interface import NetworkException, RequestCorrupted

if TYPE_CHECKING:
    from .engine import Engine


class BlockHeightPoller(PeriodicJob):
    """Keeps state.block_height in line with the indexer's chain tip."""

    LOGGING_SHORTCUT = 'B'

    def __init__(self, engine: 'Engine', *, interval: float):
        PeriodicJob.__init__(self, engine, interval=interval)

    async def run_once(self) -> None:
        self._requests_sent += 1
        try:
            height = await self.engine.client.get_height()
        except (NetworkException, RequestCorrupted) as e:
            self.logger.info(f"error getting block height: {e!r}")
            return
        finally:
            self._requests_answered += 1
        if self.engine.state.set_block_height(height):
            self.logger.info(f"new block height {height}")
            self.engine.trigger('block_height_changed', height)
