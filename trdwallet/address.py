# Copyright (C) 2024 The trdwallet developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Address derivation.

The engine anchors its view of the wallet on this function: whatever the
indexer tells us, addresses[i] must always equal derive_address(i, mpk).

Reference scheme (used by the reference indexer deployment):

    derive_address(102, 'pub294709fe') == '102_pub294709fe'

Index 0 additionally carries the '__600000' marker, which the reference
indexer uses to preload the first address with funds.
"""


PRELOADED_FUNDS_SUFFIX = '__600000'


class AddressDerivationMismatch(Exception):
    """An address stored at a derivation index is not the one we derive.

    Either the master public key got corrupted, or the remote side handed us
    data for an address that is not ours. Fatal for the scanner.
    """
    def __init__(self, index: int, expected: str, found: str):
        Exception.__init__(self, f"Derived address mismatch on index {index}: "
                                 f"expected {expected!r}, found {found!r}")
        self.index = index
        self.expected = expected
        self.found = found


def derive_address(index: int, master_public_key: str) -> str:
    if not isinstance(index, int) or isinstance(index, bool) or index < 0:
        raise ValueError(f"derivation index must be a non-negative integer, not {index!r}")
    if not isinstance(master_public_key, str):
        raise ValueError(f"master public key must be a str, not {type(master_public_key)}")
    addr = f"{index}_{master_public_key}"
    if index == 0:
        addr += PRELOADED_FUNDS_SUFFIX
    return addr


class AddressDeriver:
    """derive_address bound to one master public key."""

    def __init__(self, master_public_key: str):
        self.master_public_key = master_public_key

    def derive(self, index: int) -> str:
        return derive_address(index, self.master_public_key)

    def check(self, index: int, address: str) -> None:
        expected = self.derive(index)
        if address != expected:
            raise AddressDerivationMismatch(index, expected, address)
