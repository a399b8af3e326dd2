# Copyright (C) 2018 The Electrum developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

from typing import List, Tuple, NamedTuple, Sequence

from .util import BitcoinException, chunks
from .bitcoin import EncodeBase58Check, DecodeBase58Check
from . import ecc


BIP32_PRIME = 0x80000000
UINT32_MAX = (1 << 32) - 1

BIP32_HARDENED_CHAR = "h"  # default "hardened" char we put in str paths

XKEY_LEN = 78


class BIP32Node(NamedTuple):
    """A serialized extended key, split into its fields.

    The 4 version bytes are kept verbatim (any network, any xpub/ypub/zpub
    flavour), as the key is only ever carried around and never derived from.
    """
    version: bytes
    depth: int
    fingerprint: bytes  # as in serialized format, this is the *parent's* fingerprint
    child_number: bytes
    chaincode: bytes
    key: bytes  # 33 bytes; a 0x00-prefixed secret for xprvs

    @classmethod
    def from_bytes(cls, b: bytes) -> 'BIP32Node':
        if len(b) != XKEY_LEN:
            raise BitcoinException(f"unexpected xkey raw bytes len {len(b)} != {XKEY_LEN}")
        return BIP32Node(version=b[0:4],
                         depth=b[4],
                         fingerprint=b[5:9],
                         child_number=b[9:13],
                         chaincode=b[13:45],
                         key=b[45:78])

    @classmethod
    def from_xkey(cls, xkey: str) -> 'BIP32Node':
        return cls.from_bytes(DecodeBase58Check(xkey))

    def to_bytes(self) -> bytes:
        payload = (self.version +
                   bytes([self.depth]) +
                   self.fingerprint +
                   self.child_number +
                   self.chaincode +
                   self.key)
        assert len(payload) == XKEY_LEN, f"unexpected xkey payload len {len(payload)}"
        return payload

    def to_xkey(self) -> str:
        return EncodeBase58Check(self.to_bytes())

    def is_private(self) -> bool:
        return self.key[0] == 0

    def child_number_int(self) -> int:
        return int.from_bytes(self.child_number, 'big')

    def is_public_key_valid(self, validator: 'ecc.SignatureValidator' = None) -> bool:
        if self.is_private():
            return False
        return ecc.get_validator(validator).validate_pubkey(self.key)

    def is_consistent_with_path(self, path: Sequence[int]) -> bool:
        """Whether 'path' (from the master key) could lead to this node."""
        if len(path) != self.depth:
            return False
        if self.depth == 0:
            return self.child_number == bytes(4) and self.fingerprint == bytes(4)
        return self.child_number_int() == path[-1]


def convert_bip32_strpath_to_intpath(n: str) -> List[int]:
    """Convert bip32 path str to list of uint32 integers with prime flags
    m/0/-1/1' -> [0, 0x80000001, 0x80000001]

    based on code in trezorlib
    """
    if not n:
        return []
    if n.endswith("/"):
        n = n[:-1]
    n = n.split('/')
    # cut leading "m" if present, but do not require it
    if n[0] == "m":
        n = n[1:]
    path = []
    for x in n:
        if x == '':
            # gracefully allow repeating "/" chars in path.
            # makes concatenating paths easier
            continue
        prime = 0
        if x.endswith("'") or x.endswith("h"):
            x = x[:-1]
            prime = BIP32_PRIME
        if x.startswith('-'):
            if prime:
                raise ValueError(f"bip32 path child index is signalling hardened level in multiple ways")
            prime = BIP32_PRIME
        try:
            x_int = int(x)
        except ValueError as e:
            raise ValueError(f"failed to parse bip32 path: {(str(e))}") from None
        child_index = abs(x_int) | prime
        if child_index > UINT32_MAX:
            raise ValueError(f"bip32 path child index too large: {child_index} > {UINT32_MAX}")
        path.append(child_index)
    return path


def convert_bip32_intpath_to_strpath(path: Sequence[int], *, hardened_char=BIP32_HARDENED_CHAR) -> str:
    assert isinstance(hardened_char, str), hardened_char
    assert len(hardened_char) == 1, hardened_char
    s = "m/"
    for child_index in path:
        if not isinstance(child_index, int):
            raise TypeError(f"bip32 path child index must be int: {child_index}")
        if not (0 <= child_index <= UINT32_MAX):
            raise ValueError(f"bip32 path child index out of range: {child_index}")
        prime = ""
        if child_index & BIP32_PRIME:
            prime = hardened_char
            child_index = child_index ^ BIP32_PRIME
        s += str(child_index) + prime + '/'
    # cut trailing "/"
    s = s[:-1]
    return s


def pack_bip32_root_fingerprint_and_int_path(xfp: bytes, path: Sequence[int]) -> bytes:
    if len(xfp) != 4:
        raise ValueError(f'unexpected xfp length. xfp={xfp.hex()}')
    return xfp + b''.join(i.to_bytes(4, byteorder='little', signed=False) for i in path)


def unpack_bip32_root_fingerprint_and_int_path(path: bytes) -> Tuple[bytes, Sequence[int]]:
    if len(path) < 4 or len(path) % 4 != 0:
        raise ValueError(f'unexpected packed path length. path={path.hex()}')
    xfp = path[0:4]
    int_path = [int.from_bytes(b, byteorder='little', signed=False) for b in chunks(path[4:], 4)]
    return xfp, int_path
