# -*- coding: utf-8 -*-
#
# Electrum - lightweight Bitcoin client
# Copyright (C) 2018 The Electrum developers
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

from typing import Tuple, Optional

import ecdsa
from ecdsa.curves import SECP256k1
from ecdsa.der import UnexpectedDER
from ecdsa.ecdsa import curve_secp256k1
from ecdsa.util import string_to_number

from .logging import get_logger


_logger = get_logger(__name__)

CURVE_ORDER = SECP256k1.order
FIELD_SIZE = curve_secp256k1.p()

# a DER signature is at most 72 bytes, plus the sighash byte appended in bitcoin
MIN_DER_SIG_WITH_SIGHASH_LEN = 9
MAX_DER_SIG_WITH_SIGHASH_LEN = 73

TAPROOT_SIGHASH_TYPES = (0x01, 0x02, 0x03, 0x81, 0x82, 0x83)


class InvalidECPointException(Exception):
    """e.g. not on curve, or infinity"""


def get_y_coord_from_x(x: int, *, odd: bool) -> int:
    if not (0 <= x < FIELD_SIZE):
        raise InvalidECPointException('x coordinate out of range')
    _p = FIELD_SIZE
    alpha = (pow(x, 3, _p) + curve_secp256k1.a() * x + curve_secp256k1.b()) % _p
    beta = pow(alpha, (_p + 1) // 4, _p)
    if beta * beta % _p != alpha:
        raise InvalidECPointException('x coordinate is not on the curve')
    if odd == bool(beta & 1):
        return beta
    return _p - beta


def ser_to_point(ser: bytes) -> Tuple[int, int]:
    """Decodes a SEC1 public key (compressed, uncompressed or hybrid)."""
    if len(ser) == 33 and ser[0] in (0x02, 0x03):
        x = string_to_number(ser[1:])
        return x, get_y_coord_from_x(x, odd=ser[0] == 0x03)
    if len(ser) == 65 and ser[0] in (0x04, 0x06, 0x07):
        x = string_to_number(ser[1:33])
        y = string_to_number(ser[33:])
        if not (0 <= x < FIELD_SIZE and 0 <= y < FIELD_SIZE):
            raise InvalidECPointException('coordinate out of range')
        if not curve_secp256k1.contains_point(x, y):
            raise InvalidECPointException('point is not on the curve')
        if ser[0] != 0x04 and bool(y & 1) != (ser[0] == 0x07):
            raise InvalidECPointException('hybrid pubkey with mismatching y parity')
        return x, y
    raise InvalidECPointException(f'unexpected pubkey encoding (len={len(ser)})')


def is_pubkey_bytes(pubkey: bytes) -> bool:
    try:
        ser_to_point(pubkey)
    except InvalidECPointException:
        return False
    return True


def is_xonly_pubkey_bytes(pubkey: bytes) -> bool:
    if len(pubkey) != 32:
        return False
    return is_pubkey_bytes(b'\x02' + pubkey)


def get_r_and_s_from_der_sig(der_sig: bytes) -> Tuple[int, int]:
    r, s = ecdsa.util.sigdecode_der(der_sig, CURVE_ORDER)
    return r, s


def is_der_sig_with_sighash(sig: bytes) -> bool:
    """Checks a bitcoin ECDSA signature: a strict DER encoding
    of (r, s), followed by one sighash byte.
    """
    if not (MIN_DER_SIG_WITH_SIGHASH_LEN <= len(sig) <= MAX_DER_SIG_WITH_SIGHASH_LEN):
        return False
    try:
        r, s = get_r_and_s_from_der_sig(sig[:-1])
    except UnexpectedDER:
        return False
    if not (1 <= r < CURVE_ORDER and 1 <= s < CURVE_ORDER):
        return False
    return True


def is_schnorr_sig_bytes(sig: bytes) -> bool:
    """64 bytes (SIGHASH_DEFAULT), or 65 bytes with an explicit non-default sighash."""
    if len(sig) == 65:
        if sig[64] not in TAPROOT_SIGHASH_TYPES:
            return False
    elif len(sig) != 64:
        return False
    r = string_to_number(sig[0:32])
    s = string_to_number(sig[32:64])
    return r < FIELD_SIZE and s < CURVE_ORDER


class SignatureValidator:
    """Byte-level well-formedness checks for keys and signatures found in a PSBT.

    Signatures are never verified against the transaction here. Hosts
    that have a faster backend (e.g. libsecp256k1 bindings) can subclass
    this and pass an instance wherever a validator is accepted.
    """

    def validate_pubkey(self, pubkey: bytes) -> bool:
        return is_pubkey_bytes(pubkey)

    def validate_der_signature(self, sig: bytes) -> bool:
        return is_der_sig_with_sighash(sig)

    def validate_xonly_pubkey(self, pubkey: bytes) -> bool:
        return is_xonly_pubkey_bytes(pubkey)

    def validate_schnorr_signature(self, sig: bytes) -> bool:
        return is_schnorr_sig_bytes(sig)


_default_validator = SignatureValidator()


def get_validator(validator: Optional[SignatureValidator] = None) -> SignatureValidator:
    if validator is None:
        return _default_validator
    return validator
