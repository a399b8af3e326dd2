# -*- coding: utf-8 -*-
#
# Electrum - lightweight Bitcoin client
# Copyright (C) 2011 thomasv@gitorious
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

from typing import Sequence, Union
from enum import IntEnum

from .util import bfh, BitcoinException, to_bytes, is_hex_str
from .crypto import sha256d, sha256, hash_160


COIN = 100000000
TOTAL_COIN_SUPPLY_LIMIT_IN_BTC = 21000000


class opcodes(IntEnum):
    # the opcodes of standard output scripts and multisig scripts
    OP_0 = 0x00
    OP_PUSHDATA1 = 0x4c
    OP_PUSHDATA2 = 0x4d
    OP_PUSHDATA4 = 0x4e
    OP_1NEGATE = 0x4f
    OP_1 = 0x51  # OP_1..OP_16 are contiguous
    OP_16 = 0x60
    OP_RETURN = 0x6a
    OP_DUP = 0x76
    OP_EQUAL = 0x87
    OP_EQUALVERIFY = 0x88
    OP_HASH160 = 0xa9
    OP_CHECKSIG = 0xac
    OP_CHECKMULTISIG = 0xae


def script_num_to_bytes(i: int) -> bytes:
    """Minimal little-endian sign-magnitude encoding, as CScriptNum in Bitcoin Core."""
    if i == 0:
        return b""
    magnitude = abs(i)
    result = bytearray(magnitude.to_bytes((magnitude.bit_length() + 7) // 8, byteorder="little"))
    if result[-1] & 0x80:
        result.append(0x80 if i < 0 else 0x00)
    elif i < 0:
        result[-1] |= 0x80
    return bytes(result)


def var_int(i: int) -> bytes:
    """CompactSize encoding of i."""
    assert i >= 0, i
    if i < 0xfd:
        return bytes([i])
    for prefix, width in ((b"\xfd", 2), (b"\xfe", 4), (b"\xff", 8)):
        if i < 1 << (8 * width):
            return prefix + i.to_bytes(width, byteorder="little")
    raise ValueError(f"integer too large for CompactSize: {i}")


def _op_push(data_len: int) -> bytes:
    if data_len < opcodes.OP_PUSHDATA1:
        return bytes([data_len])
    for opcode, width in ((opcodes.OP_PUSHDATA1, 1), (opcodes.OP_PUSHDATA2, 2), (opcodes.OP_PUSHDATA4, 4)):
        if data_len < 1 << (8 * width):
            return bytes([opcode]) + data_len.to_bytes(width, byteorder="little")
    raise ValueError(f"cannot push {data_len} bytes")


def push_script(data: bytes) -> bytes:
    """Returns the canonical script push of data.
    Single bytes 0..16 and 0x81 use the small integer opcodes.
    """
    if len(data) == 0 or data == b'\x00':
        return bytes([opcodes.OP_0])
    if len(data) == 1 and data[0] <= 16:
        return bytes([opcodes.OP_1 - 1 + data[0]])
    if data == b'\x81':
        return bytes([opcodes.OP_1NEGATE])
    return _op_push(len(data)) + data


def _item_to_bytes(item: Union[str, int, bytes]) -> bytes:
    if type(item) is int:
        return script_num_to_bytes(item)
    if isinstance(item, (bytes, bytearray)):
        return bytes(item)
    assert is_hex_str(item), repr(item)
    return bfh(item)


def construct_witness(items: Sequence[Union[str, int, bytes]]) -> bytes:
    """Serializes a witness stack: item count, then each item length-prefixed."""
    witness = bytearray(var_int(len(items)))
    for item in items:
        item = _item_to_bytes(item)
        witness += var_int(len(item)) + item
    return bytes(witness)


def construct_script(items: Sequence[Union[str, int, bytes, opcodes]]) -> bytes:
    """Constructs bitcoin script from given items.
    Opcodes are written as-is, everything else is pushed.
    """
    script = bytearray()
    for item in items:
        if isinstance(item, opcodes):
            script.append(item)
        elif isinstance(item, (str, int, bytes, bytearray)):
            script += push_script(_item_to_bytes(item))
        else:
            raise Exception(f'unexpected item for script: {item!r}')
    return bytes(script)


############ output scripts #####################

def public_key_to_p2pkh_script(public_key: bytes) -> bytes:
    return construct_script([opcodes.OP_DUP, opcodes.OP_HASH160, hash_160(public_key),
                             opcodes.OP_EQUALVERIFY, opcodes.OP_CHECKSIG])


def redeem_script_to_p2sh_script(redeem_script: bytes) -> bytes:
    return construct_script([opcodes.OP_HASH160, hash_160(redeem_script), opcodes.OP_EQUAL])


def public_key_to_p2wpkh_script(public_key: bytes) -> bytes:
    return construct_script([0, hash_160(public_key)])


def witness_script_to_p2wsh_script(witness_script: bytes) -> bytes:
    return construct_script([0, sha256(witness_script)])


# the redeem script of a p2sh-p2wsh output is the p2wsh output script
p2wsh_nested_script = witness_script_to_p2wsh_script


def xonly_pubkey_to_p2tr_script(output_key: bytes) -> bytes:
    assert len(output_key) == 32, len(output_key)
    return construct_script([opcodes.OP_1, output_key])


############ base58 #####################

B58_ALPHABET = b'123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz'
_B58_INDEX = {char: idx for idx, char in enumerate(B58_ALPHABET)}


class BaseDecodeError(BitcoinException): pass


class InvalidChecksum(BaseDecodeError): pass


def base58_encode(v: bytes) -> str:
    """Encodes bytes as base58. Each leading zero byte becomes a '1'."""
    if not isinstance(v, (bytes, bytearray)):
        raise TypeError(f"expected bytes, got {type(v)}")
    n_zeros = len(v) - len(v.lstrip(b'\x00'))
    num = int.from_bytes(v, byteorder='big')
    digits = bytearray()
    while num:
        num, idx = divmod(num, 58)
        digits.append(B58_ALPHABET[idx])
    digits.reverse()
    return (B58_ALPHABET[0:1] * n_zeros + bytes(digits)).decode('ascii')


def base58_decode(v: Union[bytes, str]) -> bytes:
    v = to_bytes(v, 'ascii')
    n_ones = len(v) - len(v.lstrip(B58_ALPHABET[0:1]))
    num = 0
    for char in v[n_ones:]:
        if char not in _B58_INDEX:
            raise BaseDecodeError(f'Forbidden character {chr(char)!r} for base58')
        num = num * 58 + _B58_INDEX[char]
    return bytes(n_ones) + num.to_bytes((num.bit_length() + 7) // 8, 'big')


def EncodeBase58Check(payload: bytes) -> str:
    return base58_encode(payload + sha256d(payload)[0:4])


def DecodeBase58Check(text: Union[bytes, str]) -> bytes:
    raw = base58_decode(text)
    if len(raw) < 4:
        raise BaseDecodeError(f'base58check data too short: {len(raw)} bytes')
    payload, checksum = raw[:-4], raw[-4:]
    calculated = sha256d(payload)[0:4]
    if calculated != checksum:
        raise InvalidChecksum(f'calculated {calculated.hex()}, found {checksum.hex()}')
    return payload
