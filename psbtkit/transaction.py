#!/usr/bin/env python
#
# Electrum - lightweight Bitcoin client
# Copyright (C) 2011 Thomas Voegtlin
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



# Note: The deserialization code originally comes from ABE.

import struct
from typing import Sequence, Union, NamedTuple, Tuple, Optional, List
from enum import IntEnum

from .util import bfh, is_hex_str
from .bitcoin import (var_int, TOTAL_COIN_SUPPLY_LIMIT_IN_BTC, COIN,
                      opcodes, construct_witness, construct_script)
from .crypto import sha256d


class SerializationError(Exception):
    """ Thrown when there's a problem deserializing or serializing """


class UnexpectedEndOfStream(SerializationError):
    pass


class NonCanonicalCompactSize(SerializationError):
    pass


class MalformedBitcoinScript(Exception):
    pass


class Sighash(IntEnum):
    # note: this is not an IntFlag, as ALL|NONE != SINGLE

    DEFAULT = 0  # taproot only (bip-0341)
    ALL = 1
    NONE = 2
    SINGLE = 3
    ANYONECANPAY = 0x80

    @classmethod
    def is_valid(cls, sighash: int, *, is_taproot: bool = False) -> bool:
        valid_flags = {
            0x01, 0x02, 0x03,
            0x81, 0x82, 0x83,
        }
        if is_taproot:
            valid_flags.add(0x00)
        return sighash in valid_flags


class TxOutput:
    scriptpubkey: bytes
    value: int

    def __init__(self, *, scriptpubkey: bytes, value: int):
        self.scriptpubkey = scriptpubkey
        if not isinstance(value, int):
            raise ValueError(f"bad txout value: {value!r}")
        self.value = value  # in satoshis

    def serialize_to_network(self) -> bytes:
        buf = int.to_bytes(self.value, 8, byteorder="little", signed=False)
        script = self.scriptpubkey
        buf += var_int(len(script))
        buf += script
        return buf

    @classmethod
    def from_network_bytes(cls, raw: bytes) -> 'TxOutput':
        vds = BCDataStream()
        vds.write(raw)
        txout = parse_output(vds)
        if vds.can_read_more():
            raise SerializationError('extra junk at the end of TxOutput bytes')
        return txout

    def script_type(self) -> Optional[str]:
        return get_script_type_from_output_script(self.scriptpubkey)

    def __repr__(self):
        return f"<TxOutput script={self.scriptpubkey.hex()} value={self.value}>"

    def __eq__(self, other):
        if not isinstance(other, TxOutput):
            return False
        return self.scriptpubkey == other.scriptpubkey and self.value == other.value

    def __ne__(self, other):
        return not (self == other)

    def to_json(self):
        d = {
            'scriptpubkey': self.scriptpubkey.hex(),
            'value_sats': self.value,
        }
        return d


class TxOutpoint(NamedTuple):
    txid: bytes  # endianness same as hex string displayed; reverse of tx serialization order
    out_idx: int

    @classmethod
    def from_str(cls, s: str) -> 'TxOutpoint':
        hash_str, idx_str = s.split(':')
        assert len(hash_str) == 64, f"{hash_str} should be a sha256 hash"
        return TxOutpoint(txid=bfh(hash_str),
                          out_idx=int(idx_str))

    def __repr__(self):
        return f"<TxOutpoint {self.to_str()}>"

    def to_str(self) -> str:
        return f"{self.txid.hex()}:{self.out_idx}"

    def to_json(self):
        return [self.txid.hex(), self.out_idx]

    def serialize_to_network(self) -> bytes:
        return self.txid[::-1] + int.to_bytes(self.out_idx, length=4, byteorder="little", signed=False)


class TxInput:
    prevout: TxOutpoint
    script_sig: Optional[bytes]
    nsequence: int
    witness: Optional[bytes]

    def __init__(self, *,
                 prevout: TxOutpoint,
                 script_sig: bytes = None,
                 nsequence: int = 0xffffffff - 1,
                 witness: bytes = None):
        self.prevout = prevout
        self.script_sig = script_sig
        self.nsequence = nsequence
        self.witness = witness

    def to_json(self):
        d = {
            'prevout_hash': self.prevout.txid.hex(),
            'prevout_n': self.prevout.out_idx,
            'nsequence': self.nsequence,
        }
        if self.script_sig is not None:
            d['scriptSig'] = self.script_sig.hex()
        if self.witness is not None:
            d['witness'] = self.witness.hex()
        return d

    def serialize_to_network(self, *, script_sig: bytes = None) -> bytes:
        if script_sig is None:
            script_sig = self.script_sig or b""
        # Prev hash and index
        s = self.prevout.serialize_to_network()
        # Script length, script, sequence
        s += var_int(len(script_sig))
        s += script_sig
        s += int.to_bytes(self.nsequence, length=4, byteorder="little", signed=False)
        return s

    def witness_elements(self) -> Sequence[bytes]:
        if not self.witness:
            return []
        vds = BCDataStream()
        vds.write(self.witness)
        n = vds.read_compact_size()
        return list(vds.read_bytes(vds.read_compact_size()) for i in range(n))

    def is_segwit(self) -> bool:
        if self.witness not in (b'\x00', b'', None):
            return True
        return False

    def has_sigs(self) -> bool:
        """Whether any scriptSig or witness data is attached."""
        return bool(self.script_sig) or self.is_segwit()


class BCDataStream(object):
    """Workalike python implementation of Bitcoin's CDataStream class."""

    def __init__(self):
        self.input = None  # type: Optional[bytearray]
        self.read_cursor = 0

    def write(self, _bytes: Union[bytes, bytearray]):  # Initialize with string of _bytes
        assert isinstance(_bytes, (bytes, bytearray))
        if self.input is None:
            self.input = bytearray(_bytes)
        else:
            self.input += bytearray(_bytes)

    def read_bytes(self, length: int) -> bytes:
        if self.input is None:
            raise SerializationError("call write(bytes) before trying to deserialize")
        assert length >= 0
        input_len = len(self.input)
        read_begin = self.read_cursor
        read_end = read_begin + length
        if 0 <= read_begin <= read_end <= input_len:
            result = self.input[read_begin:read_end]  # type: bytearray
            self.read_cursor += length
            return bytes(result)
        else:
            raise UnexpectedEndOfStream('attempt to read past end of buffer')

    def bytes_left(self) -> int:
        if not self.input:
            return 0
        return len(self.input) - self.read_cursor

    def can_read_more(self) -> bool:
        return self.bytes_left() > 0

    def read_int32(self): return self._read_num('<i')
    def read_uint32(self): return self._read_num('<I')
    def read_int64(self): return self._read_num('<q')
    def read_uint64(self): return self._read_num('<Q')

    def write_int32(self, val): return self._write_num('<i', val)
    def write_uint32(self, val): return self._write_num('<I', val)
    def write_int64(self, val): return self._write_num('<q', val)
    def write_uint64(self, val): return self._write_num('<Q', val)

    def read_compact_size(self) -> int:
        """Reads a CompactSize. Non-minimal encodings are rejected, as in Bitcoin Core."""
        if self.input is None:
            raise SerializationError("call write(bytes) before trying to deserialize")
        try:
            size = self.input[self.read_cursor]
        except IndexError as e:
            raise UnexpectedEndOfStream("attempt to read past end of buffer") from e
        self.read_cursor += 1
        if size == 253:
            size = self._read_num('<H')
            if size < 253:
                raise NonCanonicalCompactSize(f"non-canonical compact size: {size}")
        elif size == 254:
            size = self._read_num('<I')
            if size < 2**16:
                raise NonCanonicalCompactSize(f"non-canonical compact size: {size}")
        elif size == 255:
            size = self._read_num('<Q')
            if size < 2**32:
                raise NonCanonicalCompactSize(f"non-canonical compact size: {size}")
        return size

    def write_compact_size(self, size):
        if size < 0:
            raise SerializationError("attempt to write size < 0")
        self.write(var_int(size))

    def _read_num(self, format):
        try:
            (i,) = struct.unpack_from(format, self.input, self.read_cursor)
            self.read_cursor += struct.calcsize(format)
        except struct.error as e:
            raise UnexpectedEndOfStream(e) from e
        return i

    def _write_num(self, format, num):
        s = struct.pack(format, num)
        self.write(s)


def script_GetOp(_bytes : bytes):
    i = 0
    while i < len(_bytes):
        vch = None
        opcode = _bytes[i]
        i += 1

        if opcode <= opcodes.OP_PUSHDATA4:
            nSize = opcode
            if opcode == opcodes.OP_PUSHDATA1:
                try: nSize = _bytes[i]
                except IndexError: raise MalformedBitcoinScript()
                i += 1
            elif opcode == opcodes.OP_PUSHDATA2:
                try: (nSize,) = struct.unpack_from('<H', _bytes, i)
                except struct.error: raise MalformedBitcoinScript()
                i += 2
            elif opcode == opcodes.OP_PUSHDATA4:
                try: (nSize,) = struct.unpack_from('<I', _bytes, i)
                except struct.error: raise MalformedBitcoinScript()
                i += 4
            if i + nSize > len(_bytes):
                raise MalformedBitcoinScript()
            vch = _bytes[i:i + nSize]
            i += nSize

        yield opcode, vch, i


class PushData:
    """Template item matching a direct push of exactly 'length' bytes."""

    def __init__(self, length: int):
        assert 0 < length < opcodes.OP_PUSHDATA1
        self.length = length

    def __repr__(self):
        return f"<PushData {self.length}>"


SCRIPTPUBKEY_TEMPLATE_P2PKH = [opcodes.OP_DUP, opcodes.OP_HASH160, PushData(20),
                               opcodes.OP_EQUALVERIFY, opcodes.OP_CHECKSIG]
SCRIPTPUBKEY_TEMPLATE_P2SH = [opcodes.OP_HASH160, PushData(20), opcodes.OP_EQUAL]
SCRIPTPUBKEY_TEMPLATE_P2WPKH = [opcodes.OP_0, PushData(20)]
SCRIPTPUBKEY_TEMPLATE_P2WSH = [opcodes.OP_0, PushData(32)]
SCRIPTPUBKEY_TEMPLATE_P2TR = [opcodes.OP_1, PushData(32)]

OUTPUT_SCRIPT_TEMPLATES = (
    ('p2pkh', SCRIPTPUBKEY_TEMPLATE_P2PKH),
    ('p2sh', SCRIPTPUBKEY_TEMPLATE_P2SH),
    ('p2wpkh', SCRIPTPUBKEY_TEMPLATE_P2WPKH),
    ('p2wsh', SCRIPTPUBKEY_TEMPLATE_P2WSH),
    ('p2tr', SCRIPTPUBKEY_TEMPLATE_P2TR),
)


def match_script_against_template(decoded, template) -> bool:
    """Returns whether the decoded script (as yielded by script_GetOp) matches 'template'."""
    if len(decoded) != len(template):
        return False
    for (opcode, _, _), template_item in zip(decoded, template):
        expected_opcode = template_item.length if isinstance(template_item, PushData) else template_item
        if opcode != expected_opcode:
            return False
    return True


def get_script_type_from_output_script(_bytes: bytes) -> Optional[str]:
    if _bytes is None:
        return None
    try:
        decoded = [x for x in script_GetOp(_bytes)]
    except MalformedBitcoinScript:
        return None
    for script_type, template in OUTPUT_SCRIPT_TEMPLATES:
        if match_script_against_template(decoded, template):
            return script_type
    return None


def get_hash_from_output_script(_bytes: bytes) -> Optional[bytes]:
    """Returns the pubkey hash, script hash or witness program of a standard output script."""
    script_type = get_script_type_from_output_script(_bytes)
    if script_type is None:
        return None
    decoded = [x for x in script_GetOp(_bytes)]
    if script_type == 'p2pkh':
        return decoded[2][1]
    return decoded[1][1]


def parse_input(vds: BCDataStream) -> TxInput:
    prevout_hash = vds.read_bytes(32)[::-1]
    prevout_n = vds.read_uint32()
    prevout = TxOutpoint(txid=prevout_hash, out_idx=prevout_n)
    script_sig = vds.read_bytes(vds.read_compact_size())
    nsequence = vds.read_uint32()
    return TxInput(prevout=prevout, script_sig=script_sig, nsequence=nsequence)


def parse_witness(vds: BCDataStream, txin: TxInput) -> None:
    n = vds.read_compact_size()
    witness_elements = list(vds.read_bytes(vds.read_compact_size()) for i in range(n))
    txin.witness = construct_witness(witness_elements)


def parse_output(vds: BCDataStream) -> TxOutput:
    value = vds.read_int64()
    if value > TOTAL_COIN_SUPPLY_LIMIT_IN_BTC * COIN:
        raise SerializationError('invalid output amount (too large)')
    if value < 0:
        raise SerializationError('invalid output amount (negative)')
    scriptpubkey = vds.read_bytes(vds.read_compact_size())
    return TxOutput(value=value, scriptpubkey=scriptpubkey)


# pay & redeem scripts

def multisig_script(public_keys: Sequence[bytes], m: int) -> bytes:
    n = len(public_keys)
    assert 1 <= m <= n <= 15, f'm {m}, n {n}'
    return construct_script([m, *public_keys, n, opcodes.OP_CHECKMULTISIG])


def _decode_small_int(opcode: int) -> Optional[int]:
    if opcodes.OP_1 <= opcode <= opcodes.OP_16:
        return opcode - opcodes.OP_1 + 1
    return None


def parse_multisig_script(script: bytes) -> Optional[Tuple[int, List[bytes]]]:
    """Returns (m, pubkeys) for a bare 'm <pubkey>... n OP_CHECKMULTISIG' script, or None."""
    try:
        decoded = [x for x in script_GetOp(script)]
    except MalformedBitcoinScript:
        return None
    if len(decoded) < 4:
        return None
    m = _decode_small_int(decoded[0][0])
    n = _decode_small_int(decoded[-2][0])
    if m is None or n is None:
        return None
    if decoded[-1][0] != opcodes.OP_CHECKMULTISIG:
        return None
    pubkeys = []
    for opcode, data, _ in decoded[1:-2]:
        if data is None or opcode != len(data) or len(data) not in (33, 65):
            return None
        pubkeys.append(data)
    if len(pubkeys) != n or not (1 <= m <= n):
        return None
    return m, pubkeys


class Transaction:
    _cached_network_ser: Optional[bytes]

    def __init__(self, raw):
        if raw is None:
            self._cached_network_ser = None
        elif isinstance(raw, str):
            raw = raw.strip()
            if not is_hex_str(raw):
                raise SerializationError("transaction is not hex")
            self._cached_network_ser = bfh(raw) if raw else None
        elif isinstance(raw, (bytes, bytearray)):
            self._cached_network_ser = bytes(raw)
        else:
            raise Exception(f"cannot initialize transaction from {raw}")
        self._inputs = None  # type: List[TxInput]
        self._outputs = None  # type: List[TxOutput]
        self._locktime = 0
        self._version = 2

        self._cached_txid = None  # type: Optional[str]

    @classmethod
    def from_io(cls, inputs: Sequence[TxInput], outputs: Sequence[TxOutput], *,
                locktime: int = 0, version: int = 2) -> 'Transaction':
        self = cls(None)
        self._inputs = list(inputs)
        self._outputs = list(outputs)
        self._locktime = locktime
        self._version = version
        return self

    @property
    def locktime(self):
        self.deserialize()
        return self._locktime

    @property
    def version(self):
        self.deserialize()
        return self._version

    def to_json(self) -> dict:
        d = {
            'version': self.version,
            'locktime': self.locktime,
            'inputs': [txin.to_json() for txin in self.inputs()],
            'outputs': [txout.to_json() for txout in self.outputs()],
        }
        return d

    def inputs(self) -> Sequence[TxInput]:
        if self._inputs is None:
            self.deserialize()
        return self._inputs

    def outputs(self) -> Sequence[TxOutput]:
        if self._outputs is None:
            self.deserialize()
        return self._outputs

    def deserialize(self, *, allow_witness: bool = True) -> None:
        """Parses the raw bytes given at construction.
        With allow_witness=False, only the legacy (pre-segwit) encoding is accepted.
        """
        if self._cached_network_ser is None:
            return
        if self._inputs is not None:
            return

        vds = BCDataStream()
        vds.write(self._cached_network_ser)
        self._version = vds.read_int32()
        n_vin = vds.read_compact_size()
        is_segwit = (n_vin == 0) and allow_witness
        if is_segwit:
            marker = vds.read_bytes(1)
            if marker != b'\x01':
                raise SerializationError('invalid txn marker byte: {}'.format(marker))
            n_vin = vds.read_compact_size()
        if n_vin < 1:
            raise SerializationError('tx needs to have at least 1 input')
        txins = [parse_input(vds) for i in range(n_vin)]
        n_vout = vds.read_compact_size()
        outputs = [parse_output(vds) for i in range(n_vout)]
        if is_segwit:
            for txin in txins:
                parse_witness(vds, txin)
        locktime = vds.read_uint32()
        if vds.can_read_more():
            raise SerializationError('extra junk at the end')
        # only expose fields after everything got parsed, for sanity
        self._inputs = txins
        self._outputs = outputs
        self._locktime = locktime

    def is_segwit(self) -> bool:
        return any(txin.is_segwit() for txin in self.inputs())

    def serialize(self) -> str:
        return self.serialize_as_bytes().hex()

    def serialize_as_bytes(self) -> bytes:
        if not self._cached_network_ser:
            self._cached_network_ser = self.serialize_to_network()
        return self._cached_network_ser

    def serialize_to_network(self, *, include_sigs=True, force_legacy=False) -> bytes:
        """Serialize the transaction as used on the Bitcoin network.
        `include_sigs` signals whether to include scriptSigs and witnesses.
        `force_legacy` signals to use the pre-segwit format
        note: (not include_sigs) implies force_legacy
        """
        self.deserialize()
        nVersion = int.to_bytes(self.version, length=4, byteorder="little", signed=True)
        nLocktime = int.to_bytes(self.locktime, length=4, byteorder="little", signed=False)
        inputs = self.inputs()
        outputs = self.outputs()

        txins = var_int(len(inputs)) + b''.join(
            txin.serialize_to_network(script_sig=None if include_sigs else b"")
            for txin in inputs)
        txouts = var_int(len(outputs)) + b''.join(o.serialize_to_network() for o in outputs)

        if include_sigs and not force_legacy and self.is_segwit():
            marker = b'\x00'
            flag = b'\x01'
            witness = b''.join(txin.witness if txin.is_segwit() else construct_witness([])
                               for txin in inputs)
            return nVersion + marker + flag + txins + txouts + witness + nLocktime
        else:
            return nVersion + txins + txouts + nLocktime

    def txid(self) -> str:
        if self._cached_txid is None:
            ser = self.serialize_to_network(force_legacy=True)
            self._cached_txid = sha256d(ser)[::-1].hex()
        return self._cached_txid

    def wtxid(self) -> str:
        ser = self.serialize_to_network()
        return sha256d(ser)[::-1].hex()

    def output_value(self) -> int:
        return sum(o.value for o in self.outputs())

    def __eq__(self, other):
        if not isinstance(other, Transaction):
            return False
        return self.serialize_to_network() == other.serialize_to_network()

    def __ne__(self, other):
        return not (self == other)

    __hash__ = None
