# Copyright (C) 2020 The Electrum developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""BIP-174 Partially Signed Bitcoin Transactions.

A PSBT is serialized as the magic bytes, followed by one global section,
one section per transaction input, and one section per transaction output.
Every section is a list of key-value records terminated by a 0x00 byte:

    <compact size: keylen> <key: compact size key type | key data>
    <compact size: valuelen> <value>
"""

import base64
import binascii
import copy
import enum
import io
import struct
from enum import IntEnum
from typing import (Sequence, NamedTuple, Tuple, Optional, Dict, List, Any,
                    Iterable, TYPE_CHECKING)

import attr

from . import bip32
from .bip32 import (BIP32Node, pack_bip32_root_fingerprint_and_int_path,
                    unpack_bip32_root_fingerprint_and_int_path)
from .bitcoin import var_int
from .ecc import SignatureValidator, get_validator
from .logging import get_logger
from .transaction import (Transaction, TxOutput, TxOutpoint, BCDataStream,
                          SerializationError, UnexpectedEndOfStream)
from .util import BitcoinException

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


_logger = get_logger(__name__)


PSBT_MAGIC = b'psbt\xff'
PSBT_SECTION_SEPARATOR = b'\x00'

MAX_PSBT_KEY_LENGTH = 10_000
MAX_PSBT_VALUE_LENGTH = 4_000_000
MAX_PSBT_KEY_TYPE = 0x02000000  # exclusive


# Errors about the bytes of a PSBT.

class BadHeaderMagic(SerializationError):
    pass


class InvalidPSBTFormat(SerializationError):
    pass


class DuplicateKey(SerializationError):
    pass


class OversizedKey(SerializationError):
    pass


class OversizedValue(SerializationError):
    pass


class InvalidKeyType(SerializationError):
    pass


class InvalidKeyData(SerializationError):
    pass


class InvalidUnsignedTransaction(SerializationError):
    pass


class PSBTInputConsistencyFailure(SerializationError):
    pass


# Errors of the roles operating on a parsed PSBT.

class PSBTError(Exception):
    pass


class AlreadyFinalized(PSBTError):
    pass


class NotFinalizable(PSBTError):
    pass


class IncompletePSBT(PSBTError):
    pass


class MissingTxInputAmount(PSBTError):
    pass


class InvalidSighashFlags(PSBTError):
    pass


class UnsupportedScriptType(PSBTError):
    pass


class InvalidSignatureForInput(PSBTError):
    pass


class PSBTCombineConflict(PSBTError):
    pass


class PSBTGlobalType(IntEnum):
    UNSIGNED_TX = 0
    XPUB = 1
    VERSION = 0xFB


class PSBTInputType(IntEnum):
    NON_WITNESS_UTXO = 0
    WITNESS_UTXO = 1
    PARTIAL_SIG = 2
    SIGHASH_TYPE = 3
    REDEEM_SCRIPT = 4
    WITNESS_SCRIPT = 5
    BIP32_DERIVATION = 6
    FINAL_SCRIPTSIG = 7
    FINAL_SCRIPTWITNESS = 8
    POR_COMMITMENT = 9
    TAP_KEY_SIG = 0x13
    TAP_INTERNAL_KEY = 0x17
    TAP_MERKLE_ROOT = 0x18


class PSBTOutputType(IntEnum):
    REDEEM_SCRIPT = 0
    WITNESS_SCRIPT = 1
    BIP32_DERIVATION = 2
    TAP_INTERNAL_KEY = 5


class InputState(enum.Enum):
    UNSIGNED = enum.auto()
    PARTIALLY_SIGNED = enum.auto()
    FINALIZED = enum.auto()


class PSBTParseOptions(NamedTuple):
    max_key_length: int = MAX_PSBT_KEY_LENGTH
    max_value_length: int = MAX_PSBT_VALUE_LENGTH
    max_key_type: int = MAX_PSBT_KEY_TYPE
    debug: bool = False
    validator: Optional[SignatureValidator] = None

    @classmethod
    def from_config(cls, config: Optional['SimpleConfig'], *,
                    validator: SignatureValidator = None) -> 'PSBTParseOptions':
        if config is None:
            return cls(validator=validator)
        # configured limits can only make parsing stricter
        return cls(
            max_key_length=min(config.PSBT_MAX_KEY_LENGTH, MAX_PSBT_KEY_LENGTH),
            max_value_length=min(config.PSBT_MAX_VALUE_LENGTH, MAX_PSBT_VALUE_LENGTH),
            max_key_type=min(config.PSBT_MAX_KEY_TYPE, MAX_PSBT_KEY_TYPE),
            debug=config.PSBT_DEBUG_PARSING,
            validator=validator,
        )


DEFAULT_PARSE_OPTIONS = PSBTParseOptions()


@attr.s(frozen=True)
class Unknown:
    """A record of a type we do not interpret, kept verbatim."""
    key = attr.ib(type=bytes)  # compact size key type, followed by the key data
    value = attr.ib(type=bytes)

    def key_type_and_data(self) -> Tuple[int, bytes]:
        return PSBTSection.get_keytype_and_key_from_fullkey(self.key)

    def to_json(self):
        return {'key': self.key.hex(), 'value': self.value.hex()}


@attr.s(frozen=True)
class PartialSig:
    pubkey = attr.ib(type=bytes)
    signature = attr.ib(type=bytes)  # DER, followed by the sighash byte

    def sighash_type(self) -> int:
        return self.signature[-1]

    def check_valid(self, validator: SignatureValidator = None) -> bool:
        """Byte-level well-formedness. The signature is not verified against the tx."""
        validator = get_validator(validator)
        return (validator.validate_pubkey(self.pubkey)
                and validator.validate_der_signature(self.signature))


@attr.s(frozen=True)
class Bip32Derivation:
    pubkey = attr.ib(type=bytes)
    master_key_fingerprint = attr.ib(type=bytes)
    path = attr.ib(type=tuple, converter=tuple)

    @classmethod
    def from_key_and_value(cls, pubkey: bytes, val: bytes) -> 'Bip32Derivation':
        xfp, path = unpack_bip32_root_fingerprint_and_int_path(val)
        return cls(pubkey=pubkey, master_key_fingerprint=xfp, path=path)

    def serialize_value(self) -> bytes:
        return pack_bip32_root_fingerprint_and_int_path(self.master_key_fingerprint, self.path)

    def path_str(self) -> str:
        return bip32.convert_bip32_intpath_to_strpath(self.path)

    def to_json(self):
        return {'fingerprint': self.master_key_fingerprint.hex(), 'path': self.path_str()}


@attr.s(frozen=True)
class XPub:
    extended_key = attr.ib(type=bytes)  # 78 bytes, as serialized in BIP-32
    master_key_fingerprint = attr.ib(type=bytes)
    path = attr.ib(type=tuple, converter=tuple)

    @classmethod
    def from_key_and_value(cls, key: bytes, val: bytes, *,
                           validator: SignatureValidator = None) -> 'XPub':
        try:
            bip32node = BIP32Node.from_bytes(key)
        except BitcoinException as e:
            raise InvalidKeyData(f"PSBT global xpub: {e}") from e
        try:
            xfp, path = unpack_bip32_root_fingerprint_and_int_path(val)
        except ValueError as e:
            raise InvalidPSBTFormat(f"PSBT global xpub: {e}") from e
        if bip32node.depth != len(path):
            raise InvalidPSBTFormat(f"PSBT global xpub has mismatching depth ({bip32node.depth}) "
                                    f"and derivation prefix len ({len(path)})")
        if not bip32node.is_consistent_with_path(path):
            raise InvalidPSBTFormat(f"PSBT global xpub has inconsistent child_number and derivation prefix")
        if not bip32node.is_public_key_valid(validator):
            raise InvalidPSBTFormat(f"PSBT global xpub has an invalid public key")
        return cls(extended_key=key, master_key_fingerprint=xfp, path=path)

    def bip32node(self) -> BIP32Node:
        return BIP32Node.from_bytes(self.extended_key)

    def serialize_value(self) -> bytes:
        return pack_bip32_root_fingerprint_and_int_path(self.master_key_fingerprint, self.path)

    def to_json(self):
        return {
            'xpub': self.bip32node().to_xkey(),
            'fingerprint': self.master_key_fingerprint.hex(),
            'path': bip32.convert_bip32_intpath_to_strpath(self.path),
        }


def _merge_field(name: str, ours, theirs):
    if ours is None:
        return theirs
    if theirs is None or ours == theirs:
        return ours
    raise PSBTCombineConflict(f"conflicting values for {name}")


def _merge_dict(name: str, ours: Dict, theirs: Dict) -> None:
    for key, value in theirs.items():
        ours[key] = _merge_field(f"{name} {key.hex()}", ours.get(key), value)


class PSBTSection:
    """Key-value record codec shared by all sections."""

    @classmethod
    def read_key(cls, vds: BCDataStream, *,
                 opts: PSBTParseOptions = DEFAULT_PARSE_OPTIONS) -> Tuple[int, bytes, bool]:
        """Returns (key_type, key_data, end_of_section)."""
        key_size = vds.read_compact_size()
        if key_size == 0:
            return 0, b'', True
        if key_size > opts.max_key_length:
            raise OversizedKey(f"key of {key_size} bytes exceeds limit of {opts.max_key_length}")
        full_key = vds.read_bytes(key_size)
        key_type, key = cls.get_keytype_and_key_from_fullkey(full_key, max_key_type=opts.max_key_type)
        return key_type, key, False

    @classmethod
    def read_value(cls, vds: BCDataStream, max_len: int = MAX_PSBT_VALUE_LENGTH) -> bytes:
        val_size = vds.read_compact_size()
        if val_size > max_len:
            raise OversizedValue(f"value of {val_size} bytes exceeds limit of {max_len}")
        return vds.read_bytes(val_size)

    @classmethod
    def write_kv(cls, fd, key_type: int, key: bytes, val: bytes) -> None:
        full_key = cls.get_fullkey_from_keytype_and_key(key_type, key)
        fd.write(var_int(len(full_key)))  # key_size
        fd.write(full_key)  # key
        fd.write(var_int(len(val)))  # val_size
        fd.write(val)  # val

    @classmethod
    def get_next_kv_from_fd(cls, vds: BCDataStream, *,
                            opts: PSBTParseOptions = DEFAULT_PARSE_OPTIONS) -> Optional[Tuple[int, bytes, bytes]]:
        """Returns the next record, or None at the section separator."""
        key_type, key, end_of_section = cls.read_key(vds, opts=opts)
        if end_of_section:
            return None
        val = cls.read_value(vds, opts.max_value_length)
        return key_type, key, val

    @classmethod
    def create_psbt_writer(cls, fd):
        def wr(key_type: int, val: bytes, key: bytes = b''):
            cls.write_kv(fd, key_type, key, val)
        return wr

    @classmethod
    def get_keytype_and_key_from_fullkey(cls, full_key: bytes, *,
                                         max_key_type: int = MAX_PSBT_KEY_TYPE) -> Tuple[int, bytes]:
        key_stream = BCDataStream()
        key_stream.write(full_key)
        try:
            key_type = key_stream.read_compact_size()
        except SerializationError as e:
            raise InvalidKeyType(f"cannot decode key type of key {full_key.hex()}: {e!r}") from e
        if key_type >= max_key_type:
            raise InvalidKeyType(f"key type {key_type} out of range")
        key = key_stream.read_bytes(key_stream.bytes_left())
        return key_type, key

    @classmethod
    def get_fullkey_from_keytype_and_key(cls, key_type: int, key: bytes) -> bytes:
        key_type_bytes = var_int(key_type)
        return key_type_bytes + key

    @classmethod
    def _check_singleton_key(cls, kt, key: bytes, current_value) -> None:
        if current_value is not None:
            raise DuplicateKey(f"duplicate key: {repr(kt)}")
        if key:
            raise InvalidKeyData(f"key for {repr(kt)} must be empty")

    @classmethod
    def _add_unknown(cls, unknowns: Dict[bytes, Unknown], kt: int, key: bytes, val: bytes) -> None:
        full_key = cls.get_fullkey_from_keytype_and_key(kt, key)
        if full_key in unknowns:
            raise DuplicateKey(f'duplicate key. PSBT key for unknown type: {full_key.hex()}')
        unknowns[full_key] = Unknown(key=full_key, value=val)

    @classmethod
    def _write_unknowns(cls, wr, unknowns: Dict[bytes, Unknown]) -> None:
        for unknown in unknowns.values():
            key_type, key = unknown.key_type_and_data()
            wr(key_type, unknown.value, key=key)

    def _populate_psbt_fields_from_fd(self, vds: BCDataStream, *,
                                      opts: PSBTParseOptions = DEFAULT_PARSE_OPTIONS) -> None:
        while True:
            kv = self.get_next_kv_from_fd(vds, opts=opts)
            if kv is None:
                break
            key_type, key, val = kv
            self.parse_psbt_section_kv(key_type, key, val, opts=opts)

    def _serialize_psbt_section(self, fd) -> None:
        wr = self.create_psbt_writer(fd)
        self.serialize_psbt_section_kvs(wr)
        fd.write(PSBT_SECTION_SEPARATOR)

    def parse_psbt_section_kv(self, kt: int, key: bytes, val: bytes, *,
                              opts: PSBTParseOptions = DEFAULT_PARSE_OPTIONS) -> None:
        raise NotImplementedError()  # implemented by subclasses

    def serialize_psbt_section_kvs(self, wr) -> None:
        raise NotImplementedError()  # implemented by subclasses


def _parse_bip32_derivation(kt, key: bytes, val: bytes, validator: SignatureValidator) -> Bip32Derivation:
    if not validator.validate_pubkey(key):
        raise InvalidPSBTFormat(f"key for {repr(kt)} is not a valid pubkey: {key.hex()}")
    try:
        return Bip32Derivation.from_key_and_value(key, val)
    except ValueError as e:
        raise InvalidPSBTFormat(f"value for {repr(kt)}: {e}") from e


class PInput(PSBTSection):
    """The section of a PSBT describing one transaction input.

    Signing fields can only be changed through the mutator methods, which
    refuse to touch a finalized input. The parser and the finalizer set
    attributes directly, and sanity checks catch inconsistent combinations.
    """

    def __init__(self):
        self.non_witness_utxo = None  # type: Optional[Transaction]
        self.witness_utxo = None  # type: Optional[TxOutput]
        self.partial_sigs = {}  # type: Dict[bytes, PartialSig]  # pubkey -> sig
        self.sighash = None  # type: Optional[int]
        self.redeem_script = None  # type: Optional[bytes]
        self.witness_script = None  # type: Optional[bytes]
        self.bip32_paths = {}  # type: Dict[bytes, Bip32Derivation]  # pubkey -> origin
        self.final_script_sig = None  # type: Optional[bytes]
        self.final_script_witness = None  # type: Optional[bytes]
        self.por_commitment = None  # type: Optional[bytes]
        self.tap_key_sig = None  # type: Optional[bytes]  # sig for taproot key-path-spending
        self.tap_internal_key = None  # type: Optional[bytes]
        self.tap_merkle_root = None  # type: Optional[bytes]
        self.unknowns = {}  # type: Dict[bytes, Unknown]  # full key -> record, insertion-ordered

    @property
    def state(self) -> InputState:
        if self.is_finalized():
            return InputState.FINALIZED
        if self.partial_sigs or self.tap_key_sig is not None:
            return InputState.PARTIALLY_SIGNED
        return InputState.UNSIGNED

    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def has_signing_data(self) -> bool:
        """Whether any field is set that has to be cleared on finalization."""
        return bool(self.partial_sigs
                    or self.bip32_paths
                    or any(x is not None for x in (
                        self.sighash, self.redeem_script, self.witness_script,
                        self.por_commitment, self.tap_key_sig,
                        self.tap_internal_key, self.tap_merkle_root)))

    def sorted_partial_sigs(self) -> List[PartialSig]:
        return [self.partial_sigs[pk] for pk in sorted(self.partial_sigs)]

    def is_sane(self) -> bool:
        if self.is_finalized() and self.has_signing_data():
            return False
        # a witness script or witness is only meaningful for a segwit UTXO
        if self.witness_utxo is None and self.witness_script is not None:
            return False
        if self.witness_utxo is None and self.final_script_witness is not None:
            return False
        return True

    def validate_data(self, prevout: TxOutpoint) -> None:
        """Checks the UTXO information against the outpoint it claims to describe."""
        utxo = self.non_witness_utxo
        if utxo is None:
            return
        if prevout.txid.hex() != utxo.txid():
            raise PSBTInputConsistencyFailure(f"PSBT input validation: "
                                              f"If a non-witness UTXO is provided, its hash must match the hash specified in the prevout")
        if prevout.out_idx >= len(utxo.outputs()):
            raise InvalidPSBTFormat(f"PSBT input validation: "
                                    f"prevout index {prevout.out_idx} out of range for the non-witness UTXO")
        if self.witness_utxo is not None:
            if utxo.outputs()[prevout.out_idx] != self.witness_utxo:
                raise PSBTInputConsistencyFailure(f"PSBT input validation: "
                                                  f"If both non-witness UTXO and witness UTXO are provided, they must be consistent")

    def get_utxo(self, prevout: TxOutpoint) -> Optional[TxOutput]:
        """The output being spent, if known. The witness UTXO is preferred."""
        if self.witness_utxo is not None:
            return self.witness_utxo
        if self.non_witness_utxo is not None:
            outputs = self.non_witness_utxo.outputs()
            if prevout.out_idx >= len(outputs):
                raise InvalidPSBTFormat(f"prevout index {prevout.out_idx} out of range for the non-witness UTXO")
            return outputs[prevout.out_idx]
        return None

    # mutators for signing fields ----->

    def _require_not_finalized(self) -> None:
        if self.is_finalized():
            raise AlreadyFinalized("input is already finalized")

    def add_partial_sig(self, partial_sig: PartialSig) -> None:
        self._require_not_finalized()
        self.partial_sigs[partial_sig.pubkey] = partial_sig

    def set_tap_key_sig(self, sig: bytes) -> None:
        self._require_not_finalized()
        self.tap_key_sig = sig

    def set_sighash(self, sighash: int) -> None:
        self._require_not_finalized()
        self.sighash = sighash

    def set_redeem_script(self, script: bytes) -> None:
        self._require_not_finalized()
        self.redeem_script = script

    def set_witness_script(self, script: bytes) -> None:
        self._require_not_finalized()
        self.witness_script = script

    def add_bip32_derivation(self, derivation: Bip32Derivation) -> None:
        self._require_not_finalized()
        self.bip32_paths[derivation.pubkey] = derivation

    def set_por_commitment(self, commitment: bytes) -> None:
        self._require_not_finalized()
        self.por_commitment = commitment

    def set_tap_internal_key(self, key: bytes) -> None:
        self._require_not_finalized()
        self.tap_internal_key = key

    def clear_fields_when_finalized(self) -> None:
        # BIP-174: "All other data except the UTXO and unknown fields in the
        #           input key-value map should be cleared from the PSBT"
        self.partial_sigs = {}
        self.sighash = None
        self.redeem_script = None
        self.witness_script = None
        self.bip32_paths = {}
        self.por_commitment = None
        self.tap_key_sig = None
        self.tap_internal_key = None
        self.tap_merkle_root = None

    def parse_psbt_section_kv(self, kt, key, val, *, opts=DEFAULT_PARSE_OPTIONS):
        try:
            kt = PSBTInputType(kt)
        except ValueError:
            pass  # unknown type
        if opts.debug: _logger.debug(f"{repr(kt)} {key.hex()} {val.hex()}")
        validator = get_validator(opts.validator)
        if kt == PSBTInputType.NON_WITNESS_UTXO:
            self._check_singleton_key(kt, key, self.non_witness_utxo)
            utxo = Transaction(val)
            try:
                utxo.deserialize()
            except SerializationError as e:
                raise InvalidPSBTFormat(f"cannot parse value of {repr(kt)}: {e!r}") from e
            self.non_witness_utxo = utxo
        elif kt == PSBTInputType.WITNESS_UTXO:
            self._check_singleton_key(kt, key, self.witness_utxo)
            try:
                self.witness_utxo = TxOutput.from_network_bytes(val)
            except SerializationError as e:
                raise InvalidPSBTFormat(f"cannot parse value of {repr(kt)}: {e!r}") from e
        elif kt == PSBTInputType.PARTIAL_SIG:
            if key in self.partial_sigs:
                raise DuplicateKey(f"duplicate key: {repr(kt)}")
            partial_sig = PartialSig(pubkey=key, signature=val)
            if not partial_sig.check_valid(validator):
                raise InvalidPSBTFormat(f"{repr(kt)} with invalid pubkey or signature. pubkey={key.hex()}")
            self.partial_sigs[key] = partial_sig
        elif kt == PSBTInputType.SIGHASH_TYPE:
            self._check_singleton_key(kt, key, self.sighash)
            if len(val) != 4:
                raise InvalidPSBTFormat(f"value for {repr(kt)} has unexpected length: {len(val)}")
            self.sighash = struct.unpack("<I", val)[0]
        elif kt == PSBTInputType.REDEEM_SCRIPT:
            self._check_singleton_key(kt, key, self.redeem_script)
            self.redeem_script = val
        elif kt == PSBTInputType.WITNESS_SCRIPT:
            self._check_singleton_key(kt, key, self.witness_script)
            self.witness_script = val
        elif kt == PSBTInputType.BIP32_DERIVATION:
            if key in self.bip32_paths:
                raise DuplicateKey(f"duplicate key: {repr(kt)}")
            self.bip32_paths[key] = _parse_bip32_derivation(kt, key, val, validator)
        elif kt == PSBTInputType.FINAL_SCRIPTSIG:
            self._check_singleton_key(kt, key, self.final_script_sig)
            self.final_script_sig = val
        elif kt == PSBTInputType.FINAL_SCRIPTWITNESS:
            self._check_singleton_key(kt, key, self.final_script_witness)
            self.final_script_witness = val
        elif kt == PSBTInputType.POR_COMMITMENT:
            self._check_singleton_key(kt, key, self.por_commitment)
            self.por_commitment = val
        elif kt == PSBTInputType.TAP_KEY_SIG:
            self._check_singleton_key(kt, key, self.tap_key_sig)
            if not validator.validate_schnorr_signature(val):
                raise InvalidPSBTFormat(f"value for {repr(kt)} is not a valid schnorr signature")
            self.tap_key_sig = val
        elif kt == PSBTInputType.TAP_INTERNAL_KEY:
            self._check_singleton_key(kt, key, self.tap_internal_key)
            if not validator.validate_xonly_pubkey(val):
                raise InvalidPSBTFormat(f"value for {repr(kt)} is not a valid x-only pubkey")
            self.tap_internal_key = val
        elif kt == PSBTInputType.TAP_MERKLE_ROOT:
            self._check_singleton_key(kt, key, self.tap_merkle_root)
            if len(val) != 32:
                raise InvalidPSBTFormat(f"value for {repr(kt)} has unexpected length: {len(val)}")
            self.tap_merkle_root = val
        else:
            self._add_unknown(self.unknowns, kt, key, val)

    def serialize_psbt_section_kvs(self, wr):
        # records are written in ascending key type order
        if self.non_witness_utxo is not None:
            wr(PSBTInputType.NON_WITNESS_UTXO, self.non_witness_utxo.serialize_as_bytes())
        if self.witness_utxo is not None:
            wr(PSBTInputType.WITNESS_UTXO, self.witness_utxo.serialize_to_network())
        for partial_sig in self.sorted_partial_sigs():
            wr(PSBTInputType.PARTIAL_SIG, partial_sig.signature, partial_sig.pubkey)
        if self.sighash is not None:
            wr(PSBTInputType.SIGHASH_TYPE, struct.pack('<I', self.sighash))
        if self.redeem_script is not None:
            wr(PSBTInputType.REDEEM_SCRIPT, self.redeem_script)
        if self.witness_script is not None:
            wr(PSBTInputType.WITNESS_SCRIPT, self.witness_script)
        for k in sorted(self.bip32_paths):
            wr(PSBTInputType.BIP32_DERIVATION, self.bip32_paths[k].serialize_value(), k)
        if self.final_script_sig is not None:
            wr(PSBTInputType.FINAL_SCRIPTSIG, self.final_script_sig)
        if self.final_script_witness is not None:
            wr(PSBTInputType.FINAL_SCRIPTWITNESS, self.final_script_witness)
        if self.por_commitment is not None:
            wr(PSBTInputType.POR_COMMITMENT, self.por_commitment)
        if self.tap_key_sig is not None:
            wr(PSBTInputType.TAP_KEY_SIG, self.tap_key_sig)
        if self.tap_internal_key is not None:
            wr(PSBTInputType.TAP_INTERNAL_KEY, self.tap_internal_key)
        if self.tap_merkle_root is not None:
            wr(PSBTInputType.TAP_MERKLE_ROOT, self.tap_merkle_root)
        self._write_unknowns(wr, self.unknowns)

    def combine_with_other_pinput(self, other: 'PInput') -> None:
        self.non_witness_utxo = _merge_field('non-witness UTXO', self.non_witness_utxo, other.non_witness_utxo)
        self.witness_utxo = _merge_field('witness UTXO', self.witness_utxo, other.witness_utxo)
        self.final_script_sig = _merge_field('final scriptSig', self.final_script_sig, other.final_script_sig)
        self.final_script_witness = _merge_field('final scriptWitness',
                                                 self.final_script_witness, other.final_script_witness)
        _merge_dict('input unknown', self.unknowns, other.unknowns)
        if self.is_finalized():
            # the finalized side is the more complete one
            self.clear_fields_when_finalized()
            return
        _merge_dict('partial sig', self.partial_sigs, other.partial_sigs)
        _merge_dict('input bip32 derivation', self.bip32_paths, other.bip32_paths)
        self.sighash = _merge_field('sighash type', self.sighash, other.sighash)
        self.redeem_script = _merge_field('input redeem script', self.redeem_script, other.redeem_script)
        self.witness_script = _merge_field('input witness script', self.witness_script, other.witness_script)
        self.por_commitment = _merge_field('proof-of-reserves commitment', self.por_commitment, other.por_commitment)
        self.tap_key_sig = _merge_field('taproot key sig', self.tap_key_sig, other.tap_key_sig)
        self.tap_internal_key = _merge_field('input taproot internal key',
                                             self.tap_internal_key, other.tap_internal_key)
        self.tap_merkle_root = _merge_field('taproot merkle root', self.tap_merkle_root, other.tap_merkle_root)

    def convert_utxo_to_witness_utxo(self, prevout: TxOutpoint) -> None:
        if self.witness_utxo is None and self.non_witness_utxo is not None:
            self.witness_utxo = self.get_utxo(prevout)

    def to_json(self):
        d = {'state': self.state.name.lower()}
        if self.non_witness_utxo is not None:
            d['non_witness_utxo'] = self.non_witness_utxo.serialize()
        if self.witness_utxo is not None:
            d['witness_utxo'] = self.witness_utxo.to_json()
        if self.partial_sigs:
            d['partial_sigs'] = {ps.pubkey.hex(): ps.signature.hex() for ps in self.sorted_partial_sigs()}
        if self.sighash is not None:
            d['sighash'] = self.sighash
        if self.redeem_script is not None:
            d['redeem_script'] = self.redeem_script.hex()
        if self.witness_script is not None:
            d['witness_script'] = self.witness_script.hex()
        if self.bip32_paths:
            d['bip32_paths'] = {pk.hex(): self.bip32_paths[pk].to_json() for pk in sorted(self.bip32_paths)}
        if self.final_script_sig is not None:
            d['final_script_sig'] = self.final_script_sig.hex()
        if self.final_script_witness is not None:
            d['final_script_witness'] = self.final_script_witness.hex()
        if self.por_commitment is not None:
            d['por_commitment'] = self.por_commitment.hex()
        if self.tap_key_sig is not None:
            d['tap_key_sig'] = self.tap_key_sig.hex()
        if self.tap_internal_key is not None:
            d['tap_internal_key'] = self.tap_internal_key.hex()
        if self.tap_merkle_root is not None:
            d['tap_merkle_root'] = self.tap_merkle_root.hex()
        if self.unknowns:
            d['unknown_psbt_fields'] = [u.to_json() for u in self.unknowns.values()]
        return d

    def _fields(self) -> Tuple[Any, ...]:
        return (self.non_witness_utxo, self.witness_utxo, self.partial_sigs, self.sighash,
                self.redeem_script, self.witness_script, self.bip32_paths,
                self.final_script_sig, self.final_script_witness, self.por_commitment,
                self.tap_key_sig, self.tap_internal_key, self.tap_merkle_root,
                list(self.unknowns.values()))

    def __eq__(self, other):
        if not isinstance(other, PInput):
            return False
        return self._fields() == other._fields()

    __hash__ = None


class POutput(PSBTSection):
    """The section of a PSBT describing one transaction output. Purely additive metadata."""

    def __init__(self):
        self.redeem_script = None  # type: Optional[bytes]
        self.witness_script = None  # type: Optional[bytes]
        self.bip32_paths = {}  # type: Dict[bytes, Bip32Derivation]  # pubkey -> origin
        self.tap_internal_key = None  # type: Optional[bytes]
        self.unknowns = {}  # type: Dict[bytes, Unknown]

    def add_bip32_derivation(self, derivation: Bip32Derivation) -> None:
        self.bip32_paths[derivation.pubkey] = derivation

    def parse_psbt_section_kv(self, kt, key, val, *, opts=DEFAULT_PARSE_OPTIONS):
        try:
            kt = PSBTOutputType(kt)
        except ValueError:
            pass  # unknown type
        if opts.debug: _logger.debug(f"{repr(kt)} {key.hex()} {val.hex()}")
        validator = get_validator(opts.validator)
        if kt == PSBTOutputType.REDEEM_SCRIPT:
            self._check_singleton_key(kt, key, self.redeem_script)
            self.redeem_script = val
        elif kt == PSBTOutputType.WITNESS_SCRIPT:
            self._check_singleton_key(kt, key, self.witness_script)
            self.witness_script = val
        elif kt == PSBTOutputType.BIP32_DERIVATION:
            if key in self.bip32_paths:
                raise DuplicateKey(f"duplicate key: {repr(kt)}")
            self.bip32_paths[key] = _parse_bip32_derivation(kt, key, val, validator)
        elif kt == PSBTOutputType.TAP_INTERNAL_KEY:
            self._check_singleton_key(kt, key, self.tap_internal_key)
            if not validator.validate_xonly_pubkey(val):
                raise InvalidPSBTFormat(f"value for {repr(kt)} is not a valid x-only pubkey")
            self.tap_internal_key = val
        else:
            self._add_unknown(self.unknowns, kt, key, val)

    def serialize_psbt_section_kvs(self, wr):
        if self.redeem_script is not None:
            wr(PSBTOutputType.REDEEM_SCRIPT, self.redeem_script)
        if self.witness_script is not None:
            wr(PSBTOutputType.WITNESS_SCRIPT, self.witness_script)
        for k in sorted(self.bip32_paths):
            wr(PSBTOutputType.BIP32_DERIVATION, self.bip32_paths[k].serialize_value(), k)
        if self.tap_internal_key is not None:
            wr(PSBTOutputType.TAP_INTERNAL_KEY, self.tap_internal_key)
        self._write_unknowns(wr, self.unknowns)

    def combine_with_other_poutput(self, other: 'POutput') -> None:
        self.redeem_script = _merge_field('output redeem script', self.redeem_script, other.redeem_script)
        self.witness_script = _merge_field('output witness script', self.witness_script, other.witness_script)
        self.tap_internal_key = _merge_field('output taproot internal key',
                                             self.tap_internal_key, other.tap_internal_key)
        _merge_dict('output bip32 derivation', self.bip32_paths, other.bip32_paths)
        _merge_dict('output unknown', self.unknowns, other.unknowns)

    def to_json(self):
        d = {}
        if self.redeem_script is not None:
            d['redeem_script'] = self.redeem_script.hex()
        if self.witness_script is not None:
            d['witness_script'] = self.witness_script.hex()
        if self.bip32_paths:
            d['bip32_paths'] = {pk.hex(): self.bip32_paths[pk].to_json() for pk in sorted(self.bip32_paths)}
        if self.tap_internal_key is not None:
            d['tap_internal_key'] = self.tap_internal_key.hex()
        if self.unknowns:
            d['unknown_psbt_fields'] = [u.to_json() for u in self.unknowns.values()]
        return d

    def _fields(self) -> Tuple[Any, ...]:
        return (self.redeem_script, self.witness_script, self.bip32_paths,
                self.tap_internal_key, list(self.unknowns.values()))

    def __eq__(self, other):
        if not isinstance(other, POutput):
            return False
        return self._fields() == other._fields()

    __hash__ = None


def _strip_line_breaks(text):
    """Base64 text may be wrapped over several lines, or end with a newline."""
    if isinstance(text, str):
        text = text.encode('ascii')
    if not isinstance(text, (bytes, bytearray)):
        raise TypeError(f"expected str or bytes, got {type(text)}")
    return bytes(text).strip().replace(b'\r', b'').replace(b'\n', b'')


class Packet:
    """An in-memory PSBT: the unsigned transaction plus one section per input and output.

    len(inputs) == len(unsigned_tx.inputs()) and len(outputs) == len(unsigned_tx.outputs())
    """

    def __init__(self, unsigned_tx: Transaction, *,
                 inputs: Sequence[PInput] = None,
                 outputs: Sequence[POutput] = None):
        self.unsigned_tx = unsigned_tx
        if inputs is None:
            inputs = [PInput() for _ in unsigned_tx.inputs()]
        if outputs is None:
            outputs = [POutput() for _ in unsigned_tx.outputs()]
        self.inputs = list(inputs)  # type: List[PInput]
        self.outputs = list(outputs)  # type: List[POutput]
        self.xpubs = {}  # type: Dict[bytes, XPub]  # extended key -> xpub, insertion-ordered
        self.unknowns = {}  # type: Dict[bytes, Unknown]  # full key -> record, insertion-ordered

    @classmethod
    def from_unsigned_tx(cls, tx: Transaction) -> 'Packet':
        """Creator role: an empty PSBT for the given unsigned transaction."""
        for txin in tx.inputs():
            if txin.has_sigs():
                raise InvalidUnsignedTransaction("PSBT unsigned tx must have empty scriptSigs and witnesses")
        unsigned_tx = Transaction(tx.serialize_to_network(include_sigs=False))
        unsigned_tx.deserialize(allow_witness=False)
        return cls(unsigned_tx)

    @classmethod
    def from_raw_psbt(cls, raw, *, b64: bool = False, config: 'SimpleConfig' = None,
                      validator: SignatureValidator = None) -> 'Packet':
        """Parses a serialized PSBT. Either a fully valid Packet is returned, or an exception raised."""
        opts = PSBTParseOptions.from_config(config, validator=validator)
        if b64:
            try:
                raw = _strip_line_breaks(raw)
                raw = base64.b64decode(raw, validate=True)
            except (binascii.Error, ValueError) as e:
                raise InvalidPSBTFormat(f"PSBT is not valid base64: {e}") from e
        if not isinstance(raw, (bytes, bytearray)):
            raise TypeError(f"expected bytes, got {type(raw)}")
        if raw[0:5] != PSBT_MAGIC:
            raise BadHeaderMagic("bad magic")

        vds = BCDataStream()
        vds.write(raw[5:])
        psbt = cls._parse_sections(vds, opts=opts)
        if vds.can_read_more():
            raise InvalidPSBTFormat("extra junk at the end of PSBT")

        psbt.sanity_check()
        _logger.debug(f"parsed PSBT with {len(psbt.inputs)} inputs and {len(psbt.outputs)} outputs")
        return psbt

    @classmethod
    def from_base64(cls, text, **kwargs) -> 'Packet':
        return cls.from_raw_psbt(text, b64=True, **kwargs)

    @classmethod
    def _parse_sections(cls, vds: BCDataStream, *, opts: PSBTParseOptions) -> 'Packet':
        # global section. the unsigned tx is mandatory, and must come first.
        kv = PSBTSection.get_next_kv_from_fd(vds, opts=opts)
        if kv is None or kv[0] != PSBTGlobalType.UNSIGNED_TX:
            raise InvalidPSBTFormat("PSBT global section must start with PSBT_GLOBAL_UNSIGNED_TX")
        _, key, val = kv
        if key:
            raise InvalidPSBTFormat(f"key for {repr(PSBTGlobalType.UNSIGNED_TX)} must be empty")
        unsigned_tx = Transaction(val)
        try:
            unsigned_tx.deserialize(allow_witness=False)
        except SerializationError as e:
            raise InvalidUnsignedTransaction(f"cannot parse PSBT unsigned tx: {e!r}") from e
        for txin in unsigned_tx.inputs():
            if txin.has_sigs():
                raise InvalidUnsignedTransaction("PSBT unsigned tx must have empty scriptSigs and witnesses")
        psbt = cls(unsigned_tx)

        while True:
            kv = PSBTSection.get_next_kv_from_fd(vds, opts=opts)
            if kv is None:
                break
            psbt._parse_global_kv(*kv, opts=opts)

        try:
            # inputs sections
            for pinput in psbt.inputs:
                if opts.debug: _logger.debug("-> new input starts")
                pinput._populate_psbt_fields_from_fd(vds, opts=opts)
            # outputs sections
            for poutput in psbt.outputs:
                if opts.debug: _logger.debug("-> new output starts")
                poutput._populate_psbt_fields_from_fd(vds, opts=opts)
        except UnexpectedEndOfStream:
            raise UnexpectedEndOfStream('Unexpected end of stream. '
                                        'Num input and output maps provided does not match unsigned tx.') from None
        return psbt

    def _parse_global_kv(self, kt: int, key: bytes, val: bytes, *, opts: PSBTParseOptions) -> None:
        try:
            kt = PSBTGlobalType(kt)
        except ValueError:
            pass  # unknown type
        if opts.debug: _logger.debug(f"{repr(kt)} {key.hex()} {val.hex()}")
        if kt == PSBTGlobalType.UNSIGNED_TX:
            raise DuplicateKey(f"duplicate key: {repr(kt)}")
        elif kt == PSBTGlobalType.XPUB:
            if key in self.xpubs:
                raise DuplicateKey(f"duplicate key: {repr(kt)}")
            self.xpubs[key] = XPub.from_key_and_value(key, val, validator=opts.validator)
        elif kt == PSBTGlobalType.VERSION:
            if key:
                raise InvalidKeyData(f"key for {repr(kt)} must be empty")
            if len(val) != 4:
                raise InvalidPSBTFormat(f"value for {repr(kt)} has unexpected length: {len(val)}")
            psbt_version = int.from_bytes(val, byteorder='little', signed=False)
            if psbt_version > 0:
                raise InvalidPSBTFormat(f"Only PSBTs with version 0 are supported. Found version: {psbt_version}")
            # kept verbatim, so that it round-trips
            PSBTSection._add_unknown(self.unknowns, kt, key, val)
        else:
            PSBTSection._add_unknown(self.unknowns, kt, key, val)

    def _serialize_psbt(self, fd) -> None:
        wr = PSBTSection.create_psbt_writer(fd)
        fd.write(PSBT_MAGIC)
        # global section
        wr(PSBTGlobalType.UNSIGNED_TX, self.unsigned_tx.serialize_to_network(include_sigs=False))
        for xpub in self.xpubs.values():
            wr(PSBTGlobalType.XPUB, xpub.serialize_value(), key=xpub.extended_key)
        PSBTSection._write_unknowns(wr, self.unknowns)
        fd.write(PSBT_SECTION_SEPARATOR)
        # input sections
        for pinput in self.inputs:
            pinput._serialize_psbt_section(fd)
        # output sections
        for poutput in self.outputs:
            poutput._serialize_psbt_section(fd)

    def serialize_as_bytes(self) -> bytes:
        with io.BytesIO() as fd:
            self._serialize_psbt(fd)
            return fd.getvalue()

    def serialize_as_base64(self) -> str:
        raw_bytes = self.serialize_as_bytes()
        return base64.b64encode(raw_bytes).decode('ascii')

    def sanity_check(self) -> None:
        if (len(self.inputs) != len(self.unsigned_tx.inputs())
                or len(self.outputs) != len(self.unsigned_tx.outputs())):
            raise InvalidPSBTFormat("number of PSBT input/output sections does not match unsigned tx")
        for txin in self.unsigned_tx.inputs():
            if txin.has_sigs():
                raise InvalidUnsignedTransaction("PSBT unsigned tx must have empty scriptSigs and witnesses")
        for idx, (txin, pinput) in enumerate(zip(self.unsigned_tx.inputs(), self.inputs)):
            if not pinput.is_sane():
                raise InvalidPSBTFormat(f"PSBT input {idx} is not sane")
            pinput.validate_data(txin.prevout)

    def is_complete(self) -> bool:
        return all(pinput.is_finalized() for pinput in self.inputs)

    def input_value(self) -> int:
        return sum_utxo_input_values(self)

    def output_value(self) -> int:
        return self.unsigned_tx.output_value()

    def get_tx_fee(self) -> int:
        return self.input_value() - self.output_value()

    def combine_with_other_psbt(self, other: 'Packet') -> 'Packet':
        """Combiner role: returns a new Packet holding the data of both.
        Neither self nor other is modified.
        """
        if (self.unsigned_tx.serialize_to_network(include_sigs=False)
                != other.unsigned_tx.serialize_to_network(include_sigs=False)):
            raise InvalidPSBTFormat('A Combiner must not combine two different PSBTs.')
        combined = copy.deepcopy(self)
        # BIP-174: "The resulting PSBT must contain all of the key-value pairs from each of the PSBTs.
        #           The Combiner must remove any duplicate key-value pairs, in accordance with the specification."
        _merge_dict('xpub', combined.xpubs, other.xpubs)
        _merge_dict('global unknown', combined.unknowns, other.unknowns)
        for pinput, other_pinput in zip(combined.inputs, other.inputs):
            pinput.combine_with_other_pinput(other_pinput)
        for poutput, other_poutput in zip(combined.outputs, other.outputs):
            poutput.combine_with_other_poutput(other_poutput)
        combined.sanity_check()
        _logger.info(f"combined PSBTs for tx {combined.unsigned_tx.txid()}")
        return combined

    def to_json(self) -> dict:
        return {
            'unsigned_tx': self.unsigned_tx.to_json(),
            'xpubs': [xpub.to_json() for xpub in self.xpubs.values()],
            'unknown_psbt_fields': [u.to_json() for u in self.unknowns.values()],
            'inputs': [pinput.to_json() for pinput in self.inputs],
            'outputs': [poutput.to_json() for poutput in self.outputs],
            'is_complete': self.is_complete(),
        }

    def __eq__(self, other):
        if not isinstance(other, Packet):
            return False
        return (self.unsigned_tx == other.unsigned_tx
                and self.inputs == other.inputs
                and self.outputs == other.outputs
                and list(self.xpubs.values()) == list(other.xpubs.values())
                and list(self.unknowns.values()) == list(other.unknowns.values()))

    __hash__ = None


def sum_utxo_input_values(psbt: Packet) -> int:
    """Sums the values of the outputs spent by the inputs of the PSBT."""
    total = 0
    for idx, (txin, pinput) in enumerate(zip(psbt.unsigned_tx.inputs(), psbt.inputs)):
        utxo = pinput.get_utxo(txin.prevout)
        if utxo is None:
            raise MissingTxInputAmount(f"input {idx} has no UTXO information")
        total += utxo.value
    return total


def combine_psbts(psbts: Iterable[Packet]) -> Packet:
    psbts = list(psbts)
    if not psbts:
        raise ValueError("nothing to combine")
    combined = psbts[0]
    for psbt in psbts[1:]:
        combined = combined.combine_with_other_psbt(psbt)
    return combined
