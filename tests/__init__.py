import hashlib
import io
import unittest
from typing import Sequence, Tuple

import ecdsa
from ecdsa.util import sigencode_der_canonize

import psbtkit
import psbtkit.logging
from psbtkit.bitcoin import public_key_to_p2wpkh_script
from psbtkit.psbt import PSBTSection, PSBT_MAGIC
from psbtkit.transaction import Transaction, TxInput, TxOutput, TxOutpoint
from psbtkit.logging import Logger


psbtkit.logging._configure_stderr_logging(verbosity="*")


class PsbtkitTestCase(unittest.TestCase, Logger):
    """Base class for our unit tests."""

    # maxDiff = None  # for debugging

    def __init__(self, *args, **kwargs):
        unittest.TestCase.__init__(self, *args, **kwargs)
        Logger.__init__(self)


def make_key(secret: int) -> Tuple[ecdsa.SigningKey, bytes]:
    """Returns (signing key, compressed pubkey) for a secret exponent."""
    sk = ecdsa.SigningKey.from_secret_exponent(secret, curve=ecdsa.SECP256k1)
    pubkey = sk.get_verifying_key().to_string("compressed")
    return sk, pubkey


def make_sig(sk: ecdsa.SigningKey, msg: bytes = b'psbtkit', *, sighash: int = 1) -> bytes:
    """A low-S DER signature with the sighash byte appended, as found in a PSBT."""
    digest = hashlib.sha256(msg).digest()
    der_sig = sk.sign_digest_deterministic(digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize)
    return der_sig + bytes([sighash])


DUMMY_SPK = public_key_to_p2wpkh_script(make_key(1)[1])


def make_unsigned_tx(n_inputs: int, output_values: Sequence[int], *,
                     prevouts: Sequence[TxOutpoint] = None) -> Transaction:
    if prevouts is None:
        prevouts = [TxOutpoint(txid=bytes([i + 1]) * 32, out_idx=i) for i in range(n_inputs)]
    inputs = [TxInput(prevout=prevout) for prevout in prevouts]
    outputs = [TxOutput(scriptpubkey=DUMMY_SPK, value=value) for value in output_values]
    return Transaction.from_io(inputs, outputs, locktime=0, version=2)


def make_funding_tx(output_scripts_and_values: Sequence[Tuple[bytes, int]]) -> Transaction:
    """A transaction paying to the given outputs, usable as a non-witness UTXO."""
    txin = TxInput(prevout=TxOutpoint(txid=b'\xaa' * 32, out_idx=0), script_sig=b'\x51')
    outputs = [TxOutput(scriptpubkey=spk, value=value) for spk, value in output_scripts_and_values]
    tx = Transaction.from_io([txin], outputs, locktime=0, version=1)
    # reparse, as if it came over the wire
    return Transaction(tx.serialize_as_bytes())


def psbt_record(key_type: int, val: bytes, key: bytes = b'') -> bytes:
    with io.BytesIO() as fd:
        PSBTSection.write_kv(fd, key_type, key, val)
        return fd.getvalue()


def raw_psbt_for_tx(tx: Transaction, *, global_records: bytes = b'') -> bytes:
    """Serialized PSBT with empty input and output sections."""
    return (PSBT_MAGIC
            + psbt_record(0, tx.serialize_to_network(include_sigs=False))
            + global_records + b'\x00'
            + b'\x00' * len(tx.inputs())
            + b'\x00' * len(tx.outputs()))
