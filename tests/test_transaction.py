from psbtkit.bitcoin import (construct_witness, public_key_to_p2pkh_script, public_key_to_p2wpkh_script,
                             redeem_script_to_p2sh_script, witness_script_to_p2wsh_script,
                             xonly_pubkey_to_p2tr_script, construct_script, opcodes)
from psbtkit.crypto import hash_160, sha256
from psbtkit.transaction import (Transaction, TxInput, TxOutput, TxOutpoint, BCDataStream, Sighash,
                                 SerializationError, UnexpectedEndOfStream, NonCanonicalCompactSize,
                                 get_script_type_from_output_script, get_hash_from_output_script,
                                 multisig_script, parse_multisig_script)
from psbtkit.util import bfh

from . import PsbtkitTestCase, make_key, make_unsigned_tx, DUMMY_SPK


class TestBCDataStream(PsbtkitTestCase):

    def test_compact_size(self):
        s = BCDataStream()
        values = [0, 1, 252, 253, 2**16 - 1, 2**16, 2**32 - 1, 2**32, 2**64 - 1]
        for v in values:
            s.write_compact_size(v)
        with self.assertRaises(SerializationError):
            s.write_compact_size(-1)
        self.assertEqual(bfh('0001fcfdfd00fdfffffe00000100feffffffffff0000000001000000ffffffffffffffffff'),
                         s.input)
        for v in values:
            self.assertEqual(v, s.read_compact_size())
        with self.assertRaises(UnexpectedEndOfStream):
            s.read_compact_size()

    def test_compact_size_non_canonical(self):
        for raw in ('fdfc00', 'fe00000000', 'feffff0000', 'ffffffffff00000000'):
            s = BCDataStream()
            s.write(bfh(raw))
            with self.assertRaises(NonCanonicalCompactSize, msg=raw):
                s.read_compact_size()

    def test_compact_size_truncated(self):
        for raw in ('fd', 'fd01', 'fe010000', 'ff01'):
            s = BCDataStream()
            s.write(bfh(raw))
            with self.assertRaises(UnexpectedEndOfStream, msg=raw):
                s.read_compact_size()

    def test_read_bytes(self):
        s = BCDataStream()
        with self.assertRaises(SerializationError):
            s.read_bytes(1)
        s.write(b'hello')
        s.write(b' world')
        self.assertEqual(b'hello', s.read_bytes(5))
        self.assertEqual(6, s.bytes_left())
        with self.assertRaises(UnexpectedEndOfStream):
            s.read_bytes(7)
        self.assertEqual(b' world', s.read_bytes(6))
        self.assertFalse(s.can_read_more())

    def test_fixed_width_ints(self):
        s = BCDataStream()
        s.write_int32(-2)
        s.write_uint32(2**32 - 1)
        s.write_int64(-3)
        s.write_uint64(2**64 - 1)
        self.assertEqual(-2, s.read_int32())
        self.assertEqual(2**32 - 1, s.read_uint32())
        self.assertEqual(-3, s.read_int64())
        self.assertEqual(2**64 - 1, s.read_uint64())
        with self.assertRaises(UnexpectedEndOfStream):
            s.read_uint32()


class TestScripts(PsbtkitTestCase):

    def setUp(self):
        super().setUp()
        self.pubkeys = [make_key(secret)[1] for secret in (11, 12, 13)]

    def test_script_types(self):
        pk = self.pubkeys[0]
        self.assertEqual('p2pkh', get_script_type_from_output_script(public_key_to_p2pkh_script(pk)))
        self.assertEqual('p2wpkh', get_script_type_from_output_script(public_key_to_p2wpkh_script(pk)))
        ms = multisig_script(self.pubkeys, 2)
        self.assertEqual('p2sh', get_script_type_from_output_script(redeem_script_to_p2sh_script(ms)))
        self.assertEqual('p2wsh', get_script_type_from_output_script(witness_script_to_p2wsh_script(ms)))
        self.assertEqual('p2tr', get_script_type_from_output_script(xonly_pubkey_to_p2tr_script(pk[1:])))
        self.assertIsNone(get_script_type_from_output_script(ms))
        self.assertIsNone(get_script_type_from_output_script(construct_script([opcodes.OP_RETURN, b'hi'])))
        self.assertIsNone(get_script_type_from_output_script(bfh('0014aabb')))  # truncated push
        self.assertIsNone(get_script_type_from_output_script(None))

    def test_hash_from_output_script(self):
        pk = self.pubkeys[1]
        self.assertEqual(hash_160(pk), get_hash_from_output_script(public_key_to_p2pkh_script(pk)))
        self.assertEqual(hash_160(pk), get_hash_from_output_script(public_key_to_p2wpkh_script(pk)))
        ms = multisig_script(self.pubkeys, 1)
        self.assertEqual(hash_160(ms), get_hash_from_output_script(redeem_script_to_p2sh_script(ms)))
        self.assertEqual(sha256(ms), get_hash_from_output_script(witness_script_to_p2wsh_script(ms)))
        self.assertIsNone(get_hash_from_output_script(b'\x6a'))

    def test_parse_multisig_script(self):
        for m in (1, 2, 3):
            self.assertEqual((m, self.pubkeys), parse_multisig_script(multisig_script(self.pubkeys, m)))
        self.assertIsNone(parse_multisig_script(b''))
        self.assertIsNone(parse_multisig_script(public_key_to_p2wpkh_script(self.pubkeys[0])))
        # n does not match the number of keys
        bad_n = construct_script([2, *self.pubkeys, 2, opcodes.OP_CHECKMULTISIG])
        self.assertIsNone(parse_multisig_script(bad_n))
        # m > n
        bad_m = construct_script([3, *self.pubkeys[:2], 2, opcodes.OP_CHECKMULTISIG])
        self.assertIsNone(parse_multisig_script(bad_m))
        # not a public key
        bad_key = construct_script([1, b'\x02' * 20, 1, opcodes.OP_CHECKMULTISIG])
        self.assertIsNone(parse_multisig_script(bad_key))
        # truncated
        self.assertIsNone(parse_multisig_script(multisig_script(self.pubkeys, 2)[:-40]))


class TestTransaction(PsbtkitTestCase):

    def test_legacy_round_trip(self):
        tx = make_unsigned_tx(2, [1000, 2000])
        raw = tx.serialize_as_bytes()
        tx2 = Transaction(raw)
        self.assertEqual(raw, tx2.serialize_as_bytes())
        self.assertEqual(tx.txid(), tx2.txid())
        self.assertEqual(tx.txid(), tx2.wtxid())
        self.assertEqual(2, tx2.version)
        self.assertEqual(0, tx2.locktime)
        self.assertEqual(3000, tx2.output_value())
        self.assertEqual(TxOutpoint(txid=b'\x02' * 32, out_idx=1), tx2.inputs()[1].prevout)
        self.assertEqual([TxOutput(scriptpubkey=DUMMY_SPK, value=1000), TxOutput(scriptpubkey=DUMMY_SPK, value=2000)],
                         list(tx2.outputs()))
        self.assertFalse(tx2.is_segwit())
        self.assertEqual(tx, Transaction(raw.hex()))

    def test_segwit_round_trip(self):
        witness = construct_witness([b'\x30' * 71, b'\x02' * 33])
        txin = TxInput(prevout=TxOutpoint(txid=b'\x11' * 32, out_idx=3), witness=witness, nsequence=0xffffffff)
        tx = Transaction.from_io([txin], [TxOutput(scriptpubkey=DUMMY_SPK, value=5)], locktime=700_000, version=1)
        raw = tx.serialize_as_bytes()
        self.assertEqual(b'\x00\x01', raw[4:6])
        tx2 = Transaction(raw)
        self.assertTrue(tx2.is_segwit())
        self.assertEqual(witness, tx2.inputs()[0].witness)
        self.assertEqual([b'\x30' * 71, b'\x02' * 33], tx2.inputs()[0].witness_elements())
        self.assertEqual(700_000, tx2.locktime)
        self.assertEqual(0xffffffff, tx2.inputs()[0].nsequence)
        self.assertNotEqual(tx2.txid(), tx2.wtxid())
        # the legacy serialization drops the witness
        legacy = Transaction(tx2.serialize_to_network(force_legacy=True))
        self.assertFalse(legacy.is_segwit())
        self.assertEqual(tx2.txid(), legacy.txid())

    def test_witness_encoding_rejected_when_not_allowed(self):
        witness = construct_witness([b'\x01'])
        txin = TxInput(prevout=TxOutpoint(txid=b'\x11' * 32, out_idx=0), witness=witness)
        raw = Transaction.from_io([txin], [TxOutput(scriptpubkey=DUMMY_SPK, value=5)]).serialize_as_bytes()
        with self.assertRaises(SerializationError):
            Transaction(raw).deserialize(allow_witness=False)

    def test_unsigned_serialization(self):
        txin = TxInput(prevout=TxOutpoint(txid=b'\x11' * 32, out_idx=0), script_sig=b'\x51',
                       witness=construct_witness([b'\x01']))
        tx = Transaction.from_io([txin], [TxOutput(scriptpubkey=DUMMY_SPK, value=5)])
        self.assertTrue(txin.has_sigs())
        unsigned = Transaction(tx.serialize_to_network(include_sigs=False))
        self.assertFalse(unsigned.inputs()[0].has_sigs())
        self.assertEqual(b'', unsigned.inputs()[0].script_sig)

    def test_deserialize_errors(self):
        raw = make_unsigned_tx(1, [1000]).serialize_as_bytes()
        for bad_raw in (raw[:-1], raw + b'\x00', raw[:4] + b'\x00\x00' + raw[5:]):
            with self.assertRaises(SerializationError, msg=bad_raw.hex()):
                Transaction(bad_raw).deserialize()
        with self.assertRaises(SerializationError):
            Transaction('not hex')
        # zero inputs
        no_inputs = int.to_bytes(2, 4, 'little') + b'\x00' + b'\x00' + int.to_bytes(0, 4, 'little')
        with self.assertRaises(SerializationError):
            Transaction(no_inputs).deserialize(allow_witness=False)

    def test_output_value_limits(self):
        txout = TxOutput(scriptpubkey=DUMMY_SPK, value=21_000_000 * 100_000_000 + 1)
        with self.assertRaises(SerializationError):
            TxOutput.from_network_bytes(txout.serialize_to_network())
        txout = TxOutput(scriptpubkey=DUMMY_SPK, value=1234)
        self.assertEqual(txout, TxOutput.from_network_bytes(txout.serialize_to_network()))
        with self.assertRaises(SerializationError):
            TxOutput.from_network_bytes(txout.serialize_to_network() + b'\x00')
        with self.assertRaises(ValueError):
            TxOutput(scriptpubkey=DUMMY_SPK, value=1.5)

    def test_outpoint(self):
        outpoint = TxOutpoint.from_str('11' * 31 + '22:7')
        self.assertEqual('11' * 31 + '22:7', outpoint.to_str())
        self.assertEqual(b'\x22' + b'\x11' * 31 + b'\x07\x00\x00\x00', outpoint.serialize_to_network())

    def test_sighash_is_valid(self):
        for sighash in (1, 2, 3, 0x81, 0x82, 0x83):
            self.assertTrue(Sighash.is_valid(sighash))
        for sighash in (0, 4, 0x80, 0x84, 0xff):
            self.assertFalse(Sighash.is_valid(sighash))
        self.assertTrue(Sighash.is_valid(Sighash.DEFAULT, is_taproot=True))
