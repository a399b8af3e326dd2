from psbtkit.bip32 import (BIP32Node, BIP32_PRIME, convert_bip32_strpath_to_intpath,
                           convert_bip32_intpath_to_strpath, pack_bip32_root_fingerprint_and_int_path,
                           unpack_bip32_root_fingerprint_and_int_path)
from psbtkit.bitcoin import InvalidChecksum
from psbtkit.util import BitcoinException, bfh

from . import PsbtkitTestCase, make_key


XPUB_VERSION = bfh('0488b21e')
XPRV_VERSION = bfh('0488ade4')


def make_node(*, depth=3, child_number=BIP32_PRIME + 5, key=None, version=XPUB_VERSION) -> BIP32Node:
    if key is None:
        key = make_key(31337)[1]
    return BIP32Node(version=version,
                     depth=depth,
                     fingerprint=b'\xaa\xbb\xcc\xdd' if depth else bytes(4),
                     child_number=child_number.to_bytes(4, 'big'),
                     chaincode=bytes(range(32)),
                     key=key)


class TestBIP32Node(PsbtkitTestCase):

    def test_bytes_round_trip(self):
        node = make_node()
        raw = node.to_bytes()
        self.assertEqual(78, len(raw))
        self.assertEqual(XPUB_VERSION, raw[:4])
        self.assertEqual(node, BIP32Node.from_bytes(raw))

    def test_xkey_round_trip(self):
        node = make_node()
        xpub = node.to_xkey()
        self.assertTrue(xpub.startswith('xpub'), xpub)
        self.assertEqual(node, BIP32Node.from_xkey(xpub))
        xprv = make_node(key=b'\x00' + bytes(31) + b'\x01', version=XPRV_VERSION).to_xkey()
        self.assertTrue(xprv.startswith('xprv'), xprv)
        last = 'z' if xpub[-1] != 'z' else 'y'
        with self.assertRaises(InvalidChecksum):
            BIP32Node.from_xkey(xpub[:-1] + last)

    def test_from_bytes_bad_length(self):
        raw = make_node().to_bytes()
        for bad in (raw[:-1], raw + b'\x00', b''):
            with self.assertRaises(BitcoinException):
                BIP32Node.from_bytes(bad)

    def test_public_key_validity(self):
        self.assertTrue(make_node().is_public_key_valid())
        self.assertFalse(make_node(key=b'\x05' * 33).is_public_key_valid())
        self.assertFalse(make_node(key=b'\x00' + bytes(31) + b'\x01').is_public_key_valid())
        self.assertTrue(make_node(key=b'\x00' + bytes(31) + b'\x01').is_private())

    def test_consistency_with_path(self):
        node = make_node(depth=3, child_number=BIP32_PRIME + 5)
        self.assertTrue(node.is_consistent_with_path([BIP32_PRIME, 1, BIP32_PRIME + 5]))
        self.assertFalse(node.is_consistent_with_path([BIP32_PRIME, 1, 5]))
        self.assertFalse(node.is_consistent_with_path([BIP32_PRIME + 5]))
        master = make_node(depth=0, child_number=0)
        self.assertTrue(master.is_consistent_with_path([]))
        self.assertFalse(master.is_consistent_with_path([0]))
        self.assertFalse(make_node(depth=0, child_number=1).is_consistent_with_path([]))


class TestBIP32Paths(PsbtkitTestCase):

    def test_convert_bip32_intpath_to_strpath(self):
        self.assertEqual("m", convert_bip32_intpath_to_strpath([]))
        self.assertEqual("m/0h/1/2h",
                         convert_bip32_intpath_to_strpath([BIP32_PRIME, 1, BIP32_PRIME + 2]))
        self.assertEqual("m/84'/0'",
                         convert_bip32_intpath_to_strpath([BIP32_PRIME + 84, BIP32_PRIME], hardened_char="'"))
        with self.assertRaises(ValueError):
            convert_bip32_intpath_to_strpath([2**32])
        with self.assertRaises(TypeError):
            convert_bip32_intpath_to_strpath(["1"])

    def test_convert_bip32_strpath_to_intpath(self):
        self.assertEqual([], convert_bip32_strpath_to_intpath(""))
        self.assertEqual([], convert_bip32_strpath_to_intpath("m"))
        self.assertEqual([BIP32_PRIME, 1, BIP32_PRIME + 2], convert_bip32_strpath_to_intpath("m/0h/1/2'"))
        self.assertEqual([BIP32_PRIME + 1], convert_bip32_strpath_to_intpath("m/-1"))
        self.assertEqual([1, 2], convert_bip32_strpath_to_intpath("1//2/"))
        with self.assertRaises(ValueError):
            convert_bip32_strpath_to_intpath("m/x")
        with self.assertRaises(ValueError):
            convert_bip32_strpath_to_intpath("m/-1h")
        with self.assertRaises(ValueError):
            convert_bip32_strpath_to_intpath("m/4294967296")

    def test_pack_and_unpack_path(self):
        xfp = bfh('b2e35a7d')
        path = [BIP32_PRIME, 0, 2**32 - 1]
        packed = pack_bip32_root_fingerprint_and_int_path(xfp, path)
        self.assertEqual('b2e35a7d' + '00000080' + '00000000' + 'ffffffff', packed.hex())
        self.assertEqual((xfp, path), unpack_bip32_root_fingerprint_and_int_path(packed))
        self.assertEqual((xfp, []), unpack_bip32_root_fingerprint_and_int_path(xfp))
        with self.assertRaises(ValueError):
            pack_bip32_root_fingerprint_and_int_path(b'\x00' * 3, path)
        for bad in (b'', b'\x00' * 3, packed[:-1]):
            with self.assertRaises(ValueError):
                unpack_bip32_root_fingerprint_and_int_path(bad)
