from psbtkit import ecc
from psbtkit.ecc import SignatureValidator, get_validator, CURVE_ORDER
from psbtkit.util import bfh

from . import PsbtkitTestCase, make_key, make_sig


# x-only public keys and signatures from the BIP-340 test vectors
BIP340_VALID_XONLY_PUBKEYS = (
    'F9308A019258C31049344F85F89D5229B531C845836F99B08601F113BCE036F9',
    'DFF1D77F2A671C5F36183726DB2341BE58FEAE1DA2DECED843240F7B502BA659',
    'DD308AFEC5777E13121FA72B9CC1B7CC0139715309B086C960E18FD969774EB8',
)
BIP340_PUBKEY_NOT_ON_CURVE = 'EEFDEA4CDB677750A420FEE807EACF21EB9898AE79B9768766E4FAA04A2D4A34'
BIP340_PUBKEY_EXCEEDS_FIELD_SIZE = 'FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC30'
BIP340_VALID_SIG = ('E907831F80848D1069A5371B402410364BDF1C5F8307B0084C55F1CE2DCA8215'
                    '25F66A4A85EA8B71E482A74F382D2CE5EBEEE8FDB2172F477DF4900D310536C0')
BIP340_SIG_R_IS_FIELD_SIZE = ('FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F'
                              '69E89B4C5564D00349106B8497785DD7D1D713A8AE82B32FA79D5F7FC407D39B')
BIP340_SIG_S_IS_CURVE_ORDER = ('6CFF5C3BA86C69EA4B7376F31A9BCB4F74C1976089B2D9963DA2E5543E177769'
                               'FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141')


class TestPubkeys(PsbtkitTestCase):

    def test_compressed_and_uncompressed(self):
        sk, pubkey = make_key(12345)
        self.assertTrue(ecc.is_pubkey_bytes(pubkey))
        uncompressed = sk.get_verifying_key().to_string("uncompressed")
        self.assertEqual(65, len(uncompressed))
        self.assertTrue(ecc.is_pubkey_bytes(uncompressed))
        self.assertEqual(ecc.ser_to_point(pubkey), ecc.ser_to_point(uncompressed))

    def test_hybrid(self):
        sk, pubkey = make_key(12345)
        uncompressed = sk.get_verifying_key().to_string("uncompressed")
        y_is_odd = uncompressed[-1] & 1
        good_prefix, bad_prefix = (b'\x07', b'\x06') if y_is_odd else (b'\x06', b'\x07')
        self.assertTrue(ecc.is_pubkey_bytes(good_prefix + uncompressed[1:]))
        self.assertFalse(ecc.is_pubkey_bytes(bad_prefix + uncompressed[1:]))

    def test_invalid(self):
        _, pubkey = make_key(12345)
        self.assertFalse(ecc.is_pubkey_bytes(b''))
        self.assertFalse(ecc.is_pubkey_bytes(pubkey[:-1]))
        self.assertFalse(ecc.is_pubkey_bytes(b'\x05' + pubkey[1:]))
        self.assertFalse(ecc.is_pubkey_bytes(b'\x04' + bytes(64)))
        self.assertFalse(ecc.is_pubkey_bytes(b'\x02' + bfh(BIP340_PUBKEY_NOT_ON_CURVE)))
        self.assertFalse(ecc.is_pubkey_bytes(b'\x02' + bfh(BIP340_PUBKEY_EXCEEDS_FIELD_SIZE)))

    def test_xonly(self):
        for pubkey in BIP340_VALID_XONLY_PUBKEYS:
            self.assertTrue(ecc.is_xonly_pubkey_bytes(bfh(pubkey)), pubkey)
        self.assertFalse(ecc.is_xonly_pubkey_bytes(bfh(BIP340_PUBKEY_NOT_ON_CURVE)))
        self.assertFalse(ecc.is_xonly_pubkey_bytes(bfh(BIP340_PUBKEY_EXCEEDS_FIELD_SIZE)))
        _, pubkey = make_key(777)
        self.assertTrue(ecc.is_xonly_pubkey_bytes(pubkey[1:]))
        self.assertFalse(ecc.is_xonly_pubkey_bytes(pubkey))


class TestSignatures(PsbtkitTestCase):

    def test_der_sig_with_sighash(self):
        sk, _ = make_key(4242)
        for sighash in (0x01, 0x02, 0x03, 0x81, 0x82, 0x83):
            self.assertTrue(ecc.is_der_sig_with_sighash(make_sig(sk, sighash=sighash)))

    def test_der_sig_minimal(self):
        # r=1, s=1
        self.assertTrue(ecc.is_der_sig_with_sighash(bfh('300602010102010101')))
        # r=0
        self.assertFalse(ecc.is_der_sig_with_sighash(bfh('300602010002010101')))
        # too short for any DER signature
        self.assertFalse(ecc.is_der_sig_with_sighash(bfh('3006020101020101')))

    def test_der_sig_invalid(self):
        sk, _ = make_key(4242)
        sig = make_sig(sk)
        self.assertFalse(ecc.is_der_sig_with_sighash(sig[:-1] + b'\x00' + sig[-1:]))
        self.assertFalse(ecc.is_der_sig_with_sighash(b'\x31' + sig[1:]))
        self.assertFalse(ecc.is_der_sig_with_sighash(sig[:-2] + sig[-1:]))
        self.assertFalse(ecc.is_der_sig_with_sighash(b'\x30' * 74))
        # s equal to the curve order
        s = CURVE_ORDER.to_bytes(32, 'big')
        der = b'\x02\x01\x01' + b'\x02\x21\x00' + s
        self.assertFalse(ecc.is_der_sig_with_sighash(b'\x30' + bytes([len(der)]) + der + b'\x01'))

    def test_schnorr_sig(self):
        self.assertTrue(ecc.is_schnorr_sig_bytes(bfh(BIP340_VALID_SIG)))
        self.assertTrue(ecc.is_schnorr_sig_bytes(bfh(BIP340_VALID_SIG) + b'\x83'))
        self.assertFalse(ecc.is_schnorr_sig_bytes(bfh(BIP340_VALID_SIG) + b'\x00'))
        self.assertFalse(ecc.is_schnorr_sig_bytes(bfh(BIP340_VALID_SIG) + b'\x04'))
        self.assertFalse(ecc.is_schnorr_sig_bytes(bfh(BIP340_VALID_SIG)[:-1]))
        self.assertFalse(ecc.is_schnorr_sig_bytes(bfh(BIP340_SIG_R_IS_FIELD_SIZE)))
        self.assertFalse(ecc.is_schnorr_sig_bytes(bfh(BIP340_SIG_S_IS_CURVE_ORDER)))


class TestSignatureValidator(PsbtkitTestCase):

    def test_default_validator(self):
        self.assertIsInstance(get_validator(), SignatureValidator)
        self.assertIs(get_validator(), get_validator(None))

    def test_custom_validator(self):
        class AcceptEverything(SignatureValidator):
            def validate_pubkey(self, pubkey):
                return True

        validator = AcceptEverything()
        self.assertIs(validator, get_validator(validator))
        self.assertTrue(validator.validate_pubkey(b'\x05' * 33))
        self.assertFalse(validator.validate_der_signature(b'\x30'))
