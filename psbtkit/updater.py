# Copyright (C) 2020 The Electrum developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

import copy
from typing import Sequence, Optional

from .bip32 import BIP32_PRIME
from .bitcoin import (redeem_script_to_p2sh_script, witness_script_to_p2wsh_script,
                      p2wsh_nested_script)
from .ecc import SignatureValidator, get_validator
from .logging import Logger
from .psbt import (Packet, PInput, PartialSig, Bip32Derivation, AlreadyFinalized,
                   InvalidSighashFlags, InvalidSignatureForInput, PSBTInputConsistencyFailure,
                   PSBTCombineConflict)
from .transaction import Transaction, TxOutput, Sighash


class Updater(Logger):
    """Updater role of BIP-174: attaches UTXOs, scripts, derivation paths
    and signatures to a Packet. Every method leaves the Packet sane, or raises.
    """

    LOGGING_SHORTCUT = 'U'

    def __init__(self, psbt: Packet, *, validator: SignatureValidator = None):
        Logger.__init__(self)
        psbt.sanity_check()
        self.psbt = psbt
        self.validator = get_validator(validator)

    def _pinput(self, idx: int) -> PInput:
        return self.psbt.inputs[idx]

    def _ensure_witness_utxo(self, idx: int) -> None:
        pinput = self._pinput(idx)
        pinput.convert_utxo_to_witness_utxo(self.psbt.unsigned_tx.inputs()[idx].prevout)
        if pinput.witness_utxo is None:
            raise PSBTInputConsistencyFailure(f"input {idx} needs a witness UTXO before a witness script")

    def _check_utxo_candidate(self, idx: int, **utxo_fields) -> None:
        candidate = copy.copy(self._pinput(idx))
        for name, value in utxo_fields.items():
            setattr(candidate, name, value)
        candidate.validate_data(self.psbt.unsigned_tx.inputs()[idx].prevout)

    def add_in_non_witness_utxo(self, idx: int, tx: Transaction) -> None:
        prevout = self.psbt.unsigned_tx.inputs()[idx].prevout
        if tx.txid() != prevout.txid.hex():
            raise PSBTInputConsistencyFailure(f"input {idx} spends {prevout.to_str()}, "
                                              f"but the given UTXO is tx {tx.txid()}")
        self._check_utxo_candidate(idx, non_witness_utxo=tx)
        self._pinput(idx).non_witness_utxo = tx
        self.psbt.sanity_check()

    def add_in_witness_utxo(self, idx: int, txout: TxOutput) -> None:
        self._check_utxo_candidate(idx, witness_utxo=txout)
        self._pinput(idx).witness_utxo = txout
        self.psbt.sanity_check()

    def add_in_sighash_type(self, idx: int, sighash: int) -> None:
        if not Sighash.is_valid(sighash):
            raise InvalidSighashFlags(f"invalid sighash type: {sighash}")
        self._pinput(idx).set_sighash(sighash)
        self.psbt.sanity_check()

    def add_in_redeem_script(self, idx: int, redeem_script: bytes) -> None:
        self._check_scripts_against_utxo(idx, redeem_script=redeem_script, witness_script=None)
        self._pinput(idx).set_redeem_script(redeem_script)
        self.psbt.sanity_check()

    def add_in_witness_script(self, idx: int, witness_script: bytes) -> None:
        if self._pinput(idx).is_finalized():
            raise AlreadyFinalized(f"input {idx} is already finalized")
        self._ensure_witness_utxo(idx)
        self._pinput(idx).set_witness_script(witness_script)
        self.psbt.sanity_check()

    def add_in_bip32_derivation(self, idx: int, pubkey: bytes,
                                master_key_fingerprint: bytes, path: Sequence[int]) -> None:
        derivation = self._make_bip32_derivation(pubkey, master_key_fingerprint, path)
        self._pinput(idx).add_bip32_derivation(derivation)
        self.psbt.sanity_check()

    def add_in_por_commitment(self, idx: int, commitment: bytes) -> None:
        self._pinput(idx).set_por_commitment(commitment)
        self.psbt.sanity_check()

    def add_out_redeem_script(self, idx: int, redeem_script: bytes) -> None:
        self.psbt.outputs[idx].redeem_script = redeem_script
        self.psbt.sanity_check()

    def add_out_witness_script(self, idx: int, witness_script: bytes) -> None:
        self.psbt.outputs[idx].witness_script = witness_script
        self.psbt.sanity_check()

    def add_out_bip32_derivation(self, idx: int, pubkey: bytes,
                                 master_key_fingerprint: bytes, path: Sequence[int]) -> None:
        derivation = self._make_bip32_derivation(pubkey, master_key_fingerprint, path)
        self.psbt.outputs[idx].add_bip32_derivation(derivation)
        self.psbt.sanity_check()

    def _make_bip32_derivation(self, pubkey: bytes, master_key_fingerprint: bytes,
                               path: Sequence[int]) -> Bip32Derivation:
        if not self.validator.validate_pubkey(pubkey):
            raise ValueError(f"invalid pubkey: {pubkey.hex()}")
        if len(master_key_fingerprint) != 4:
            raise ValueError(f"unexpected fingerprint length: {len(master_key_fingerprint)}")
        if any(not (0 <= i < 2 * BIP32_PRIME) for i in path):
            raise ValueError(f"bip32 path child index out of range: {path}")
        return Bip32Derivation(pubkey=pubkey, master_key_fingerprint=master_key_fingerprint, path=path)

    def add_tap_key_sig(self, idx: int, sig: bytes) -> None:
        pinput = self._pinput(idx)
        if pinput.is_finalized():
            raise AlreadyFinalized(f"input {idx} is already finalized")
        if not self.validator.validate_schnorr_signature(sig):
            raise InvalidSignatureForInput(f"invalid taproot signature for input {idx}")
        pinput.set_tap_key_sig(sig)
        self.logger.info(f"added taproot key-path signature to input {idx}")
        self.psbt.sanity_check()

    def add_partial_signature(self, idx: int, pubkey: bytes, sig: bytes, *,
                              redeem_script: bytes = None,
                              witness_script: bytes = None) -> None:
        """Attaches an ECDSA signature to input 'idx', together with the
        scripts needed to spend it. Nothing is modified unless all checks pass.
        """
        pinput = self._pinput(idx)
        if pinput.is_finalized():
            raise AlreadyFinalized(f"input {idx} is already finalized")
        partial_sig = PartialSig(pubkey=pubkey, signature=sig)
        existing = pinput.partial_sigs.get(pubkey)
        if existing is not None and existing != partial_sig:
            raise PSBTCombineConflict(f"input {idx} already has a different signature for pubkey {pubkey.hex()}")
        if not partial_sig.check_valid(self.validator):
            raise InvalidSignatureForInput(f"invalid pubkey or signature for input {idx}: {pubkey.hex()}")
        if pinput.sighash is not None and partial_sig.sighash_type() != pinput.sighash:
            raise InvalidSighashFlags(f"signature has sighash {partial_sig.sighash_type()}, "
                                      f"input {idx} requires {pinput.sighash}")
        self._check_scripts_against_utxo(idx, redeem_script=redeem_script, witness_script=witness_script)
        if witness_script is not None:
            self._ensure_witness_utxo(idx)

        pinput.add_partial_sig(partial_sig)
        if redeem_script is not None:
            pinput.set_redeem_script(redeem_script)
        if witness_script is not None:
            pinput.set_witness_script(witness_script)
        self.logger.info(f"added signature to input {idx}: pubkey={pubkey.hex()}")
        self.psbt.sanity_check()

    def _check_scripts_against_utxo(self, idx: int, *, redeem_script: Optional[bytes],
                                    witness_script: Optional[bytes]) -> None:
        pinput = self._pinput(idx)
        prevout = self.psbt.unsigned_tx.inputs()[idx].prevout
        utxo = pinput.get_utxo(prevout)
        if utxo is None:
            # nothing to check against yet
            return
        spk = utxo.scriptpubkey
        if redeem_script is not None:
            if redeem_script_to_p2sh_script(redeem_script) != spk:
                raise PSBTInputConsistencyFailure(f"redeem script does not match the UTXO of input {idx}")
            if witness_script is not None and p2wsh_nested_script(witness_script) != redeem_script:
                raise PSBTInputConsistencyFailure(f"witness script does not match the redeem script of input {idx}")
        elif witness_script is not None:
            if witness_script_to_p2wsh_script(witness_script) != spk:
                raise PSBTInputConsistencyFailure(f"witness script does not match the UTXO of input {idx}")
