# Copyright (C) 2020 The Electrum developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

"""Finalizer and Extractor roles of BIP-174.

An input is finalized by turning its partial signatures (or taproot key-path
signature) and scripts into a final scriptSig and/or scriptWitness. Only
standard spends are understood: p2pkh, bare multisig behind p2sh, p2wpkh,
p2wsh multisig, their p2sh-nested variants, and p2tr key-path spends.
"""

from typing import Optional, Tuple, List

from .bitcoin import (construct_script, construct_witness, redeem_script_to_p2sh_script,
                      witness_script_to_p2wsh_script)
from .crypto import hash_160
from .logging import get_logger
from .util import profiler
from .psbt import (Packet, PInput, PartialSig, AlreadyFinalized, NotFinalizable, IncompletePSBT,
                   InvalidSighashFlags, UnsupportedScriptType, PSBTInputConsistencyFailure)
from .transaction import (Transaction, TxInput, TxOutput, Sighash, get_script_type_from_output_script,
                          get_hash_from_output_script, parse_multisig_script)


_logger = get_logger(__name__)


def _check_sighash_flags(pinput: PInput) -> None:
    """Signatures must commit to the sighash type the input asks for, if any."""
    if pinput.sighash is None:
        return
    for partial_sig in pinput.sorted_partial_sigs():
        if partial_sig.sighash_type() != pinput.sighash:
            raise InvalidSighashFlags(f"signature of {partial_sig.pubkey.hex()} has sighash "
                                      f"{partial_sig.sighash_type()}, input requires {pinput.sighash}")


def _get_sig_for_pubkey_hash(pinput: PInput, pubkey_hash: bytes) -> PartialSig:
    for partial_sig in pinput.sorted_partial_sigs():
        if hash_160(partial_sig.pubkey) == pubkey_hash:
            return partial_sig
    raise NotFinalizable("no signature for the public key of the output being spent")


def _get_multisig_sigs(pinput: PInput, script: bytes) -> List[bytes]:
    """Returns the first m signatures, in the order of the public keys in the script."""
    parsed = parse_multisig_script(script)
    if parsed is None:
        raise UnsupportedScriptType("only multisig scripts can be finalized")
    m, pubkeys = parsed
    for pubkey in pinput.partial_sigs:
        if pubkey not in pubkeys:
            raise NotFinalizable(f"signature for public key {pubkey.hex()} that is not in the script")
    sigs = [pinput.partial_sigs[pubkey].signature
            for pubkey in pubkeys if pubkey in pinput.partial_sigs]
    if len(sigs) < m:
        raise NotFinalizable(f"not enough signatures: have {len(sigs)}, need {m}")
    return sigs[:m]


def _p2wpkh_witness(pinput: PInput, wpkh_script: bytes) -> bytes:
    partial_sig = _get_sig_for_pubkey_hash(pinput, get_hash_from_output_script(wpkh_script))
    if len(partial_sig.pubkey) != 33:
        raise NotFinalizable("segwit inputs require compressed public keys")
    return construct_witness([partial_sig.signature, partial_sig.pubkey])


def _p2wsh_witness(pinput: PInput, wsh_script: bytes) -> bytes:
    witness_script = pinput.witness_script
    if witness_script is None:
        raise NotFinalizable("missing witness script")
    if witness_script_to_p2wsh_script(witness_script) != wsh_script:
        raise PSBTInputConsistencyFailure("witness script does not match the output being spent")
    sigs = _get_multisig_sigs(pinput, witness_script)
    # leading empty item consumed by OP_CHECKMULTISIG
    return construct_witness([b'', *sigs, witness_script])


def _taproot_witness(pinput: PInput) -> bytes:
    sig = pinput.tap_key_sig
    if sig is None:
        raise NotFinalizable("missing taproot key-path signature")
    sighash = sig[64] if len(sig) == 65 else Sighash.DEFAULT
    if pinput.sighash is not None and pinput.sighash != sighash:
        raise InvalidSighashFlags(f"taproot signature has sighash {sighash}, input requires {pinput.sighash}")
    return construct_witness([sig])


def get_final_scripts(pinput: PInput, utxo: TxOutput) -> Tuple[Optional[bytes], Optional[bytes]]:
    """Returns (final_script_sig, final_script_witness) for spending 'utxo'.
    Does not modify pinput.
    """
    spk = utxo.scriptpubkey
    script_type = get_script_type_from_output_script(spk)
    if script_type == 'p2tr':
        return None, _taproot_witness(pinput)
    _check_sighash_flags(pinput)
    if script_type == 'p2pkh':
        partial_sig = _get_sig_for_pubkey_hash(pinput, get_hash_from_output_script(spk))
        return construct_script([partial_sig.signature, partial_sig.pubkey]), None
    if script_type == 'p2wpkh':
        return None, _p2wpkh_witness(pinput, spk)
    if script_type == 'p2wsh':
        return None, _p2wsh_witness(pinput, spk)
    if script_type == 'p2sh':
        redeem_script = pinput.redeem_script
        if redeem_script is None:
            raise NotFinalizable("missing redeem script")
        if redeem_script_to_p2sh_script(redeem_script) != spk:
            raise PSBTInputConsistencyFailure("redeem script does not match the output being spent")
        nested_type = get_script_type_from_output_script(redeem_script)
        if nested_type == 'p2wpkh':
            return construct_script([redeem_script]), _p2wpkh_witness(pinput, redeem_script)
        if nested_type == 'p2wsh':
            return construct_script([redeem_script]), _p2wsh_witness(pinput, redeem_script)
        sigs = _get_multisig_sigs(pinput, redeem_script)
        return construct_script([0, *sigs, redeem_script]), None
    raise UnsupportedScriptType(f"cannot finalize input spending script {spk.hex()}")


def finalize_input(psbt: Packet, idx: int) -> None:
    """Finalizes input 'idx' of psbt.
    On failure an exception is raised and the input is left unchanged.
    """
    pinput = psbt.inputs[idx]
    if pinput.is_finalized():
        raise AlreadyFinalized(f"input {idx} is already finalized")
    psbt.sanity_check()
    txin = psbt.unsigned_tx.inputs()[idx]
    utxo = pinput.get_utxo(txin.prevout)
    if utxo is None:
        raise NotFinalizable(f"input {idx} has no UTXO information")
    script_sig, witness = get_final_scripts(pinput, utxo)

    if witness is not None:
        # a final witness requires the witness UTXO to be present
        pinput.convert_utxo_to_witness_utxo(txin.prevout)
    pinput.final_script_sig = script_sig
    pinput.final_script_witness = witness
    pinput.clear_fields_when_finalized()
    psbt.sanity_check()
    _logger.info(f"finalized input {idx} spending {txin.prevout.to_str()}")


def maybe_finalize_input(psbt: Packet, idx: int) -> bool:
    """Like finalize_input, but returns whether the input is finalized
    instead of raising for inputs that are already or not yet finalizable.
    """
    if psbt.inputs[idx].is_finalized():
        return True
    try:
        finalize_input(psbt, idx)
    except NotFinalizable as e:
        _logger.debug(f"input {idx} cannot be finalized yet: {e}")
        return False
    return True


@profiler
def finalize_psbt(psbt: Packet) -> None:
    """Finalizes every input that is not finalized yet."""
    for idx, pinput in enumerate(psbt.inputs):
        if not pinput.is_finalized():
            finalize_input(psbt, idx)


def extract_transaction(psbt: Packet) -> Transaction:
    """Extractor role: returns the fully signed network transaction."""
    psbt.sanity_check()
    if not psbt.is_complete():
        raise IncompletePSBT("cannot extract transaction: not all inputs are finalized")
    unsigned_tx = psbt.unsigned_tx
    inputs = []
    for txin, pinput in zip(unsigned_tx.inputs(), psbt.inputs):
        inputs.append(TxInput(prevout=txin.prevout,
                              script_sig=pinput.final_script_sig or b'',
                              nsequence=txin.nsequence,
                              witness=pinput.final_script_witness))
    outputs = [TxOutput(scriptpubkey=txout.scriptpubkey, value=txout.value)
               for txout in unsigned_tx.outputs()]
    tx = Transaction.from_io(inputs, outputs,
                             locktime=unsigned_tx.locktime, version=unsigned_tx.version)
    _logger.info(f"extracted tx {tx.txid()}")
    return tx
