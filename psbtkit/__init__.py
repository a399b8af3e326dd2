from .version import PSBTKIT_VERSION
from .simple_config import SimpleConfig
from . import bitcoin
from . import transaction
from . import psbt
from .transaction import Transaction, TxInput, TxOutput, TxOutpoint, SerializationError
from .psbt import (Packet, PInput, POutput, XPub, Unknown, PartialSig, Bip32Derivation,
                   InputState, PSBTError, combine_psbts)
from .finalizer import finalize_input, maybe_finalize_input, finalize_psbt, extract_transaction
from .updater import Updater
from .ecc import SignatureValidator
from .logging import get_logger


__version__ = PSBTKIT_VERSION
