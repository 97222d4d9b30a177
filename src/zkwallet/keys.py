"""Mnemonic handling and shielded spending key derivation.

The spending key is a deterministic function of (seed, network kind) and
is recomputed on every unlock. It is never written to storage.
"""

import hashlib
import hmac

from bip_utils import (
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
)

from zkwallet.config import NetworkKind
from zkwallet.exceptions import InvalidMnemonic

# Order of the prime-order subgroup of BabyJubJub; spending keys live in Fs
SPENDING_KEY_ORDER = (
    2736030358979909402780800718157159386076813972158567259200215660948447373041
)

_WORDS = {
    12: Bip39WordsNum.WORDS_NUM_12,
    15: Bip39WordsNum.WORDS_NUM_15,
    18: Bip39WordsNum.WORDS_NUM_18,
    21: Bip39WordsNum.WORDS_NUM_21,
    24: Bip39WordsNum.WORDS_NUM_24,
}


def generate_mnemonic(words: int = 12) -> str:
    """Generate a new BIP-39 mnemonic."""
    if words not in _WORDS:
        raise ValueError(f"Unsupported mnemonic length: {words}")
    return str(Bip39MnemonicGenerator().FromWordsNumber(_WORDS[words]))


def normalize_mnemonic(mnemonic: str) -> str:
    """Collapse whitespace and lowercase a seed phrase."""
    return " ".join(mnemonic.strip().lower().split())


def validate_mnemonic(mnemonic: str) -> bool:
    """Check the BIP-39 checksum of a seed phrase."""
    if not mnemonic or not mnemonic.strip():
        return False
    try:
        return Bip39MnemonicValidator().IsValid(normalize_mnemonic(mnemonic))
    except Exception:
        return False


def derive_spending_key(mnemonic: str, network_kind: NetworkKind) -> int:
    """Derive the shielded spending key for a network kind.

    Raises:
        InvalidMnemonic: If the phrase fails checksum validation
    """
    if not validate_mnemonic(mnemonic):
        raise InvalidMnemonic("Seed phrase failed checksum validation")

    seed = Bip39SeedGenerator(normalize_mnemonic(mnemonic)).Generate()
    tag = f"zkwallet/spending-key/{NetworkKind.parse(network_kind).value}".encode()

    counter = 0
    while True:
        digest = hmac.new(tag, seed + counter.to_bytes(4, "big"), hashlib.sha512).digest()
        key = int.from_bytes(digest, "big") % SPENDING_KEY_ORDER
        if key:
            return key
        counter += 1


def account_id(spending_key: int, network_kind: NetworkKind) -> str:
    """Public identifier of a shielded account (safe to log and export)."""
    material = f"{NetworkKind.parse(network_kind).value}:{spending_key:064x}".encode()
    return hashlib.sha256(material).hexdigest()
