"""
Signing keys for the two chains the relayer writes to.

Stacks: secp256k1 (coincurve), recoverable signatures in the
``recid || r || s`` layout Stacks transactions carry.

Sui: Ed25519 (PyNaCl). Transactions are signed over
``blake2b-256(intent || tx_bytes)`` and submitted as
``base64(flag || signature || public_key)``.
"""

import base64
import hashlib
import re

from coincurve import PrivateKey
from nacl.signing import SigningKey

from .address import (
    MAINNET_SINGLE_SIG,
    TESTNET_SINGLE_SIG,
    AddressError,
    bech32_decode_bytes,
    c32_address,
    hash160,
)

HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class KeyFormatError(ValueError):
    """A private key string could not be decoded."""


class StacksSigner:
    """
    secp256k1 signing key for the relayer's Stacks account.

    Keys exported by Stacks wallets are 33 bytes of hex with a trailing
    ``01`` meaning "use the compressed public key". A bare 32-byte key
    uses the uncompressed public key.
    """

    def __init__(self, private_key_hex: str, network: str = "testnet"):
        key = private_key_hex.strip()
        if key.startswith("0x"):
            key = key[2:]
        if not HEX_RE.match(key) or len(key) not in (64, 66):
            raise KeyFormatError("Stacks private key must be 32 bytes of hex, optionally suffixed with 01")
        if len(key) == 66 and not key.endswith("01"):
            raise KeyFormatError("33-byte Stacks private key must end with the 01 compression flag")

        self.compressed = len(key) == 66
        self.network = network
        self._key = PrivateKey(bytes.fromhex(key[:64]))

    @property
    def public_key(self) -> bytes:
        return self._key.public_key.format(compressed=self.compressed)

    @property
    def address(self) -> str:
        version = MAINNET_SINGLE_SIG if self.network == "mainnet" else TESTNET_SINGLE_SIG
        return c32_address(version, hash160(self.public_key))

    def sign_digest(self, digest: bytes) -> bytes:
        """
        Sign a 32-byte digest.

        Returns:
            65 bytes: recovery id, r, s
        """
        if len(digest) != 32:
            raise ValueError("digest must be 32 bytes")
        signature = self._key.sign_recoverable(digest, hasher=None)
        # coincurve returns r || s || recid
        return signature[64:] + signature[:64]


# Sui signature scheme flags
ED25519_FLAG = 0x00

# TransactionData intent: scope 0, version 0, app id 0
TRANSACTION_INTENT = bytes([0, 0, 0])

SUI_PRIVATE_KEY_PREFIX = "suiprivkey"


def _blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class SuiKeypair:
    """Ed25519 keypair for the relayer's Sui account."""

    def __init__(self, seed: bytes):
        if len(seed) != 32:
            raise KeyFormatError("Ed25519 seed must be 32 bytes")
        self._signing_key = SigningKey(seed)

    @classmethod
    def from_private_key(cls, value: str) -> "SuiKeypair":
        """
        Decode a Sui private key.

        Accepted formats:
        - ``suiprivkey1...`` (bech32, flag byte + 32-byte seed)
        - ``0x`` + 64 hex chars
        - base64 of the 32-byte seed or of flag + seed (sui.keystore)
        """
        value = value.strip()

        if value.startswith(SUI_PRIVATE_KEY_PREFIX):
            try:
                hrp, payload = bech32_decode_bytes(value)
            except AddressError as e:
                raise KeyFormatError(f"invalid suiprivkey: {e}") from e
            if hrp != SUI_PRIVATE_KEY_PREFIX or len(payload) != 33:
                raise KeyFormatError("invalid suiprivkey payload")
            return cls._from_flagged(payload)

        if value.startswith("0x"):
            raw = value[2:]
            if not HEX_RE.match(raw) or len(raw) != 64:
                raise KeyFormatError("hex Sui private key must be 32 bytes")
            return cls(bytes.fromhex(raw))

        try:
            decoded = base64.b64decode(value, validate=True)
        except ValueError as e:
            raise KeyFormatError("unrecognised Sui private key format") from e
        if len(decoded) == 33:
            return cls._from_flagged(decoded)
        if len(decoded) == 32:
            return cls(decoded)
        raise KeyFormatError("unrecognised Sui private key format")

    @classmethod
    def _from_flagged(cls, payload: bytes) -> "SuiKeypair":
        if payload[0] != ED25519_FLAG:
            raise KeyFormatError(f"unsupported Sui key scheme flag: {payload[0]}")
        return cls(payload[1:])

    @property
    def public_key(self) -> bytes:
        return bytes(self._signing_key.verify_key)

    @property
    def address(self) -> str:
        return "0x" + _blake2b256(bytes([ED25519_FLAG]) + self.public_key).hex()

    def sign_transaction(self, tx_bytes: bytes) -> str:
        """
        Sign BCS-encoded TransactionData.

        Returns:
            Serialized signature for ``sui_executeTransactionBlock``
        """
        digest = _blake2b256(TRANSACTION_INTENT + tx_bytes)
        signature = self._signing_key.sign(digest).signature
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode("ascii")
