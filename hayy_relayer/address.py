"""
Address encoding utilities.

Supports:
- Stacks c32check addresses: SP... / SM... (mainnet), ST... / SN... (testnet)
- Bech32 payloads such as Sui ``suiprivkey1...`` private keys
"""

import hashlib
from typing import Tuple

# Stacks address versions
MAINNET_SINGLE_SIG = 22  # P
MAINNET_MULTI_SIG = 20  # M
TESTNET_SINGLE_SIG = 26  # T
TESTNET_MULTI_SIG = 21  # N

C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

# Bech32 character set
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


class AddressError(ValueError):
    """Malformed or unsupported address."""


def hash160(data: bytes) -> bytes:
    h = hashlib.sha256(data).digest()
    r = hashlib.new("ripemd160")
    r.update(h)
    return r.digest()


def _c32_checksum(version: int, data: bytes) -> bytes:
    payload = bytes([version]) + data
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]


def c32_encode(data: bytes) -> str:
    """Encode bytes with the Crockford-style c32 alphabet."""
    num = int.from_bytes(data, "big")
    chars = []
    while num > 0:
        num, rem = divmod(num, 32)
        chars.append(C32_ALPHABET[rem])
    # One leading '0' per leading zero byte
    leading = len(data) - len(data.lstrip(b"\x00"))
    return "0" * leading + "".join(reversed(chars))


def c32_decode(s: str) -> bytes:
    """Decode a c32 string back to bytes."""
    s = s.upper().replace("O", "0").replace("L", "1").replace("I", "1")
    num = 0
    for c in s:
        idx = C32_ALPHABET.find(c)
        if idx < 0:
            raise AddressError(f"invalid c32 character: {c!r}")
        num = num * 32 + idx

    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    leading = len(s) - len(s.lstrip("0"))
    return b"\x00" * leading + body


def c32_address(version: int, hash_bytes: bytes) -> str:
    """Build a Stacks address from a version and a 20-byte hash160."""
    if not 0 <= version < 32:
        raise AddressError(f"invalid address version: {version}")
    if len(hash_bytes) != 20:
        raise AddressError("address hash must be 20 bytes")
    encoded = c32_encode(hash_bytes + _c32_checksum(version, hash_bytes))
    return "S" + C32_ALPHABET[version] + encoded


def c32_address_decode(address: str) -> Tuple[int, bytes]:
    """
    Decode a standard Stacks principal.

    Returns:
        (version, hash160)

    Raises:
        AddressError: if the address is malformed or its checksum is wrong
    """
    if len(address) < 5 or not address.startswith("S"):
        raise AddressError(f"not a Stacks address: {address}")

    version = C32_ALPHABET.find(address[1].upper())
    if version < 0:
        raise AddressError(f"invalid address version character in {address}")

    data = c32_decode(address[2:])
    if len(data) < 24:
        data = b"\x00" * (24 - len(data)) + data
    if len(data) != 24:
        raise AddressError(f"invalid address length: {address}")

    hash_bytes, checksum = data[:20], data[20:]
    if checksum != _c32_checksum(version, hash_bytes):
        raise AddressError(f"bad address checksum: {address}")
    return version, hash_bytes


def is_stacks_address(address: str) -> bool:
    try:
        c32_address_decode(address)
    except AddressError:
        return False
    return True


def bech32_polymod(values: list[int]) -> int:
    """Internal function for Bech32 checksum computation."""
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for checksum computation."""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def convert_bits(data: list[int], frombits: int, tobits: int, pad: bool) -> list[int] | None:
    """Convert between bit widths."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def bech32_decode_bytes(value: str) -> Tuple[str, bytes]:
    """
    Decode a plain (non-segwit) Bech32 string.

    Unlike segwit addresses there is no witness version; every 5-bit group
    after the separator belongs to the payload.

    Returns:
        (hrp, payload)
    """
    if value.lower() != value and value.upper() != value:
        raise AddressError("mixed-case bech32 string")
    value = value.lower()

    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value):
        raise AddressError("bech32 separator missing or misplaced")

    hrp = value[:pos]
    data = []
    for c in value[pos + 1:]:
        if c not in BECH32_CHARSET:
            raise AddressError(f"invalid bech32 character: {c!r}")
        data.append(BECH32_CHARSET.index(c))

    if bech32_polymod(bech32_hrp_expand(hrp) + data) != 1:
        raise AddressError("bech32 checksum mismatch")

    converted = convert_bits(data[:-6], 5, 8, False)
    if converted is None:
        raise AddressError("invalid bech32 padding")
    return hrp, bytes(converted)
