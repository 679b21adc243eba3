"""
Stacks contract-call transactions.

Builds the SIP-005 wire format for a single-sig, standard-auth contract
call and signs it:

    version(1) chain_id(4) auth payload

    auth (standard, P2PKH spending condition):
        0x04 hash_mode(1) signer(20) nonce(8) fee(8) key_encoding(1) signature(65)

    then: anchor_mode(1) post_condition_mode(1) post_conditions(len 4 + items)

    payload (contract call):
        0x02 address_version(1) address_hash(20)
        contract_name(len 1 + ascii) function_name(len 1 + ascii)
        args(len 4 + clarity values)

The signature covers a "presign" hash that commits to the transaction with
its auth fields cleared, the auth type, the fee and the nonce.
"""

import hashlib
from dataclasses import dataclass, field, replace

from .address import c32_address_decode, hash160
from .signer import StacksSigner

TX_VERSION = {"mainnet": 0x00, "testnet": 0x80}
CHAIN_ID = {"mainnet": 0x00000001, "testnet": 0x80000000}

AUTH_STANDARD = 0x04
HASH_MODE_P2PKH = 0x00
KEY_ENCODING_COMPRESSED = 0x00
KEY_ENCODING_UNCOMPRESSED = 0x01

ANCHOR_MODE_ANY = 0x03
POST_CONDITION_MODE_ALLOW = 0x01

PAYLOAD_CONTRACT_CALL = 0x02

EMPTY_SIGNATURE = b"\x00" * 65


def sha512_256(data: bytes) -> bytes:
    return hashlib.new("sha512_256", data).digest()


def _length_prefixed_name(name: str) -> bytes:
    encoded = name.encode("ascii")
    if not 0 < len(encoded) <= 128:
        raise ValueError(f"invalid clarity name: {name!r}")
    return bytes([len(encoded)]) + encoded


@dataclass
class ContractCallTransaction:
    """An unsigned or signed contract-call transaction."""

    network: str
    contract_address: str
    contract_name: str
    function_name: str
    function_args: list[bytes]
    public_key: bytes
    nonce: int
    fee: int
    signature: bytes = field(default=EMPTY_SIGNATURE)

    @property
    def key_encoding(self) -> int:
        return KEY_ENCODING_COMPRESSED if len(self.public_key) == 33 else KEY_ENCODING_UNCOMPRESSED

    def serialize(self) -> bytes:
        if self.network not in TX_VERSION:
            raise ValueError(f"unknown Stacks network: {self.network}")

        out = bytearray()
        out.append(TX_VERSION[self.network])
        out += CHAIN_ID[self.network].to_bytes(4, "big")

        out.append(AUTH_STANDARD)
        out.append(HASH_MODE_P2PKH)
        out += hash160(self.public_key)
        out += self.nonce.to_bytes(8, "big")
        out += self.fee.to_bytes(8, "big")
        out.append(self.key_encoding)
        out += self.signature

        out.append(ANCHOR_MODE_ANY)
        out.append(POST_CONDITION_MODE_ALLOW)
        out += (0).to_bytes(4, "big")

        version, address_hash = c32_address_decode(self.contract_address)
        out.append(PAYLOAD_CONTRACT_CALL)
        out.append(version)
        out += address_hash
        out += _length_prefixed_name(self.contract_name)
        out += _length_prefixed_name(self.function_name)
        out += len(self.function_args).to_bytes(4, "big")
        for arg in self.function_args:
            out += arg
        return bytes(out)

    def txid(self) -> str:
        return sha512_256(self.serialize()).hex()

    def presign_hash(self) -> bytes:
        """Digest the signer commits to."""
        cleared = replace(self, nonce=0, fee=0, signature=EMPTY_SIGNATURE)
        sighash = sha512_256(cleared.serialize())
        return sha512_256(
            sighash
            + bytes([AUTH_STANDARD])
            + self.fee.to_bytes(8, "big")
            + self.nonce.to_bytes(8, "big")
        )

    def sign(self, signer: StacksSigner) -> "ContractCallTransaction":
        if signer.public_key != self.public_key:
            raise ValueError("signer does not match the transaction's public key")
        self.signature = signer.sign_digest(self.presign_hash())
        return self


def make_contract_call(
    signer: StacksSigner,
    contract_id: str,
    function_name: str,
    function_args: list[bytes],
    nonce: int,
    fee: int,
) -> ContractCallTransaction:
    """Build and sign a contract call from ``signer``'s account."""
    contract_address, _, contract_name = contract_id.partition(".")
    if not contract_name:
        raise ValueError(f"contract id must be ADDRESS.name: {contract_id}")

    tx = ContractCallTransaction(
        network=signer.network,
        contract_address=contract_address,
        contract_name=contract_name,
        function_name=function_name,
        function_args=function_args,
        public_key=signer.public_key,
        nonce=nonce,
        fee=fee,
    )
    return tx.sign(signer)
