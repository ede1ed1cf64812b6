"""Leaf and nullifier derivation.

All hashes are Ethereum keccak256 over Solidity `abi.encodePacked` encodings,
so the values match what the ballot contract recomputes on-chain:

- identity_hash = keccak(utf8(identity_key))
- leaf          = keccak(salt ‖ identity_hash)
- nullifier     = keccak(uint256(election_id) ‖ leaf)
"""

from typing import Union

from eth_utils import decode_hex, encode_hex, keccak
from web3 import Web3

from .errors import InputValidation, InvalidIdentity


HASH_SIZE = 32

Bytes32Like = Union[bytes, bytearray, str]


def to_bytes32(value: Bytes32Like, what: str = "value") -> bytes:
    """Normalise a 32-byte value given as bytes or a 0x-prefixed hex string."""
    if isinstance(value, str):
        try:
            value = decode_hex(value)
        except (ValueError, TypeError):
            raise InputValidation(f"{what} is not valid hex") from None
    if not isinstance(value, (bytes, bytearray)):
        raise InputValidation(f"{what} must be bytes or hex")
    if len(value) != HASH_SIZE:
        raise InputValidation(f"{what} must be {HASH_SIZE} bytes, got {len(value)}")
    return bytes(value)


def to_hex(value: bytes) -> str:
    return encode_hex(value)


def identity_hash(identity_key: str) -> bytes:
    if not isinstance(identity_key, str) or not identity_key.strip():
        raise InvalidIdentity("identity key must be a non-empty string")
    # utf-8 only; never locale dependent
    return keccak(identity_key.encode("utf-8"))


def derive_leaf(identity_key: str, salt: Bytes32Like) -> bytes:
    """Derive the voter's public membership commitment.

    Args
    - identity_key: opaque identity (e.g. national id) as verified by the registry
    - salt: per-voter secret salt returned by the registry after a match

    Returns: the 32-byte leaf
    """
    salt32 = to_bytes32(salt, "salt")
    return bytes(Web3.solidity_keccak(["bytes32", "bytes32"], [salt32, identity_hash(identity_key)]))


def nullifier_from_leaf(election_id: int, leaf: Bytes32Like) -> bytes:
    if not isinstance(election_id, int) or isinstance(election_id, bool) or election_id < 0:
        raise InputValidation("election id must be a non-negative integer")
    return bytes(Web3.solidity_keccak(["uint256", "bytes32"], [election_id, to_bytes32(leaf, "leaf")]))


def derive_nullifier(election_id: int, identity_key: str, salt: Bytes32Like) -> bytes:
    """Per-election one-time token the ledger uses to reject a second vote.

    The same voter gets an unrelated value in every election since the election
    id is hashed in front of the leaf.
    """
    return nullifier_from_leaf(election_id, derive_leaf(identity_key, salt))
