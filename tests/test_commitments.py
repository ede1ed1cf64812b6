import pytest
from eth_utils import keccak

from eligibility_relayer import commitments
from eligibility_relayer.errors import InputValidation, InvalidIdentity


SALT = bytes(range(32))


def test_leaf_matches_packed_keccak_encoding():
    leaf = commitments.derive_leaf("30111222", SALT)
    expected = keccak(SALT + keccak(b"30111222"))
    assert leaf == expected
    assert len(leaf) == 32


def test_leaf_is_deterministic_and_accepts_hex_salt():
    a = commitments.derive_leaf("30111222", SALT)
    b = commitments.derive_leaf("30111222", "0x" + SALT.hex())
    assert a == b


def test_leaf_depends_on_salt_and_identity():
    base = commitments.derive_leaf("30111222", SALT)
    assert commitments.derive_leaf("30111223", SALT) != base
    assert commitments.derive_leaf("30111222", bytes(32)) != base


def test_identity_is_utf8_encoded():
    leaf = commitments.derive_leaf("Peña", SALT)
    assert leaf == keccak(SALT + keccak("Peña".encode("utf-8")))


@pytest.mark.parametrize("identity", ["", "   ", None, 12345])
def test_empty_or_non_string_identity_rejected(identity):
    with pytest.raises(InvalidIdentity):
        commitments.derive_leaf(identity, SALT)


@pytest.mark.parametrize("salt", [b"short", "0x1234", "not-hex", bytes(33)])
def test_bad_salt_rejected(salt):
    with pytest.raises(InputValidation):
        commitments.derive_leaf("30111222", salt)


def test_nullifier_matches_packed_uint256_encoding():
    leaf = commitments.derive_leaf("30111222", SALT)
    nullifier = commitments.derive_nullifier(7, "30111222", SALT)
    assert nullifier == keccak((7).to_bytes(32, "big") + leaf)
    assert commitments.nullifier_from_leaf(7, leaf) == nullifier


def test_nullifier_deterministic():
    a = commitments.derive_nullifier(3, "30111222", SALT)
    b = commitments.derive_nullifier(3, "30111222", SALT)
    assert a == b


def test_nullifiers_unrelated_across_elections():
    leaf = commitments.derive_leaf("30111222", SALT)
    values = [commitments.derive_nullifier(eid, "30111222", SALT) for eid in range(1, 6)]
    assert len(set(values)) == len(values)
    for i, a in enumerate(values):
        assert a != leaf
        for b in values[i + 1:]:
            assert a[:8] != b[:8]
            assert a[-8:] != b[-8:]


@pytest.mark.parametrize("election_id", [-1, "1", 1.0, True])
def test_bad_election_id_rejected(election_id):
    with pytest.raises(InputValidation):
        commitments.derive_nullifier(election_id, "30111222", SALT)


def test_to_bytes32_round_trip_hex():
    value = commitments.to_bytes32("0x" + "ab" * 32)
    assert value == bytes([0xAB]) * 32
    assert commitments.to_hex(value) == "0x" + "ab" * 32
