# test_ratchets.py - Key pairs, symmetric ratchet and DH ratchet
import pytest

from whisper.core.dh_ratchet import DHRatchet
from whisper.core.kdf import kdf_chain_key, kdf_root_key
from whisper.core.keys import KeyPair, fingerprint
from whisper.core.symmetric_ratchet import SymmetricRatchet
from whisper.utils.error_handler import (
    CryptographicError, ErrorCode, InvalidParameterError, PreconditionViolation
)


def test_key_pair_exchange_is_symmetric(alice_keys, bob_keys):
    assert alice_keys.exchange(bob_keys.public_key) == bob_keys.exchange(alice_keys.public_key)


def test_key_pair_round_trip_and_copy(alice_keys):
    restored = KeyPair.from_private_bytes(alice_keys.secret_key)
    assert restored == alice_keys
    assert restored.public_key == alice_keys.public_key

    copied = alice_keys.copy()
    copied.wipe()
    assert copied.wiped
    assert not alice_keys.wiped


def test_wiped_key_pair_refuses_use(bob_keys):
    pair = KeyPair.generate()
    pair.wipe()
    with pytest.raises(CryptographicError):
        pair.secret_key
    with pytest.raises(CryptographicError):
        pair.exchange(bob_keys.public_key)


def test_key_pair_rejects_bad_lengths(alice_keys):
    with pytest.raises(CryptographicError) as exc_info:
        KeyPair(b"\x01" * 31)
    assert exc_info.value.error_code == ErrorCode.KEY_INVALID

    with pytest.raises(CryptographicError):
        alice_keys.exchange(b"\x01" * 16)


def test_exchange_with_low_order_point_fails(alice_keys):
    with pytest.raises(CryptographicError) as exc_info:
        alice_keys.exchange(b"\x00" * 32)
    assert exc_info.value.error_code == ErrorCode.DH_EXCHANGE_FAILED


def test_fingerprint_is_short_hex(alice_keys):
    assert fingerprint(alice_keys.public_key) == alice_keys.public_key[:6].hex()
    assert fingerprint(None) == "-"


def test_symmetric_ratchet_forward():
    """Message numbers are handed out before increment"""
    chain_key = b"\x03" * 32
    ratchet = SymmetricRatchet(chain_key)

    message_key, number = ratchet.ratchet_forward()
    expected_next, expected_mk = kdf_chain_key(chain_key)
    assert (message_key, number) == (expected_mk, 0)
    assert ratchet.chain_key == expected_next
    assert ratchet.message_number == 1

    _, number = ratchet.ratchet_forward()
    assert number == 1
    assert ratchet.message_number == 2


def test_symmetric_ratchets_stay_in_step():
    sender = SymmetricRatchet(b"\x04" * 32)
    receiver = SymmetricRatchet(b"\x04" * 32)
    for _ in range(10):
        assert sender.ratchet_forward() == receiver.ratchet_forward()
    assert sender == receiver


def test_symmetric_ratchet_copy_is_independent():
    ratchet = SymmetricRatchet(b"\x04" * 32, 5)
    snapshot = ratchet.copy()
    ratchet.ratchet_forward()
    assert snapshot.message_number == 5
    assert snapshot != ratchet


def test_symmetric_ratchet_validates_arguments():
    with pytest.raises(InvalidParameterError):
        SymmetricRatchet(b"\x04" * 31)
    with pytest.raises(InvalidParameterError):
        SymmetricRatchet(b"\x04" * 32, -1)


def test_dh_ratchet_send_requires_remote_key():
    ratchet = DHRatchet(b"\x01" * 32)
    assert not ratchet.has_remote_key
    with pytest.raises(PreconditionViolation):
        ratchet.ratchet_send()


def test_dh_ratchet_send_and_receive_agree(root_key, bob_keys):
    alice = DHRatchet(root_key, remote_public_key=bob_keys.public_key)
    bob = DHRatchet(root_key, bob_keys.copy())

    step = alice.ratchet_send()
    chain_key = bob.ratchet_receive(step.public_key)

    assert chain_key == step.chain_key
    assert alice.root_key == bob.root_key == step.root_key
    assert bob.remote_public_key == step.public_key


def test_dh_ratchet_send_rotates_and_wipes(root_key, alice_keys, bob_keys):
    old_pair = alice_keys.copy()
    ratchet = DHRatchet(root_key, old_pair, bob_keys.public_key)

    step = ratchet.ratchet_send()

    assert old_pair.wiped
    assert ratchet.local_key_pair.public_key == step.public_key
    assert step.public_key != alice_keys.public_key
    expected_root, expected_chain = kdf_root_key(
        root_key, ratchet.local_key_pair.exchange(bob_keys.public_key)
    )
    assert (step.root_key, step.chain_key) == (expected_root, expected_chain)


def test_dh_ratchet_receive_failure_leaves_state(root_key, alice_keys):
    ratchet = DHRatchet(root_key, alice_keys.copy())
    with pytest.raises(CryptographicError):
        ratchet.ratchet_receive(b"\x00" * 32)
    assert ratchet.root_key == root_key
    assert ratchet.remote_public_key is None


def test_dh_ratchet_validates_root_key():
    with pytest.raises(InvalidParameterError):
        DHRatchet(b"\x01" * 16)
