# test_double_ratchet.py - Double Ratchet session behaviour
import json

import pytest

from whisper.core.double_ratchet import MAX_SKIP, DoubleRatchetSession, EncryptedMessage, Header
from whisper.core.session_state import PendingAgreement, SessionState
from whisper.utils.error_handler import (
    AuthenticationFailure, DuplicateMessage, InvalidParameterError, MalformedHeader,
    PreconditionViolation, SkippedKeyLimitExceeded, StateCorruption
)


@pytest.fixture
def sessions(root_key, alice_keys, bob_keys):
    alice = DoubleRatchetSession(root_key, alice_keys, bob_keys.public_key, is_initiator=True)
    bob = DoubleRatchetSession(root_key, bob_keys, None, is_initiator=False)
    return alice, bob


def deliver(session, message: EncryptedMessage, associated_data=b""):
    return session.decrypt(message.ciphertext, message.mac, message.header, associated_data)


def flip_bit(data: bytes, bit: int) -> bytes:
    out = bytearray(data)
    out[bit // 8] ^= 1 << (bit % 8)
    return bytes(out)


def test_end_to_end_conversation(sessions, alice_keys):
    """Alice opens, Bob replies, Alice continues on a fresh DH key"""
    alice, bob = sessions

    first = alice.encrypt("Hello Bob!")
    assert first.header.message_number == 0
    assert first.header.previous_chain_length == 0
    assert first.header.dh_public_key != alice_keys.public_key
    assert deliver(bob, first) == b"Hello Bob!"

    reply = bob.encrypt("Hi Alice!")
    assert reply.header.message_number == 0
    assert reply.header.previous_chain_length == 0
    assert deliver(alice, reply) == b"Hi Alice!"

    third = alice.encrypt("How are you?")
    assert third.header.dh_public_key != first.header.dh_public_key
    assert third.header.message_number == 0
    assert third.header.previous_chain_length == 1
    assert deliver(bob, third) == b"How are you?"

    assert alice.dh_ratchet.root_key == bob.dh_ratchet.root_key


def test_unidirectional_stream(sessions):
    alice, bob = sessions
    for i in range(20):
        message = alice.encrypt(f"message {i}")
        assert message.header.message_number == i
        assert deliver(bob, message) == f"message {i}".encode()


def test_ping_pong_turns(sessions):
    alice, bob = sessions
    keys_seen = set()
    for turn in range(6):
        sender, receiver = (alice, bob) if turn % 2 == 0 else (bob, alice)
        for i in range(3):
            message = sender.encrypt(f"turn {turn} #{i}")
            keys_seen.add(message.header.dh_public_key)
            assert deliver(receiver, message) == f"turn {turn} #{i}".encode()
    # A new DH key for every change of speaker
    assert len(keys_seen) == 6


def test_bytes_and_empty_plaintext(sessions):
    alice, bob = sessions
    assert deliver(bob, alice.encrypt(b"\x00\xffraw")) == b"\x00\xffraw"
    assert deliver(bob, alice.encrypt(b"")) == b""
    with pytest.raises(InvalidParameterError):
        alice.encrypt(42)


def test_out_of_order_then_replay(sessions):
    alice, bob = sessions
    messages = [alice.encrypt(f"m{i}") for i in range(3)]

    assert deliver(bob, messages[2]) == b"m2"
    assert len(bob.skipped_message_keys) == 2
    assert deliver(bob, messages[0]) == b"m0"
    assert deliver(bob, messages[1]) == b"m1"
    assert bob.skipped_message_keys == {}

    with pytest.raises(DuplicateMessage):
        deliver(bob, messages[0])


def test_late_message_from_previous_chain(sessions):
    alice, bob = sessions
    a0, a1 = alice.encrypt("a0"), alice.encrypt("a1")
    assert deliver(bob, a0) == b"a0"

    assert deliver(alice, bob.encrypt("b0")) == b"b0"

    a2 = alice.encrypt("a2")
    assert a2.header.previous_chain_length == 2
    assert deliver(bob, a2) == b"a2"
    assert (a1.header.dh_public_key, 1) in bob.skipped_message_keys

    assert deliver(bob, a1) == b"a1"
    assert bob.skipped_message_keys == {}


def test_replay_from_old_chain_is_rejected(sessions):
    alice, bob = sessions
    first = alice.encrypt("first")
    deliver(bob, first)
    deliver(alice, bob.encrypt("reply"))
    deliver(bob, alice.encrypt("second"))

    before = bob.to_state()
    with pytest.raises(AuthenticationFailure):
        deliver(bob, first)
    assert bob.to_state() == before


def test_skip_limit(root_key, alice_keys, bob_keys):
    alice = DoubleRatchetSession(root_key, alice_keys, bob_keys.public_key, True)
    bob = DoubleRatchetSession(root_key, bob_keys, None, False, max_skip=5)
    messages = [alice.encrypt(f"m{i}") for i in range(8)]

    before = bob.to_state()
    with pytest.raises(SkippedKeyLimitExceeded):
        deliver(bob, messages[6])
    assert bob.to_state() == before

    assert deliver(bob, messages[5]) == b"m5"
    assert len(bob.skipped_message_keys) == 5


def test_default_skip_limit():
    assert MAX_SKIP == 1000


def test_tampered_ciphertext_and_mac_are_rejected(sessions):
    alice, bob = sessions
    message = alice.encrypt("Hello Bob!")
    before = bob.to_state()

    for bit in range(len(message.ciphertext) * 8):
        with pytest.raises(AuthenticationFailure):
            bob.decrypt(flip_bit(message.ciphertext, bit), message.mac, message.header)
    for bit in range(0, len(message.mac) * 8, 3):
        with pytest.raises(AuthenticationFailure):
            bob.decrypt(message.ciphertext, flip_bit(message.mac, bit), message.header)

    assert bob.to_state() == before
    assert deliver(bob, message) == b"Hello Bob!"


def test_tampered_header_is_rejected(sessions):
    alice, bob = sessions
    deliver(bob, alice.encrypt("warm up"))
    message = alice.encrypt("Hello again")
    header = message.header
    before = bob.to_state()

    tampered_headers = [
        Header(flip_bit(header.dh_public_key, bit), header.message_number, header.previous_chain_length)
        for bit in range(0, 256, 7)
    ]
    tampered_headers += [
        Header(header.dh_public_key, header.message_number + 1, header.previous_chain_length),
        Header(header.dh_public_key, header.message_number + 3, header.previous_chain_length),
        Header(header.dh_public_key, header.message_number, header.previous_chain_length + 1),
    ]
    for bad in tampered_headers:
        with pytest.raises(AuthenticationFailure):
            bob.decrypt(message.ciphertext, message.mac, bad)
        assert bob.to_state() == before

    assert deliver(bob, message) == b"Hello again"


def test_associated_data_is_authenticated(sessions):
    alice, bob = sessions
    message = alice.encrypt("bound", associated_data=b"alice->bob")
    with pytest.raises(AuthenticationFailure):
        deliver(bob, message, b"mallory->bob")
    assert deliver(bob, message, b"alice->bob") == b"bound"


def test_responder_cannot_send_first(sessions):
    _, bob = sessions
    with pytest.raises(PreconditionViolation):
        bob.encrypt("too early")


def test_decrypt_validates_inputs(sessions):
    alice, bob = sessions
    message = alice.encrypt("x")
    with pytest.raises(MalformedHeader):
        bob.decrypt(message.ciphertext, message.mac, message.header.serialize())
    with pytest.raises(MalformedHeader):
        bob.decrypt(message.ciphertext, message.mac, Header(b"\x01" * 31, 0, 0))
    with pytest.raises(InvalidParameterError):
        bob.decrypt(message.ciphertext.hex(), message.mac, message.header)


def test_state_round_trip_across_ratchet_steps(sessions):
    """Persisted state is byte-exact after a DH step and a symmetric step"""
    alice, bob = sessions
    deliver(bob, alice.encrypt("one"))
    deliver(alice, bob.encrypt("two"))
    skipped = [alice.encrypt("three"), alice.encrypt("four")]
    deliver(bob, skipped[1])

    for session in (alice, bob):
        state = session.to_state()
        document = json.loads(json.dumps(state.to_dict()))
        assert SessionState.from_dict(document) == state

    restored = DoubleRatchetSession.from_state(SessionState.from_dict(bob.to_state().to_dict()))
    assert restored.to_state() == bob.to_state()
    assert deliver(restored, skipped[0]) == b"three"
    assert deliver(alice, restored.encrypt("five")) == b"five"


def test_from_state_rejects_inconsistent_key_pair(sessions, make_key_pair):
    alice, _ = sessions
    document = alice.to_state().to_dict()
    document["dhRatchet"]["localKeyPair"]["publicKey"] = list(make_key_pair(7).public_key)
    with pytest.raises(StateCorruption):
        DoubleRatchetSession.from_state(SessionState.from_dict(document))


def test_header_wire_and_canonical_forms():
    header = Header(bytes(range(32)), 3, 7)
    expected = '{"dhPublicKey":[%s],"messageNumber":3,"previousChainLength":7}' % ",".join(
        str(i) for i in range(32)
    )
    assert header.canonical_bytes() == expected.encode()
    assert Header.deserialize(header.serialize()) == header
    assert "=" not in header.serialize()["dhPublicKey"]


@pytest.mark.parametrize("wire", [
    {"dhPublicKey": "AAAA", "messageNumber": 0, "previousChainLength": 0},
    {"messageNumber": 0, "previousChainLength": 0},
    {"dhPublicKey": "!!not base64!!", "messageNumber": 0, "previousChainLength": 0},
    {"dhPublicKey": "AQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQE", "messageNumber": -1, "previousChainLength": 0},
    {"dhPublicKey": "AQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQE", "messageNumber": True, "previousChainLength": 0},
    {"dhPublicKey": "AQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQEBAQE", "messageNumber": 0, "previousChainLength": "1"},
    "not a header",
])
def test_malformed_wire_headers(wire):
    with pytest.raises(MalformedHeader):
        Header.deserialize(wire)


def test_previous_chain_length_counts_own_sending_chain(sessions):
    """After sending 3 and receiving 1, the next header reports 3"""
    alice, bob = sessions
    for i in range(3):
        deliver(bob, alice.encrypt(f"a{i}"))
    deliver(alice, bob.encrypt("b0"))

    header = alice.encrypt("a3").header
    assert header.message_number == 0
    assert header.previous_chain_length == 3


def test_pending_agreement_persists_until_first_decrypt(sessions):
    alice, bob = sessions
    alice.pending_agreement = PendingAgreement(b"\x05" * 32, b"\x06" * 16)

    message = alice.encrypt("hello")
    state = alice.to_state()
    assert state.to_dict()["pendingAgreement"]["keyConfirmation"] == [6] * 16
    restored = DoubleRatchetSession.from_state(SessionState.from_dict(state.to_dict()))
    assert restored.pending_agreement == alice.pending_agreement

    deliver(bob, message)
    reply = bob.encrypt("reply")
    with pytest.raises(AuthenticationFailure):
        restored.decrypt(reply.ciphertext, flip_bit(reply.mac, 0), reply.header)
    assert restored.pending_agreement is not None

    deliver(restored, reply)
    assert restored.pending_agreement is None
    assert restored.to_state().to_dict()["pendingAgreement"] is None


def test_state_without_pending_agreement_field_loads(sessions):
    alice, _ = sessions
    document = alice.to_state().to_dict()
    del document["pendingAgreement"]
    assert SessionState.from_dict(document).pending_agreement is None

    document["pendingAgreement"] = {"ephemeralPublicKey": [1] * 32, "keyConfirmation": [2] * 15}
    with pytest.raises(StateCorruption):
        SessionState.from_dict(document)
