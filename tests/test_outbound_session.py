# test_outbound_session.py - Session lifecycle, encrypt, pickle and release
import pickle as native_pickle
import threading

import pytest

import group_ratchet
from group_ratchet import OutboundGroupSession, SessionConfig
from group_ratchet.core import outbound_session as session_module
from group_ratchet.core.ratchet import Ratchet
from group_ratchet.utils.encoding import b64, ub64
from group_ratchet.utils.error_handler import (
    EncryptionInputTooLarge, ErrorCode, ErrorHandler, InitializationFailure, InvalidPassphrase,
    MessageError, SessionExhausted, UnpickleAuthenticationFailure, UnpickleFormatError, UseAfterRelease
)
from group_ratchet.utils.session_codec import SessionCodec


def test_new_session_starts_at_zero(session):
    assert session.message_index() == 0
    assert not session.is_released()


def test_index_counts_encrypts(session):
    indices = [session.message_index()]
    for n in range(1, 6):
        session.encrypt_message(f"message {n}")
        indices.append(session.message_index())
    assert indices == [0, 1, 2, 3, 4, 5]


def test_first_message_carries_index_zero(session, inbound_decrypt):
    key = session.session_key()
    plaintext, index = inbound_decrypt(key, session.encrypt_message(b"first"))
    assert (plaintext, index) == (b"first", 0)


def test_session_id_is_public_key(session):
    sid = session.session_identifier()
    export = SessionCodec().import_session_key(session.session_key())
    assert ub64(sid) == export.public_key
    session.encrypt_message("x")
    assert session.session_identifier() == sid


def test_independent_sessions_differ(fast_config, quiet_handler):
    a = OutboundGroupSession(fast_config, quiet_handler)
    b = OutboundGroupSession(fast_config, quiet_handler)
    assert a.session_identifier() != b.session_identifier()
    assert a.session_key() != b.session_key()


def test_identical_injected_state_gives_identical_envelopes(make_fixed_session):
    a = make_fixed_session()
    b = make_fixed_session()
    assert a.encrypt_message("same") == b.encrypt_message("same")
    assert a.encrypt_message("again") == b.encrypt_message("again")


def test_pickle_scenario(session, inbound_decrypt, fast_config, quiet_handler):
    key = session.session_key()
    session.encrypt_message("hello")
    assert session.message_index() == 1

    blob = session.pickle("pw")
    restored = OutboundGroupSession.unpickle(blob, "pw", fast_config, quiet_handler)
    message = restored.encrypt_message("world")

    assert inbound_decrypt(key, message) == (b"world", 1)


def test_unpickled_session_continues_identically(session, fast_config, quiet_handler):
    session.encrypt_message("warm up")
    blob = session.pickle(b"secret")
    restored = OutboundGroupSession.unpickle(blob, b"secret", fast_config, quiet_handler)

    assert restored.message_index() == session.message_index()
    assert restored.session_identifier() == session.session_identifier()
    for text in ("one", "two", "three"):
        assert restored.encrypt_message(text) == session.encrypt_message(text)


def test_unpickle_wrong_passphrase(session, fast_config, quiet_handler):
    blob = session.pickle("right")
    with pytest.raises(UnpickleAuthenticationFailure):
        OutboundGroupSession.unpickle(blob, "wrong", fast_config, quiet_handler)


def test_unpickle_tampered_blob(session, fast_config, quiet_handler):
    raw = bytearray(ub64(session.pickle("pw")))
    raw[40] ^= 0x01
    with pytest.raises(UnpickleAuthenticationFailure):
        OutboundGroupSession.unpickle(b64(bytes(raw)), "pw", fast_config, quiet_handler)


def test_unpickle_unknown_version(session, fast_config, quiet_handler):
    raw = bytearray(ub64(session.pickle("pw")))
    raw[0] = 9
    with pytest.raises(UnpickleFormatError):
        OutboundGroupSession.unpickle(b64(bytes(raw)), "pw", fast_config, quiet_handler)


@pytest.mark.parametrize("blob", ["not base64!", "", b64(b"\x01" + bytes(10))])
def test_unpickle_garbage(blob, fast_config, quiet_handler):
    with pytest.raises(UnpickleFormatError):
        OutboundGroupSession.unpickle(blob, "pw", fast_config, quiet_handler)


@pytest.mark.parametrize("passphrase", ["", b"", None, 1234])
def test_pickle_rejects_bad_passphrase(session, passphrase):
    with pytest.raises(InvalidPassphrase):
        session.pickle(passphrase)


def test_unpickle_rejects_empty_passphrase(session, fast_config, quiet_handler):
    blob = session.pickle("pw")
    with pytest.raises(InvalidPassphrase):
        OutboundGroupSession.unpickle(blob, "", fast_config, quiet_handler)


def test_exhausted_session(fast_config, quiet_handler):
    config = SessionConfig(max_message_index=2, pbkdf2_iterations=fast_config.pbkdf2_iterations)
    s = OutboundGroupSession(config, quiet_handler)
    s.encrypt_message("a")
    s.encrypt_message("b")
    key_before = s.session_key()

    for _ in range(2):
        with pytest.raises(SessionExhausted):
            s.encrypt_message("c")
    assert s.message_index() == 2
    assert s.session_key() == key_before


def test_plaintext_too_large(fast_config, quiet_handler):
    config = SessionConfig(max_plaintext_length=4, pbkdf2_iterations=fast_config.pbkdf2_iterations)
    s = OutboundGroupSession(config, quiet_handler)
    with pytest.raises(EncryptionInputTooLarge):
        s.encrypt_message("too long")
    assert s.message_index() == 0


@pytest.mark.parametrize("plaintext", [5, None])
def test_non_text_plaintext_is_rejected_and_logged(fast_config, plaintext):
    handler = ErrorHandler(enable_logging=False)
    s = OutboundGroupSession(fast_config, handler)
    with pytest.raises(MessageError) as excinfo:
        s.encrypt_message(plaintext)
    assert excinfo.value.error_code == ErrorCode.INVALID_PARAMETER
    assert s.message_index() == 0
    assert handler.get_error_statistics()['error_counts'] == {'MessageError': 1}


def test_release_erases_and_blocks_use(session):
    ratchet = session._ratchet
    session.release_session()
    assert session.is_released()
    assert ratchet.is_erased()

    for call in (session.message_index, session.session_key, session.session_identifier):
        with pytest.raises(UseAfterRelease):
            call()
    with pytest.raises(UseAfterRelease):
        session.encrypt_message("x")
    with pytest.raises(UseAfterRelease):
        session.pickle("pw")


def test_release_is_idempotent(session):
    session.release_session()
    session.release_session()
    assert session.is_released()


def test_context_manager_releases(fast_config, quiet_handler):
    with OutboundGroupSession(fast_config, quiet_handler) as s:
        s.encrypt_message("inside")
    assert s.is_released()


def test_failed_signing_key_erases_ratchet(monkeypatch, quiet_handler):
    created = []
    real_create = Ratchet.create

    def tracking_create(*args, **kwargs):
        r = real_create(*args, **kwargs)
        created.append(r)
        return r

    def broken_generate():
        raise InitializationFailure("no signing backend")

    monkeypatch.setattr(session_module.Ratchet, "create", staticmethod(tracking_create))
    monkeypatch.setattr(session_module.SigningKeypair, "generate", staticmethod(broken_generate))

    with pytest.raises(InitializationFailure):
        OutboundGroupSession(error_handler=quiet_handler)
    assert len(created) == 1
    assert created[0].is_erased()


def test_native_pickle_round_trip(session):
    session.encrypt_message("before")
    restored = native_pickle.loads(native_pickle.dumps(session))
    assert restored.message_index() == 1
    assert restored.encrypt_message("after") == session.encrypt_message("after")
    assert restored.config == session.config


def test_native_pickle_of_released_session(session):
    session.release_session()
    with pytest.raises(UseAfterRelease):
        native_pickle.dumps(session)


def test_concurrent_encrypts_never_share_an_index(session):
    envelopes = []
    lock = threading.Lock()

    def worker():
        for _ in range(25):
            envelope = session.encrypt_envelope(b"concurrent")
            with lock:
                envelopes.append(envelope.message_index)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert session.message_index() == 100
    assert sorted(envelopes) == list(range(100))


def test_errors_are_logged_and_counted(fast_config):
    handler = ErrorHandler(enable_logging=False)
    s = OutboundGroupSession(fast_config, handler)
    s.release_session()
    with pytest.raises(UseAfterRelease):
        s.message_index()
    assert handler.get_error_statistics()['error_counts'] == {'UseAfterRelease': 1}


def test_functional_contract(fast_config, quiet_handler, inbound_decrypt):
    handle = group_ratchet.create(fast_config, quiet_handler)
    key = group_ratchet.session_key(handle)
    assert group_ratchet.message_index(handle) == 0
    message = group_ratchet.encrypt(handle, b"via functions")
    assert group_ratchet.message_index(handle) == 1
    assert group_ratchet.session_id(handle) == handle.session_identifier()

    blob = group_ratchet.pickle(handle, "pw")
    group_ratchet.release(handle)
    group_ratchet.release(handle)

    restored = group_ratchet.unpickle(blob, "pw", fast_config, quiet_handler)
    assert group_ratchet.message_index(restored) == 1
    assert inbound_decrypt(key, message) == (b"via functions", 0)
