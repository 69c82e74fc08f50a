import pytest

from security.crypto import (
    DecryptionError,
    FrameCipher,
    derive_shared_key,
    generate_keypair,
)


def shared_keys():
    a_private, a_public = generate_keypair()
    b_private, b_public = generate_keypair()
    return derive_shared_key(a_private, b_public), derive_shared_key(b_private, a_public)


def test_both_sides_derive_the_same_key():
    key_a, key_b = shared_keys()
    assert key_a == key_b
    assert len(key_a) == 32


def test_sealed_frames_open_on_the_other_side():
    key_a, key_b = shared_keys()
    sealed = FrameCipher(key_a).seal(0x06, b"chunk bytes")
    assert b"chunk bytes" not in sealed
    assert FrameCipher(key_b).open(0x06, sealed) == b"chunk bytes"


def test_tampered_frame_is_rejected():
    key_a, key_b = shared_keys()
    sealed = bytearray(FrameCipher(key_a).seal(0x02, b"header"))
    sealed[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        FrameCipher(key_b).open(0x02, bytes(sealed))


def test_relabelled_frame_is_rejected():
    key_a, key_b = shared_keys()
    sealed = FrameCipher(key_a).seal(0x03, b'{"id": "x"}')
    with pytest.raises(DecryptionError):
        FrameCipher(key_b).open(0x04, sealed)


def test_short_frame_is_rejected():
    key, _ = shared_keys()
    with pytest.raises(DecryptionError):
        FrameCipher(key).open(0x02, b"short")


def test_bad_public_key_length():
    private, _ = generate_keypair()
    with pytest.raises(ValueError):
        derive_shared_key(private, b"\x00" * 16)
