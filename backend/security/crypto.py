"""
Channel encryption for the TCP transport: X25519 key exchange + AES-256-GCM.

Keys are ephemeral (one per channel) and never persisted.
"""

import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

logger = logging.getLogger(__name__)

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
# AES-256 key size
KEY_SIZE = 32
PUBLIC_KEY_SIZE = 32


class DecryptionError(ValueError):
    """A frame failed authentication or was too short to hold a nonce."""


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """
    Generate an ephemeral X25519 keypair.

    Returns:
        (private_key, public_key_bytes) where public_key_bytes
        is 32 bytes suitable for transmission.
    """
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw,
        format=PublicFormat.Raw,
    )
    return private_key, public_bytes


def derive_shared_key(
    private_key: X25519PrivateKey,
    peer_public_bytes: bytes,
    context: bytes = b"sendover-v1-channel-key",
) -> bytes:
    """Derive a 32-byte AES-256 key from the ECDH shared secret (HKDF-SHA256)."""
    if len(peer_public_bytes) != PUBLIC_KEY_SIZE:
        raise ValueError(f"Peer public key must be {PUBLIC_KEY_SIZE} bytes")
    peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
    shared_secret = private_key.exchange(peer_public_key)

    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=context,
    ).derive(shared_secret)


class FrameCipher:
    """Seals and opens channel frames with one session key.

    Sealed layout: nonce (12 bytes) || ciphertext || tag (16 bytes).
    The message type is bound as associated data so frames cannot be
    relabelled in transit.
    """

    def __init__(self, key: bytes) -> None:
        self._aesgcm = AESGCM(key)

    def seal(self, msg_type: int, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, bytes([msg_type]))

    def open(self, msg_type: int, data: bytes) -> bytes:
        if len(data) < NONCE_SIZE:
            raise DecryptionError("Frame shorter than nonce")
        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, bytes([msg_type]))
        except InvalidTag as e:
            raise DecryptionError("Frame failed authentication") from e
