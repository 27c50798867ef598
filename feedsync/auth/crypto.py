"""AES-256-GCM envelope for the credential file.

Envelope layout (JSON): {"encrypted": <hex>, "iv": <hex>, "authTag": <hex>}
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from feedsync.errors import DecryptionError, InvalidFormat

IV_BYTES = 16
TAG_BYTES = 16


def load_key(raw: str) -> bytes:
    """Decode a base64 AES-256 key."""
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("TOKEN_ENCRYPTION_KEY is not valid base64") from e
    if len(key) != 32:
        raise ValueError("TOKEN_ENCRYPTION_KEY must decode to 32 bytes")
    return key


def generate_key() -> str:
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()


def encrypt_payload(plaintext: str, key: bytes) -> dict[str, str]:
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return {
        "encrypted": sealed[:-TAG_BYTES].hex(),
        "iv": iv.hex(),
        "authTag": sealed[-TAG_BYTES:].hex(),
    }


def decrypt_payload(envelope: dict, key: bytes) -> str:
    """Decrypt an envelope. Fails closed: no partial plaintext on a bad tag."""
    try:
        ciphertext = bytes.fromhex(envelope["encrypted"])
        iv = bytes.fromhex(envelope["iv"])
        tag = bytes.fromhex(envelope["authTag"])
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidFormat("Credential file is not a valid encrypted envelope") from e

    if len(tag) != TAG_BYTES:
        raise DecryptionError("Credential file failed authentication")

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except (InvalidTag, ValueError) as e:
        raise DecryptionError("Credential file failed authentication") from e
    return plaintext.decode("utf-8")
