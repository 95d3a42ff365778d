from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from grantline.core.config import get_settings
from grantline.core.errors import CredentialDecryptionError, EncryptionConfigError
from grantline.services.crypto.utils import decode_key_material


NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32

SecretField = Literal["session_id", "signature"]
# Position of each secret inside the concatenated nonce/tag fields.
_FIELD_INDEX: dict[str, int] = {"session_id": 0, "signature": 1}


@dataclass(frozen=True)
class EncryptedCredentials:
    session_id_encrypted: bytes
    signature_encrypted: bytes
    iv: bytes
    auth_tag: bytes


def load_encryption_key(raw: str | None = None) -> bytes:
    # Resolve the AES-256 key from settings unless an explicit value is supplied.
    value = raw if raw is not None else get_settings().credential_encryption_key
    if not value:
        raise EncryptionConfigError("CREDENTIAL_ENCRYPTION_KEY is not configured")
    try:
        key = decode_key_material(value)
    except ValueError as exc:
        raise EncryptionConfigError(str(exc)) from exc
    if len(key) != KEY_BYTES:
        raise EncryptionConfigError(f"CREDENTIAL_ENCRYPTION_KEY must decode to {KEY_BYTES} bytes")
    return key


def _encrypt_one(aesgcm: AESGCM, plaintext: str) -> tuple[bytes, bytes, bytes]:
    nonce = os.urandom(NONCE_BYTES)
    sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    return sealed[:-TAG_BYTES], nonce, sealed[-TAG_BYTES:]


def encrypt_credentials(session_id: str, signature: str, *, key: bytes | None = None) -> EncryptedCredentials:
    """Encrypt both upstream secrets with independent nonces and tags.

    The nonces and tags are concatenated in a fixed order (session id first,
    signature second) so the pair is stored as one record but each secret can
    still be decrypted and verified on its own.
    """
    if not session_id or not signature:
        raise ValueError("session_id and signature must be non-empty")
    aesgcm = AESGCM(key or load_encryption_key())
    session_cipher, session_nonce, session_tag = _encrypt_one(aesgcm, session_id)
    signature_cipher, signature_nonce, signature_tag = _encrypt_one(aesgcm, signature)
    return EncryptedCredentials(
        session_id_encrypted=session_cipher,
        signature_encrypted=signature_cipher,
        iv=session_nonce + signature_nonce,
        auth_tag=session_tag + signature_tag,
    )


def decrypt_secret(
    encrypted: EncryptedCredentials,
    field: SecretField,
    *,
    key: bytes | None = None,
) -> str:
    index = _FIELD_INDEX[field]
    if len(encrypted.iv) != NONCE_BYTES * 2 or len(encrypted.auth_tag) != TAG_BYTES * 2:
        raise CredentialDecryptionError("stored nonce or tag has an unexpected length")
    nonce = encrypted.iv[index * NONCE_BYTES : (index + 1) * NONCE_BYTES]
    tag = encrypted.auth_tag[index * TAG_BYTES : (index + 1) * TAG_BYTES]
    cipher_text = encrypted.session_id_encrypted if field == "session_id" else encrypted.signature_encrypted
    aesgcm = AESGCM(key or load_encryption_key())
    try:
        plaintext = aesgcm.decrypt(nonce, cipher_text + tag, None)
    except InvalidTag as exc:
        raise CredentialDecryptionError(f"{field} failed authentication") from exc
    return plaintext.decode("utf-8")


def decrypt_credentials(encrypted: EncryptedCredentials, *, key: bytes | None = None) -> tuple[str, str]:
    resolved_key = key or load_encryption_key()
    return (
        decrypt_secret(encrypted, "session_id", key=resolved_key),
        decrypt_secret(encrypted, "signature", key=resolved_key),
    )
