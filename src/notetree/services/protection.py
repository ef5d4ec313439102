"""Field-level encryption for protected notes.

Title and text are sealed independently with AES-SIV. Each field of each
entity has its own nonce, derived deterministically from the entity id and a
field discriminator. The nonce is bound in as associated data, so a value
only opens under the entity and field it was written for. SIV stays safe when
the nonce repeats: re-encrypting a field after an edit reveals at most
whether the plaintext is unchanged.

The SIV key is expanded from the data key with HKDF, and the SIV tag doubles
as the wrong-key check. Stored format: base64(tag + ciphertext).
"""

import base64
import binascii
import hashlib
import logging
from typing import Final, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESSIV
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from notetree.exceptions import ErrorCode, ProtectionError

logger = logging.getLogger(__name__)

_NONCE_BYTES: Final[int] = 16
_SIV_KEY_BYTES: Final[int] = 64
_HKDF_INFO: Final[bytes] = b"notetree field encryption v1"
# AES-SIV rejects empty input, so every sealed payload starts with this marker
_PAYLOAD_MARKER: Final[bytes] = b"\x01"
_VALID_KEY_LENGTHS: Final[Tuple[int, ...]] = (16, 24, 32)

TITLE_FIELD: Final[str] = "title"
TEXT_FIELD: Final[str] = "text"


def _derive_nonce(field: str, entity_id: str) -> bytes:
    if not entity_id:
        raise ValueError("entity_id is required to derive a nonce")
    return hashlib.sha256(f"{field}:{entity_id}".encode("utf-8")).digest()[:_NONCE_BYTES]


def title_nonce(entity_id: str) -> bytes:
    """Nonce for the title field of a note or history row."""
    return _derive_nonce(TITLE_FIELD, entity_id)


def text_nonce(entity_id: str) -> bytes:
    """Nonce for the text field of a note or history row."""
    return _derive_nonce(TEXT_FIELD, entity_id)


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) not in _VALID_KEY_LENGTHS:
        raise ProtectionError(
            "Data key must be 16, 24 or 32 bytes",
            code=ErrorCode.DATA_KEY_INVALID,
        )


def _siv(key: bytes) -> AESSIV:
    _check_key(key)
    siv_key = HKDF(
        algorithm=hashes.SHA256(),
        length=_SIV_KEY_BYTES,
        salt=None,
        info=_HKDF_INFO,
    ).derive(bytes(key))
    return AESSIV(siv_key)


def _seal(siv: AESSIV, nonce: bytes, plaintext: str) -> str:
    sealed = siv.encrypt(_PAYLOAD_MARKER + plaintext.encode("utf-8"), [nonce])
    return base64.b64encode(sealed).decode("ascii")


def _open(siv: AESSIV, nonce: bytes, stored: str) -> str:
    try:
        blob = base64.b64decode(stored.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise ProtectionError(
            "Protected value is not valid ciphertext",
            code=ErrorCode.DECRYPTION_FAILED,
        ) from e

    try:
        data = siv.decrypt(blob, [nonce])
    except (InvalidTag, ValueError) as e:
        raise ProtectionError(
            "Could not decrypt protected value (wrong data key?)",
            code=ErrorCode.DECRYPTION_FAILED,
        ) from e
    if not data.startswith(_PAYLOAD_MARKER):
        raise ProtectionError(
            "Protected value has an unknown format",
            code=ErrorCode.DECRYPTION_FAILED,
        )
    try:
        return data[len(_PAYLOAD_MARKER):].decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtectionError(
            "Decrypted value is not valid UTF-8",
            code=ErrorCode.DECRYPTION_FAILED,
        ) from e


def encrypt(key: bytes, nonce: bytes, plaintext: str) -> str:
    """Encrypt a string, returning the stored (base64) form."""
    return _seal(_siv(key), nonce, plaintext)


def decrypt(key: bytes, nonce: bytes, stored: str) -> str:
    """Decrypt the stored form produced by `encrypt`.

    Raises:
        ProtectionError: If the value is malformed or the key is wrong.
    """
    return _open(_siv(key), nonce, stored)


class ProtectionCodec:
    """Encrypts and decrypts the title/text pair of one entity."""

    def __init__(self, key: bytes):
        self._siv = _siv(key)

    def __repr__(self) -> str:
        return "<ProtectionCodec(key=***)>"

    def encrypt_fields(self, entity_id: str, title: str, text: str) -> Tuple[str, str]:
        return (
            _seal(self._siv, title_nonce(entity_id), title),
            _seal(self._siv, text_nonce(entity_id), text),
        )

    def decrypt_fields(self, entity_id: str, title: str, text: str) -> Tuple[str, str]:
        try:
            return (
                _open(self._siv, title_nonce(entity_id), title),
                _open(self._siv, text_nonce(entity_id), text),
            )
        except ProtectionError as e:
            # Re-raise with the entity attached so callers know which row failed
            raise ProtectionError(e.message, entity_id=entity_id, code=e.code) from e

    def convert(
        self, entity_id: str, title: str, text: str, currently_protected: bool, protect: bool
    ) -> Tuple[str, str, bool]:
        """Move a title/text pair to the target protection state.

        Returns:
            (title, text, changed). Already in the target state is a no-op.
        """
        if protect and not currently_protected:
            title, text = self.encrypt_fields(entity_id, title, text)
            return title, text, True
        if not protect and currently_protected:
            title, text = self.decrypt_fields(entity_id, title, text)
            return title, text, True
        return title, text, False
