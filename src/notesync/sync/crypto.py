"""
Crypto envelope -- self describing, authenticated encryption of blobs.

Every blob carries a plain text header that names the algorithm,
nonce, key derivation, salt, cost and compression, so a reader can
decrypt it without guessing and future versions can change any of
them:

    NoteSync v=2$chacha20_poly1305$<nonce>$pbkdf2$<salt>$1000$gzip$<ciphertext>

The header is bound to the ciphertext as associated data.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger("notesync.sync.crypto")

PACKAGE_NAME = "NoteSync"
CRYPTO_HEADER_REVISION = 2
SEPARATOR = "$"

KEY_SIZE = 32
NONCE_SIZE = 12
SALT_SIZE = 16
MAX_KDF_ITERATIONS = 10_000_000

KDF_PBKDF2 = "pbkdf2"
COMPRESSION_GZIP = "gzip"

ALGORITHMS = {
    "chacha20_poly1305": ChaCha20Poly1305,
    "aes256_gcm": AESGCM,
}
DEFAULT_ALGORITHM = "chacha20_poly1305"


class KdfCost(str, Enum):
    """Key derivation work factor."""

    LOW = "low"
    HIGH = "high"

    @property
    def iterations(self) -> int:
        return {KdfCost.LOW: 1000, KdfCost.HIGH: 10000}[self]


class CryptoError(Exception):
    """Base class of envelope errors."""


class InvalidCipherFormatError(CryptoError):
    """The blob is no envelope or is corrupt, no password can help."""


class UnsupportedCipherRevisionError(CryptoError):
    """The envelope was written by a newer version of the app."""


class DecryptionError(CryptoError):
    """Authentication failed, most likely the password is wrong."""


@dataclass
class CryptoHeader:
    """Parsed envelope header."""

    algorithm: str
    nonce: bytes
    kdf: str
    salt: bytes
    cost: int
    compression: Optional[str] = None
    package_name: str = PACKAGE_NAME
    revision: int = CRYPTO_HEADER_REVISION


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str, field: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidCipherFormatError(f"Invalid base64 in {field}") from exc


def pack_header(header: CryptoHeader) -> str:
    """Serialize a header, including the trailing separator."""
    fields = [
        f"{header.package_name} v={header.revision}",
        header.algorithm,
        _b64(header.nonce),
        header.kdf,
        _b64(header.salt),
        str(header.cost),
    ]
    if header.revision >= 2:
        fields.append(header.compression or "")
    return SEPARATOR.join(fields) + SEPARATOR


def unpack(blob: bytes) -> tuple[CryptoHeader, str, bytes]:
    """Split an envelope into header, header text and ciphertext.

    Args:
        blob: The complete envelope.

    Returns:
        The parsed header, the exact header text (used as associated
        data) and the raw ciphertext.

    Raises:
        InvalidCipherFormatError: If the blob is no valid envelope.
        UnsupportedCipherRevisionError: If the header revision is too new.
    """
    try:
        text = blob.decode("ascii")
    except UnicodeDecodeError as exc:
        raise InvalidCipherFormatError("The data is not an encrypted repository.") from exc

    prefix = f"{PACKAGE_NAME} v="
    if not text.startswith(prefix):
        raise InvalidCipherFormatError("The data is not an encrypted repository.")

    parts = text.split(SEPARATOR)
    revision_text = parts[0][len(prefix):]
    if not revision_text.isdigit():
        raise InvalidCipherFormatError(f"Invalid header revision: {revision_text!r}")
    revision = int(revision_text)
    if revision > CRYPTO_HEADER_REVISION:
        raise UnsupportedCipherRevisionError(
            f"Encryption revision {revision} is not supported, please update the app."
        )
    if revision < 1:
        raise InvalidCipherFormatError(f"Invalid header revision: {revision}")

    expected_parts = 8 if revision >= 2 else 7
    if len(parts) != expected_parts:
        raise InvalidCipherFormatError("The encryption header is incomplete.")

    algorithm, nonce_text, kdf, salt_text, cost_text = parts[1:6]
    compression = parts[6] if revision >= 2 else ""
    if algorithm not in ALGORITHMS:
        raise InvalidCipherFormatError(f"Unknown encryption algorithm: {algorithm}")
    if kdf != KDF_PBKDF2:
        raise InvalidCipherFormatError(f"Unknown key derivation: {kdf}")
    if compression not in ("", COMPRESSION_GZIP):
        raise InvalidCipherFormatError(f"Unknown compression: {compression}")
    if not cost_text.isdigit() or not 0 < int(cost_text) <= MAX_KDF_ITERATIONS:
        raise InvalidCipherFormatError(f"Invalid key derivation cost: {cost_text!r}")

    nonce = _unb64(nonce_text, "nonce")
    if len(nonce) != NONCE_SIZE:
        raise InvalidCipherFormatError("Invalid nonce length.")

    header = CryptoHeader(
        algorithm=algorithm,
        nonce=nonce,
        kdf=kdf,
        salt=_unb64(salt_text, "salt"),
        cost=int(cost_text),
        compression=compression or None,
        revision=revision,
    )
    header_text = text[: text.rfind(SEPARATOR) + 1]
    return header, header_text, _unb64(parts[-1], "ciphertext")


def derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


class Cryptor:
    """Password based envelope encryption."""

    def encrypt(
        self,
        plaintext: bytes,
        password: str,
        *,
        cost: KdfCost = KdfCost.LOW,
        algorithm: str = DEFAULT_ALGORITHM,
        compress: bool = True,
    ) -> bytes:
        """Encrypt ``plaintext`` into a self describing envelope.

        Args:
            plaintext: Data to protect.
            password: Passphrase, for repositories the transfer code.
            cost: Key derivation work factor.
            algorithm: One of ``ALGORITHMS``.
            compress: Gzip the plaintext before encryption.

        Returns:
            bytes: The ASCII envelope.
        """
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown encryption algorithm: {algorithm}")
        header = CryptoHeader(
            algorithm=algorithm,
            nonce=os.urandom(NONCE_SIZE),
            kdf=KDF_PBKDF2,
            salt=os.urandom(SALT_SIZE),
            cost=cost.iterations,
            compression=COMPRESSION_GZIP if compress else None,
        )
        header_text = pack_header(header)
        if compress:
            plaintext = gzip.compress(plaintext, mtime=0)
        key = derive_key(password, header.salt, header.cost)
        ciphertext = ALGORITHMS[algorithm](key).encrypt(
            header.nonce, plaintext, header_text.encode("ascii")
        )
        return (header_text + _b64(ciphertext)).encode("ascii")

    def decrypt(self, blob: bytes, password: str) -> bytes:
        """Open an envelope.

        Raises:
            InvalidCipherFormatError: If the blob is no valid envelope.
            UnsupportedCipherRevisionError: If the envelope is too new.
            DecryptionError: If the password does not fit.
        """
        header, header_text, ciphertext = unpack(blob)
        key = derive_key(password, header.salt, header.cost)
        try:
            plaintext = ALGORITHMS[header.algorithm](key).decrypt(
                header.nonce, ciphertext, header_text.encode("ascii")
            )
        except InvalidTag as exc:
            raise DecryptionError("The data could not be decrypted with this password.") from exc

        if header.compression == COMPRESSION_GZIP:
            try:
                plaintext = gzip.decompress(plaintext)
            except (OSError, EOFError) as exc:
                raise InvalidCipherFormatError("The decrypted data is not valid gzip.") from exc
        return plaintext
