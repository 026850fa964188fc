"""
Repository vault -- turns repositories into encrypted blobs and back.

The cloud copy is keyed by the transfer code. Codes change over
time, so opening a cloud repository tries the current code and
then the retired ones, most recently retired first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..models import NoteRepository, SettingsModel
from .crypto import DEFAULT_ALGORITHM, Cryptor, DecryptionError, KdfCost
from .transfer_code import is_code_set

logger = logging.getLogger("notesync.sync.vault")


@dataclass
class DecryptionOutcome:
    """A decrypted repository and the code that opened it."""

    repository: NoteRepository
    transfer_code: str


def encrypt_repository(
    repository: NoteRepository,
    transfer_code: str,
    *,
    algorithm: str = DEFAULT_ALGORITHM,
    compress: bool = True,
) -> bytes:
    """Serialize and encrypt a repository for upload.

    The transfer code already carries plenty of entropy, so the low
    key derivation cost is used.
    """
    return Cryptor().encrypt(
        repository.to_bytes(),
        transfer_code,
        cost=KdfCost.LOW,
        algorithm=algorithm,
        compress=compress,
    )


def decrypt_repository(blob: bytes, transfer_code: str) -> NoteRepository:
    """Decrypt and parse a cloud repository.

    Raises:
        InvalidCipherFormatError: If the blob is no envelope.
        UnsupportedCipherRevisionError: If the envelope is too new.
        DecryptionError: If the code does not fit.
        UnsupportedRepositoryRevisionError: If the document is too new.
        RepositoryFormatError: If the decrypted document is corrupt.
    """
    plaintext = Cryptor().decrypt(blob, transfer_code)
    return NoteRepository.from_bytes(plaintext)


def list_candidate_codes(
    settings: SettingsModel, user_entered_code: Optional[str] = None
) -> list[str]:
    """Transfer codes to try, in order.

    A code the user just typed is the only candidate. Otherwise the
    current code is tried first, then the history.
    """
    if is_code_set(user_entered_code):
        return [user_entered_code]

    candidates: list[str] = []
    for code in [settings.transfer_code, *settings.transfer_code_history]:
        if is_code_set(code) and code not in candidates:
            candidates.append(code)
    return candidates


def decrypt_with_candidates(blob: bytes, candidates: list[str]) -> DecryptionOutcome:
    """Open ``blob`` with the first fitting candidate code.

    Only a failed authentication moves on to the next candidate. A
    malformed envelope or a too new revision stops at once, another
    code would not help.

    Raises:
        DecryptionError: If no candidate fits or there are none.
    """
    last_error: Optional[DecryptionError] = None
    for index, code in enumerate(candidates):
        try:
            repository = decrypt_repository(blob, code)
        except DecryptionError as exc:
            logger.debug("Candidate transfer code %d did not fit", index)
            last_error = exc
            continue
        logger.info("Cloud repository opened with candidate code %d", index)
        return DecryptionOutcome(repository=repository, transfer_code=code)

    raise DecryptionError(
        "The cloud repository could not be opened with any known transfer code."
    ) from last_error
