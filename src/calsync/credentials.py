"""Credential handling for calendar sources.

Source credentials are stored as ciphertext produced by a
:class:`CredentialCipher`. They are decrypted only when a sync run starts and
the plaintext lives in a :class:`~calsync.calendar.models.SyncCredentials`
instance for the duration of that run. Neither side of the cipher is ever
logged.
"""

from __future__ import annotations

import importlib
import logging
from typing import Protocol

from calsync.calendar.errors import CalendarSyncError
from calsync.calendar.models import CalendarSource, SourceView, SyncCredentials

logger = logging.getLogger(__name__)


class CredentialError(CalendarSyncError):
    """Raised when stored credentials cannot be decrypted."""

    default_user_message = "Stored calendar credentials could not be read. Re-enter them."


class CredentialCipher(Protocol):
    """Opaque symmetric encryption capability supplied by the host application."""

    def encrypt(self, plaintext: str) -> str:
        """Return ciphertext for *plaintext*."""
        ...

    def decrypt(self, ciphertext: str) -> str:
        """Return plaintext for *ciphertext*; raise ``ValueError`` when it is not ours."""
        ...


def encrypt_credentials(
    cipher: CredentialCipher,
    username: str | None,
    password: str | None,
) -> tuple[str | None, str | None]:
    """Encrypt a username/password pair, passing empty values through as ``None``."""
    username_ct = cipher.encrypt(username) if username else None
    password_ct = cipher.encrypt(password) if password else None
    return username_ct, password_ct


def decrypt_source_credentials(
    source: CalendarSource,
    cipher: CredentialCipher,
) -> SyncCredentials | None:
    """Decrypt the credentials of *source* for one sync run.

    Returns ``None`` for sources configured without credentials (public
    calendars and subscription feeds).

    Raises
    ------
    CredentialError
        If the stored ciphertext cannot be decrypted.
    """
    if source.username is None and source.password is None:
        return None
    try:
        username = cipher.decrypt(source.username) if source.username else ""
        password = cipher.decrypt(source.password) if source.password else ""
    except (ValueError, TypeError) as exc:
        raise CredentialError(
            f"Stored credentials for calendar source {source.id!r} could not be decrypted"
        ) from exc
    return SyncCredentials(username=username, password=password, scheme=source.auth_scheme)


def to_view(source: CalendarSource, cipher: CredentialCipher) -> SourceView:
    """Caller-facing copy of *source*: password withheld, username decrypted for display."""
    username: str | None = None
    if source.username:
        try:
            username = cipher.decrypt(source.username)
        except (ValueError, TypeError):
            logger.warning("Could not decrypt username for calendar source %s", source.id)
    return SourceView(
        id=source.id,
        user_id=source.user_id,
        name=source.name,
        url=source.url,
        username=username,
        password=None,
        color=source.color,
        last_synced_at=source.last_synced_at,
        created_at=source.created_at,
    )


class UnconfiguredCipher:
    """Placeholder used when no cipher is configured.

    Sources without credentials still sync; any attempt to encrypt or
    decrypt fails with a clear message.
    """

    def encrypt(self, plaintext: str) -> str:
        raise ValueError("No credential cipher configured; set [credentials].cipher")

    def decrypt(self, ciphertext: str) -> str:
        raise ValueError("No credential cipher configured; set [credentials].cipher")


def load_cipher(dotted_path: str | None) -> CredentialCipher:
    """Instantiate the cipher named by ``"package.module:attribute"``.

    The attribute may be a cipher instance or a zero-argument factory.
    """
    if not dotted_path:
        return UnconfiguredCipher()
    module_name, _, attribute = dotted_path.partition(":")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attribute)
    except (ImportError, AttributeError) as exc:
        raise CredentialError(f"Cannot load credential cipher {dotted_path!r}: {exc}") from exc
    is_factory = isinstance(target, type) or (callable(target) and not hasattr(target, "decrypt"))
    cipher = target() if is_factory else target
    if not hasattr(cipher, "encrypt") or not hasattr(cipher, "decrypt"):
        raise CredentialError(f"{dotted_path!r} does not provide encrypt/decrypt")
    return cipher
