"""Auth token provider for the extraction service.

The sign-in flow itself lives in the host application; this module only
stores the resulting identity token and hands it out until it is invalidated.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from storage import atomic_write_bytes

logger = logging.getLogger(__name__)


class NotSignedIn(Exception):
    """No identity token is available; the user must sign in first."""

    def __init__(self, message: str = "You must sign in before prices can be extracted."):
        super().__init__(message)


class TokenProvider(ABC):
    @abstractmethod
    async def get_valid_token(self) -> str:
        """Return the current token or raise NotSignedIn."""
        ...

    @abstractmethod
    def invalidate(self) -> None:
        """Forget the stored token (e.g. after the service rejected it)."""
        ...


class StoredTokenProvider(TokenProvider):
    """Token kept in memory and optionally mirrored to a file."""

    def __init__(self, token: str | None = None, token_file: str | Path | None = None):
        self._token = token.strip() if token else None
        self._token_file = Path(token_file) if token_file else None

    async def get_valid_token(self) -> str:
        if self._token_file is not None:
            try:
                stored = self._token_file.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                stored = ""
            if stored:
                return stored
        if self._token:
            return self._token
        raise NotSignedIn()

    def store(self, token: str) -> None:
        self._token = token.strip()
        if self._token_file is not None:
            atomic_write_bytes(self._token_file, self._token.encode("utf-8"))

    def invalidate(self) -> None:
        self._token = None
        if self._token_file is not None:
            try:
                self._token_file.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not delete token file %s: %s", self._token_file, e)
        logger.info("Stored auth token invalidated")
