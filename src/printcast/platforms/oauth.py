"""Refreshable YouTube OAuth access tokens backed by google-auth.

YouTube access tokens expire after about an hour, well inside a long
print.  :class:`RefreshingToken` holds a
:class:`google.oauth2.credentials.Credentials` with a refresh token and
hands :class:`~printcast.platforms.youtube.YouTubeLivePlatform` a valid
access token on every request, refreshing it first when it has expired.

The stored credentials are the authorized-user JSON that an installed-app
login writes (``refresh_token``, ``client_id``, ``client_secret``).
Running that login is left to the operator.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from printcast.errors import BroadcastAuthError

logger = logging.getLogger(__name__)

YOUTUBE_SCOPES = ["https://www.googleapis.com/auth/youtube.force-ssl"]


class RefreshingToken:
    """Zero-argument token provider that refreshes expired credentials.

    Args:
        credentials: google-auth user credentials, ideally carrying a
            refresh token.
        token_file: Where to write refreshed credentials back to, if any.
        request_factory: Builds the transport used for the refresh call.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        token_file: str | Path | None = None,
        request_factory: Callable[[], Any] = Request,
    ) -> None:
        self._credentials = credentials
        self._token_file = Path(token_file).expanduser() if token_file else None
        self._request_factory = request_factory
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: str | Path) -> RefreshingToken:
        """Load an authorized-user JSON file.

        Raises:
            ValueError: The file is missing, unreadable or lacks the
                refresh fields.
        """
        token_file = Path(path).expanduser()
        try:
            credentials = Credentials.from_authorized_user_file(str(token_file), YOUTUBE_SCOPES)
        except (OSError, ValueError) as exc:
            raise ValueError(f"Cannot load YouTube credentials from {token_file}: {exc}") from exc
        return cls(credentials, token_file=token_file)

    def __call__(self) -> str | None:
        with self._lock:
            creds = self._credentials
            if creds.valid:
                return creds.token
            if not creds.refresh_token:
                raise BroadcastAuthError(
                    "YouTube access token expired and no refresh token is stored. Re-authenticate with YouTube."
                )
            try:
                creds.refresh(self._request_factory())
            except GoogleAuthError as exc:
                raise BroadcastAuthError(f"Could not refresh the YouTube access token: {exc}", cause=exc) from exc
            logger.info("Refreshed YouTube access token (expires %s)", creds.expiry)
            self._save()
            return creds.token

    def _save(self) -> None:
        if self._token_file is None:
            return
        try:
            self._token_file.write_text(self._credentials.to_json(), encoding="utf-8")
            os.chmod(self._token_file, 0o600)
        except OSError as exc:
            logger.warning("Could not save refreshed YouTube credentials to %s: %s", self._token_file, exc)
