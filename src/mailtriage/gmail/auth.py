"""OAuth2 credential refresh for stored Gmail accounts."""

from __future__ import annotations

import asyncio
import logging
from datetime import timezone

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailtriage.config import GOOGLE_TOKEN_URI
from mailtriage.exceptions import CredentialError
from mailtriage.models import Credential

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.labels",
]


class CredentialRefresher:
    """Builds google-auth credentials from stored tokens and refreshes them.

    Accepts primitives only; the interactive consent flow lives elsewhere.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_uri: str = GOOGLE_TOKEN_URI,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri

    def to_google(self, credential: Credential) -> Credentials:
        # google-auth compares expiry against a naive UTC datetime
        expiry = None
        if credential.expiry is not None:
            expiry = credential.expiry.astimezone(timezone.utc).replace(tzinfo=None)
        return Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=SCOPES,
            expiry=expiry,
        )

    async def refresh(self, credential: Credential) -> Credential:
        """Exchange the refresh token for a new access token."""
        if not credential.refresh_token:
            raise CredentialError("Credential has no refresh token. Re-authorize the account.")
        creds = self.to_google(credential)
        try:
            await asyncio.to_thread(creds.refresh, Request())
        except RefreshError as e:
            raise CredentialError(f"Token refresh failed: {e}") from e

        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
        return Credential(
            access_token=creds.token,
            refresh_token=creds.refresh_token or credential.refresh_token,
            expiry=expiry,
        )
