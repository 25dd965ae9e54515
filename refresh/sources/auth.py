"""
Bearer tokens for warehouse requests.

Two providers:
- StaticTokenProvider: a pre-issued token (WAREHOUSE_ACCESS_TOKEN); it
  cannot be renewed, so a 401 is final
- ServiceAccountTokenProvider: service-account key JSON
  (GOOGLE_APPLICATION_CREDENTIALS_JSON); tokens are minted with google-auth
  and refreshed when expired or rejected
"""

import asyncio
import json
from typing import Any, Callable, Dict, Optional

import logging

import google.auth.exceptions
import google.auth.transport.requests
from google.oauth2 import service_account

from core.exceptions import SourceAuthError

logger = logging.getLogger(__name__)

BIGQUERY_SCOPES = ["https://www.googleapis.com/auth/bigquery.readonly"]
REQUIRED_FIELDS = ("type", "project_id", "private_key", "client_email")


class TokenProvider:
    """Supplies the bearer token sent with each warehouse request."""

    async def token(self) -> Optional[str]:
        raise NotImplementedError

    async def force_refresh(self) -> bool:
        """Renew the token after a rejection; False when it cannot be renewed."""
        return False


class StaticTokenProvider(TokenProvider):
    def __init__(self, access_token: Optional[str]):
        self.access_token = access_token

    async def token(self) -> Optional[str]:
        return self.access_token


class ServiceAccountTokenProvider(TokenProvider):
    """
    Access tokens minted from a service-account key.

    google-auth refreshes synchronously over ``requests``, so refreshes run
    in a worker thread; the lock keeps concurrent fetches to one refresh.
    """

    def __init__(
        self,
        credentials,
        request_factory: Optional[Callable[[], Any]] = None
    ):
        self.credentials = credentials
        self._request_factory = request_factory or google.auth.transport.requests.Request
        self._lock = asyncio.Lock()

    @classmethod
    def from_info(cls, info: Dict[str, Any], **kwargs) -> "ServiceAccountTokenProvider":
        missing = [field for field in REQUIRED_FIELDS if not info.get(field)]
        if missing:
            raise SourceAuthError(
                "Service account credentials are incomplete",
                context={"missing_fields": missing}
            )
        info = dict(info)
        info["private_key"] = info["private_key"].replace("\\n", "\n")

        try:
            credentials = service_account.Credentials.from_service_account_info(
                info, scopes=BIGQUERY_SCOPES
            )
        except (ValueError, google.auth.exceptions.GoogleAuthError) as e:
            raise SourceAuthError(
                "Service account credentials could not be loaded",
                context={"client_email": info.get("client_email")},
                original_exception=e
            )
        return cls(credentials, **kwargs)

    @classmethod
    def from_json(cls, raw: str, **kwargs) -> "ServiceAccountTokenProvider":
        try:
            info = json.loads(raw)
        except ValueError as e:
            raise SourceAuthError(
                "GOOGLE_APPLICATION_CREDENTIALS_JSON is not valid JSON",
                original_exception=e
            )
        if not isinstance(info, dict):
            raise SourceAuthError("GOOGLE_APPLICATION_CREDENTIALS_JSON must be a JSON object")
        return cls.from_info(info, **kwargs)

    @property
    def project_id(self) -> Optional[str]:
        return getattr(self.credentials, "project_id", None)

    async def token(self) -> Optional[str]:
        if not self.credentials.valid:
            async with self._lock:
                if not self.credentials.valid:
                    await self._refresh()
        return self.credentials.token

    async def force_refresh(self) -> bool:
        async with self._lock:
            await self._refresh()
        return True

    async def _refresh(self):
        try:
            await asyncio.to_thread(self.credentials.refresh, self._request_factory())
        except google.auth.exceptions.GoogleAuthError as e:
            raise SourceAuthError(
                "Could not obtain a warehouse access token",
                context={"client_email": getattr(self.credentials, "service_account_email", None)},
                original_exception=e
            )
        logger.info(f"Warehouse access token refreshed (expires {self.credentials.expiry})")
