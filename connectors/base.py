"""
BaseConnector — abstract interface for all ESP connectors.

Every provider (MailerLite, Brevo, Kit, …) subclasses this and implements
the list/subscriber calls.  Connectors are stateless: the decrypted
credential is passed into each call and never stored on the instance.

Shared plumbing lives here too: an ``httpx.AsyncClient`` with an explicit
timeout, and the translation of HTTP failures into the error taxonomy in
``connectors.errors``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config.settings import config
from connectors.errors import (
    CredentialInvalid,
    NetworkError,
    ProviderServerError,
    RateLimited,
    RemoteNotFound,
)
from utils.schemas import AuthMethod, Credential, EspList, EspProvider, RawSubscriber

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_provider_status(response: httpx.Response, *, provider: str, what: str) -> None:
    """Map a non-2xx response onto the connector error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return
    if status in (401, 403):
        raise CredentialInvalid(f"{provider}: credential rejected ({status}) while {what}", provider=provider)
    if status == 404:
        raise RemoteNotFound(f"{provider}: not found while {what}", provider=provider)
    if status == 429:
        raise RateLimited(
            f"{provider}: rate limit exceeded while {what}",
            provider=provider,
            retry_after=_retry_after(response),
        )
    if status >= 500:
        raise ProviderServerError(f"{provider}: server error {status} while {what}", provider=provider)
    raise ProviderServerError(f"{provider}: unexpected status {status} while {what}", provider=provider)


class BaseConnector(ABC):
    """Abstract base for all ESP connectors."""

    def __init__(
        self,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self._transport = transport
        self._timeout = timeout if timeout is not None else config.esp_http_timeout_seconds

    # ── Identity ────────────────────────────────────────────────────────

    @property
    @abstractmethod
    def provider(self) -> EspProvider:
        """Registry key."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'MailerLite', 'Brevo', 'Kit'."""
        ...

    @property
    def auth_methods(self) -> Tuple[AuthMethod, ...]:
        return (AuthMethod.API_KEY,)

    def supports(self, auth_method: AuthMethod) -> bool:
        return auth_method in self.auth_methods

    # ── Capability set ──────────────────────────────────────────────────

    async def validate_credential(
        self, credential: Credential, list_id: Optional[str] = None
    ) -> bool:
        """
        Make one cheap authenticated call.

        Returns False (not an error) when the credential is rejected, or
        when *list_id* is given and not visible to the credential.  Rate
        limits, server and network errors still raise.
        """
        try:
            async with self._client() as client:
                await self._probe(client, credential)
                if list_id is not None:
                    await self._probe_list(client, credential, list_id)
        except CredentialInvalid:
            logger.info("%s credential rejected during validation", self.provider.value)
            return False
        except RemoteNotFound:
            logger.info("%s list %s not visible to credential", self.provider.value, list_id)
            return False
        return True

    @abstractmethod
    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        ...

    @abstractmethod
    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        """
        Drain every page for *list_id*.

        A failure on any page aborts the whole call; partial data is never
        returned.
        """
        ...

    @abstractmethod
    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        ...

    # ── Hooks for subclasses ────────────────────────────────────────────

    @abstractmethod
    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        """Cheapest authenticated request the provider offers."""
        ...

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        """Raise RemoteNotFound unless *list_id* is visible.  Override if the API has a direct lookup."""
        lists = await self.fetch_lists(credential)
        if not any(item.id == list_id for item in lists):
            raise RemoteNotFound(
                f"{self.provider.value}: list {list_id} not found", provider=self.provider.value
            )

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential.reveal()}"}

    def _auth_params(self, credential: Credential) -> Dict[str, Any]:
        return {}

    # ── Helpers ─────────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self._timeout,
            headers={"Accept": "application/json"},
        )

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        credential: Credential,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        what: str,
    ) -> httpx.Response:
        """Send one authenticated request; non-2xx and transport failures become taxonomy errors."""
        merged = {**self._auth_params(credential), **(params or {})}
        try:
            response = await client.request(
                method,
                url,
                headers={**self._auth_headers(credential), **(headers or {})},
                params=merged,
                json=json,
                data=data,
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(
                f"{self.provider.value}: timed out while {what}", provider=self.provider.value
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkError(
                f"{self.provider.value}: network error while {what}: {type(exc).__name__}",
                provider=self.provider.value,
            ) from exc

        self._raise_for_status(response, what)
        return response

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        raise_for_provider_status(response, provider=self.provider.value, what=what)

    def _decode(self, response: httpx.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderServerError(
                f"{self.provider.value}: malformed JSON while {what}", provider=self.provider.value
            ) from exc

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        credential: Credential,
        *,
        params: Optional[Dict[str, Any]] = None,
        what: str,
    ) -> Any:
        """GET *url* and return the decoded JSON body, or raise a taxonomy error."""
        response = await self._request(client, "GET", url, credential, params=params, what=what)
        return self._decode(response, what)

    async def _post_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        credential: Credential,
        *,
        body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        what: str,
    ) -> Any:
        response = await self._request(
            client, "POST", url, credential, params=params, json=body, what=what
        )
        return self._decode(response, what)

    def is_configured(self) -> bool:
        """
        Return True if this connector has everything it needs from config.
        API-key connectors always do; OAuth-only ones override.
        """
        return True


def leftover_fields(record: Dict[str, Any], consumed: Tuple[str, ...]) -> Dict[str, Any]:
    """Provider fields not mapped to a canonical column, minus empty values."""
    return {
        key: value
        for key, value in record.items()
        if key not in consumed and value not in (None, "", [], {})
    }


def split_name(full_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'Ada King Lovelace' → ('Ada', 'King Lovelace')."""
    parts = (full_name or "").strip().split(None, 1)
    if not parts:
        return None, None
    return parts[0], (parts[1] if len(parts) > 1 else None)
