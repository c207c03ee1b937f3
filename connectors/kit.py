"""
KitConnector — tags and subscribers over the Kit (ConvertKit) v4 API.

Kit accepts either an OAuth access token (Bearer) or a v4 API key
(``X-Kit-Api-Key``).  Lists are Kit *tags*.  Cursor pagination via
``pagination.end_cursor`` / ``has_next_page``.  Both the fetch and the
count ask for ``status=all``, so the count matches what a sync backs up.

Status flags (``state`` field):

    active      → active
    inactive    → pending   (never confirmed)
    cancelled   → unsubscribed
    bounced     → bounced
    complained  → complained
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from connectors.base import BaseConnector, leftover_fields
from utils.clock import parse_timestamp
from utils.schemas import (
    AuthMethod,
    Credential,
    EspList,
    EspProvider,
    RawSubscriber,
    SubscriberStatus,
)

logger = logging.getLogger(__name__)

_KIT_API = "https://api.kit.com/v4"

_STATUS_FLAGS = {
    "active": SubscriberStatus.ACTIVE,
    "inactive": SubscriberStatus.PENDING,
    "cancelled": SubscriberStatus.UNSUBSCRIBED,
    "unsubscribed": SubscriberStatus.UNSUBSCRIBED,
    "bounced": SubscriberStatus.BOUNCED,
    "complained": SubscriberStatus.COMPLAINED,
}

_CONSUMED = ("id", "email_address", "first_name", "state", "created_at", "fields")


class KitConnector(BaseConnector):
    """OAuth2 / API-key connector for Kit."""

    page_size = 1000

    @property
    def provider(self) -> EspProvider:
        return EspProvider.KIT

    @property
    def display_name(self) -> str:
        return "Kit"

    @property
    def auth_methods(self) -> Tuple[AuthMethod, ...]:
        return (AuthMethod.OAUTH, AuthMethod.API_KEY)

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        if credential.auth_method == AuthMethod.OAUTH:
            return {"Authorization": f"Bearer {credential.reveal()}"}
        return {"X-Kit-Api-Key": credential.reveal()}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{_KIT_API}/account", credential, what="validating credential")

    async def _drain(
        self,
        client: httpx.AsyncClient,
        url: str,
        credential: Credential,
        key: str,
        what: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            query: Dict[str, Any] = {"per_page": self.page_size, **(params or {})}
            if cursor:
                query["after"] = cursor
            body = await self._get_json(client, url, credential, params=query, what=what)
            items.extend(body.get(key) or [])
            pagination = body.get("pagination") or {}
            cursor = pagination.get("end_cursor")
            if not pagination.get("has_next_page") or not cursor:
                break
        return items

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        async with self._client() as client:
            tags = await self._drain(client, f"{_KIT_API}/tags", credential, "tags", "fetching tags")
        return [
            EspList(
                id=str(tag["id"]),
                name=tag.get("name") or "",
                extra=leftover_fields(tag, ("id", "name")),
            )
            for tag in tags
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        async with self._client() as client:
            raw = await self._drain(
                client,
                f"{_KIT_API}/tags/{list_id}/subscribers",
                credential,
                "subscribers",
                f"fetching subscribers of tag {list_id}",
                params={"status": "all"},
            )
        logger.debug("Kit tag %s: %d subscribers", list_id, len(raw))
        return [self._to_raw(record) for record in raw]

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{_KIT_API}/tags/{list_id}/subscribers",
                credential,
                params={"per_page": 1, "include_total_count": "true", "status": "all"},
                what=f"counting subscribers of tag {list_id}",
            )
        return int((body.get("pagination") or {}).get("total_count") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(record: Dict[str, Any]) -> Set[SubscriberStatus]:
        state = str(record.get("state") or "").strip().lower()
        return {_STATUS_FLAGS[state]} if state in _STATUS_FLAGS else set()

    def _to_raw(self, record: Dict[str, Any]) -> RawSubscriber:
        fields = record.get("fields") or {}
        return RawSubscriber(
            external_id=str(record.get("id") or record.get("email_address") or ""),
            email=record.get("email_address") or "",
            flags=frozenset(self.status_flags(record)),
            first_name=record.get("first_name") or None,
            last_name=fields.get("last_name") or None,
            subscribed_at=parse_timestamp(record.get("created_at")),
            unsubscribed_at=None,
            extra={**leftover_fields(record, _CONSUMED), **({"fields": fields} if fields else {})},
        )
