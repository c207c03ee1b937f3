"""
MailerLiteConnector — groups and subscribers over the MailerLite Connect API.

Authentication: API key as a Bearer token.
Lists are MailerLite *groups*.  Group listings are page-numbered;
subscriber listings are cursor-paginated.

Status flags (``status`` field, plus ``unsubscribed_at``):

    active        → active
    unconfirmed   → pending
    unsubscribed  → unsubscribed
    bounced       → bounced
    junk          → complained   (spam complaint / junk marking)
    unsubscribed_at set → unsubscribed
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set
from urllib.parse import parse_qs, urlparse

import httpx

from connectors.base import BaseConnector, leftover_fields
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_ML_API = "https://connect.mailerlite.com/api"

_STATUS_FLAGS = {
    "active": SubscriberStatus.ACTIVE,
    "subscribed": SubscriberStatus.ACTIVE,
    "unconfirmed": SubscriberStatus.PENDING,
    "unsubscribed": SubscriberStatus.UNSUBSCRIBED,
    "bounced": SubscriberStatus.BOUNCED,
    "junk": SubscriberStatus.COMPLAINED,
}

_CONSUMED = ("id", "email", "status", "subscribed_at", "unsubscribed_at", "created_at")


def _next_cursor(body: Dict[str, Any]) -> Optional[str]:
    meta = body.get("meta") or {}
    if meta.get("next_cursor"):
        return meta["next_cursor"]
    next_link = (body.get("links") or {}).get("next")
    if next_link:
        values = parse_qs(urlparse(next_link).query).get("cursor")
        if values:
            return values[0]
    return None


class MailerLiteConnector(BaseConnector):
    """API-key connector for MailerLite."""

    group_page_size = 50
    subscriber_page_size = 1000

    @property
    def provider(self) -> EspProvider:
        return EspProvider.MAILERLITE

    @property
    def display_name(self) -> str:
        return "MailerLite"

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(
            client, f"{_ML_API}/groups", credential, params={"limit": 1}, what="validating API key"
        )

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(
            client, f"{_ML_API}/groups/{list_id}", credential, what=f"looking up group {list_id}"
        )

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        groups: List[EspList] = []
        page = 1
        async with self._client() as client:
            while True:
                body = await self._get_json(
                    client,
                    f"{_ML_API}/groups",
                    credential,
                    params={"limit": self.group_page_size, "page": page},
                    what="fetching groups",
                )
                batch = body.get("data") or []
                for group in batch:
                    groups.append(
                        EspList(
                            id=str(group["id"]),
                            name=group.get("name") or "",
                            size=group.get("active_count"),
                            extra=leftover_fields(group, ("id", "name", "active_count")),
                        )
                    )
                last_page = (body.get("meta") or {}).get("last_page") or page
                if not batch or page >= last_page:
                    break
                page += 1
        return groups

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        subscribers: List[RawSubscriber] = []
        cursor: Optional[str] = None
        async with self._client() as client:
            while True:
                params: Dict[str, Any] = {"limit": self.subscriber_page_size}
                if cursor:
                    params["cursor"] = cursor
                body = await self._get_json(
                    client,
                    f"{_ML_API}/groups/{list_id}/subscribers",
                    credential,
                    params=params,
                    what=f"fetching subscribers of group {list_id}",
                )
                subscribers.extend(self._to_raw(record) for record in body.get("data") or [])
                cursor = _next_cursor(body)
                if not cursor:
                    break
        logger.debug("MailerLite group %s: %d subscribers", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{_ML_API}/groups/{list_id}",
                credential,
                what=f"counting subscribers of group {list_id}",
            )
        group = body.get("data") or body
        return int(group.get("active_count") or group.get("total_count") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(record: Dict[str, Any]) -> Set[SubscriberStatus]:
        flags: Set[SubscriberStatus] = set()
        status = str(record.get("status") or "").strip().lower()
        if status in _STATUS_FLAGS:
            flags.add(_STATUS_FLAGS[status])
        if record.get("unsubscribed_at"):
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        return flags

    def _to_raw(self, record: Dict[str, Any]) -> RawSubscriber:
        fields = record.get("fields") or {}
        return RawSubscriber(
            external_id=str(record.get("id") or record.get("email") or ""),
            email=record.get("email") or "",
            flags=frozenset(self.status_flags(record)),
            first_name=fields.get("name") or fields.get("first_name"),
            last_name=fields.get("last_name"),
            subscribed_at=parse_timestamp(record.get("subscribed_at") or record.get("created_at")),
            unsubscribed_at=parse_timestamp(record.get("unsubscribed_at")),
            extra=leftover_fields(record, _CONSUMED),
        )
