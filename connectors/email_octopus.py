"""
EmailOctopusConnector — lists and contacts over the EmailOctopus 1.6 API.

Authentication: ``api_key`` query parameter (httpx request logging is kept
at WARNING so the key never reaches the logs).  Page-numbered pagination
with a ``paging.next`` link.

Status flags (``status`` field):

    SUBSCRIBED    → active
    PENDING       → pending
    UNSUBSCRIBED  → unsubscribed
    BOUNCED       → bounced
    COMPLAINED    → complained
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Set

import httpx

from connectors.base import BaseConnector, leftover_fields
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_EO_API = "https://emailoctopus.com/api/1.6"

_STATUS_FLAGS = {
    "SUBSCRIBED": SubscriberStatus.ACTIVE,
    "PENDING": SubscriberStatus.PENDING,
    "UNSUBSCRIBED": SubscriberStatus.UNSUBSCRIBED,
    "BOUNCED": SubscriberStatus.BOUNCED,
    "COMPLAINED": SubscriberStatus.COMPLAINED,
}

_CONSUMED = ("id", "email_address", "status", "created_at", "fields")


class EmailOctopusConnector(BaseConnector):
    """API-key connector for EmailOctopus."""

    page_size = 100

    @property
    def provider(self) -> EspProvider:
        return EspProvider.EMAIL_OCTOPUS

    @property
    def display_name(self) -> str:
        return "EmailOctopus"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {}

    def _auth_params(self, credential: Credential) -> Dict[str, Any]:
        return {"api_key": credential.reveal()}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(
            client, f"{_EO_API}/lists", credential, params={"limit": 1}, what="validating API key"
        )

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(
            client, f"{_EO_API}/lists/{list_id}", credential, what=f"looking up list {list_id}"
        )

    async def _drain(
        self, client: httpx.AsyncClient, url: str, credential: Credential, what: str
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            body = await self._get_json(
                client, url, credential, params={"limit": self.page_size, "page": page}, what=what
            )
            batch = body.get("data") or []
            items.extend(batch)
            paging = body.get("paging") or {}
            if not batch or not paging.get("next"):
                break
            page += 1
        return items

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        async with self._client() as client:
            raw = await self._drain(client, f"{_EO_API}/lists", credential, "fetching lists")
        return [
            EspList(
                id=str(item["id"]),
                name=item.get("name") or "",
                size=(item.get("counts") or {}).get("subscribed"),
                extra=leftover_fields(item, ("id", "name")),
            )
            for item in raw
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        async with self._client() as client:
            raw = await self._drain(
                client,
                f"{_EO_API}/lists/{list_id}/contacts",
                credential,
                f"fetching contacts of list {list_id}",
            )
        logger.debug("EmailOctopus list %s: %d contacts", list_id, len(raw))
        return [self._to_raw(contact) for contact in raw]

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{_EO_API}/lists/{list_id}",
                credential,
                what=f"counting contacts of list {list_id}",
            )
        counts = body.get("counts") or {}
        return int(counts.get("subscribed") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(contact: Dict[str, Any]) -> Set[SubscriberStatus]:
        status = str(contact.get("status") or "").strip().upper()
        return {_STATUS_FLAGS[status]} if status in _STATUS_FLAGS else set()

    def _to_raw(self, contact: Dict[str, Any]) -> RawSubscriber:
        fields = contact.get("fields") or {}
        flags = self.status_flags(contact)
        unsubscribed_at = None
        if SubscriberStatus.UNSUBSCRIBED in flags:
            unsubscribed_at = parse_timestamp(contact.get("last_updated_at") or contact.get("updated_at"))
        return RawSubscriber(
            external_id=str(contact.get("id") or contact.get("email_address") or ""),
            email=contact.get("email_address") or "",
            flags=frozenset(flags),
            first_name=fields.get("FirstName"),
            last_name=fields.get("LastName"),
            subscribed_at=parse_timestamp(contact.get("created_at")),
            unsubscribed_at=unsubscribed_at,
            extra={**leftover_fields(contact, _CONSUMED), **({"fields": fields} if fields else {})},
        )
