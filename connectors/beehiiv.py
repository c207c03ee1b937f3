"""
BeehiivConnector — publications over the beehiiv v2 API.

Bearer API key.  Lists are publications; members are a publication's
subscriptions, paged by ``page`` against ``total_pages``.

Status flags (``status``):

    active / subscribed     → active
    validating / pending    → pending
    unsubscribed            → unsubscribed
    bounced / invalid       → bounced
    spam                    → complained
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Set

import httpx

from connectors.base import BaseConnector, leftover_fields
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_API = "https://api.beehiiv.com/v2"

_STATUS_FLAGS = {
    "active": SubscriberStatus.ACTIVE,
    "subscribed": SubscriberStatus.ACTIVE,
    "validating": SubscriberStatus.PENDING,
    "pending": SubscriberStatus.PENDING,
    "unsubscribed": SubscriberStatus.UNSUBSCRIBED,
    "bounced": SubscriberStatus.BOUNCED,
    "invalid": SubscriberStatus.BOUNCED,
    "spam": SubscriberStatus.COMPLAINED,
}

_CONSUMED = ("id", "email", "status", "first_name", "last_name", "created", "created_at", "unsubscribed_at")


class BeehiivConnector(BaseConnector):
    """API-key connector for beehiiv."""

    page_size = 100

    @property
    def provider(self) -> EspProvider:
        return EspProvider.BEEHIIV

    @property
    def display_name(self) -> str:
        return "beehiiv"

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{_API}/publications", credential, what="validating API key")

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        async with self._client() as client:
            body = await self._get_json(client, f"{_API}/publications", credential, what="fetching publications")
        return [
            EspList(
                id=str(item["id"]),
                name=item.get("name") or item.get("title") or "",
                extra=leftover_fields(item, ("id", "name", "title")),
            )
            for item in body.get("data") or []
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        subscribers: List[RawSubscriber] = []
        page = 1
        async with self._client() as client:
            while True:
                body = await self._get_json(
                    client,
                    f"{_API}/publications/{list_id}/subscriptions",
                    credential,
                    params={"page": page, "limit": self.page_size},
                    what=f"fetching subscriptions of publication {list_id}",
                )
                batch = body.get("data") or []
                subscribers.extend(self._to_raw(sub) for sub in batch)
                if not batch or page >= int(body.get("total_pages") or 1):
                    break
                page += 1
        logger.debug("beehiiv publication %s: %d subscriptions", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{_API}/publications/{list_id}/subscriptions",
                credential,
                params={"page": 1, "limit": 1},
                what=f"counting subscriptions of publication {list_id}",
            )
        return int(body.get("total_results") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(sub: Dict[str, Any]) -> Set[SubscriberStatus]:
        flag = _STATUS_FLAGS.get(str(sub.get("status") or "").lower())
        return {flag} if flag else set()

    def _to_raw(self, sub: Dict[str, Any]) -> RawSubscriber:
        return RawSubscriber(
            external_id=str(sub.get("id") or sub.get("email") or ""),
            email=sub.get("email") or "",
            flags=frozenset(self.status_flags(sub)),
            first_name=sub.get("first_name") or None,
            last_name=sub.get("last_name") or None,
            # created is unix seconds; some payloads send an ISO created_at instead
            subscribed_at=parse_timestamp(sub.get("created") or sub.get("created_at")),
            unsubscribed_at=parse_timestamp(sub.get("unsubscribed_at")),
            extra=leftover_fields(sub, _CONSUMED),
        )
