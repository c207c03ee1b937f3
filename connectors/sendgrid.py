"""
SendGridConnector — Marketing Campaigns lists over the SendGrid v3 API.

Bearer API key.  Lists page with ``page_token`` taken from
``_metadata.next`` (a full URL, or a bare token on some responses).
Contacts of a list come from the search endpoint with a
``CONTAINS(list_ids, ...)`` query, following the same token.

Status flags:

    unsubscribed_at set                       → unsubscribed
    email_status bounced/invalid, is_bounced  → bounced
    email_status spam_reported, is_spam       → complained
    email_status pending                      → pending
    otherwise                                 → active
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from connectors.base import BaseConnector, leftover_fields
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_API = "https://api.sendgrid.com/v3"

_CONSUMED = (
    "id", "email", "first_name", "last_name", "created_at", "updated_at",
    "unsubscribed_at", "email_status", "is_bounced", "is_spam", "list_ids",
)


def next_page_token(body: Dict[str, Any]) -> Optional[str]:
    nxt = (body.get("_metadata") or {}).get("next")
    if not nxt:
        return None
    if nxt.startswith("http"):
        return httpx.URL(nxt).params.get("page_token")
    return nxt


class SendGridConnector(BaseConnector):
    """API-key connector for SendGrid Marketing Campaigns."""

    page_size = 100

    @property
    def provider(self) -> EspProvider:
        return EspProvider.SENDGRID

    @property
    def display_name(self) -> str:
        return "SendGrid"

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(
            client, f"{_API}/marketing/lists", credential, params={"page_size": 1}, what="validating API key"
        )

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(
            client, f"{_API}/marketing/lists/{list_id}", credential, what=f"looking up list {list_id}"
        )

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        lists: List[EspList] = []
        token: Optional[str] = None
        async with self._client() as client:
            while True:
                params: Dict[str, Any] = {"page_size": self.page_size}
                if token:
                    params["page_token"] = token
                body = await self._get_json(
                    client, f"{_API}/marketing/lists", credential, params=params, what="fetching lists"
                )
                for item in body.get("result") or []:
                    lists.append(
                        EspList(
                            id=str(item["id"]),
                            name=item.get("name") or "",
                            size=item.get("contact_count"),
                            extra=leftover_fields(item, ("id", "name", "contact_count", "_metadata")),
                        )
                    )
                token = next_page_token(body)
                if not token:
                    break
        return lists

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        subscribers: List[RawSubscriber] = []
        token: Optional[str] = None
        async with self._client() as client:
            while True:
                query: Dict[str, Any] = {"query": f"CONTAINS(list_ids, '{list_id}')"}
                if token:
                    query["page_token"] = token
                body = await self._post_json(
                    client,
                    f"{_API}/marketing/contacts/search",
                    credential,
                    body=query,
                    what=f"searching contacts of list {list_id}",
                )
                subscribers.extend(self._to_raw(contact) for contact in body.get("result") or [])
                token = next_page_token(body)
                if not token:
                    break
        logger.debug("SendGrid list %s: %d contacts", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{_API}/marketing/lists/{list_id}",
                credential,
                what=f"counting contacts of list {list_id}",
            )
        return int(body.get("contact_count") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(contact: Dict[str, Any]) -> Set[SubscriberStatus]:
        status = str(contact.get("email_status") or "").lower()
        flags: Set[SubscriberStatus] = set()
        if contact.get("unsubscribed_at"):
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        if status in ("bounced", "invalid") or contact.get("is_bounced") is True:
            flags.add(SubscriberStatus.BOUNCED)
        if status == "spam_reported" or contact.get("is_spam") is True:
            flags.add(SubscriberStatus.COMPLAINED)
        if status == "pending":
            flags.add(SubscriberStatus.PENDING)
        if not flags:
            flags.add(SubscriberStatus.ACTIVE)
        return flags

    def _to_raw(self, contact: Dict[str, Any]) -> RawSubscriber:
        return RawSubscriber(
            external_id=str(contact.get("id") or contact.get("email") or ""),
            email=contact.get("email") or "",
            flags=frozenset(self.status_flags(contact)),
            first_name=contact.get("first_name") or None,
            last_name=contact.get("last_name") or None,
            subscribed_at=parse_timestamp(contact.get("created_at")),
            unsubscribed_at=parse_timestamp(contact.get("unsubscribed_at")),
            extra=leftover_fields(contact, _CONSUMED),
        )
