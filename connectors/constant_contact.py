"""
ConstantContactConnector — contact lists over the Constant Contact v3 API.

The stored secret is a Constant Contact access token, sent as a Bearer
token.  Cursor pagination via ``cursor.next``.

Status flags (``email_address.permission_to_send``):

    implicit / explicit                       → active
    pending_confirmation / temp_hold / not_set → pending
    unsubscribed                              → unsubscribed
    missing or unknown                        → active
    deleted_at set                            → unsubscribed
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from connectors.base import BaseConnector, leftover_fields
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_API = "https://api.cc.email/v3"

_PERMISSION_FLAGS = {
    "implicit": SubscriberStatus.ACTIVE,
    "explicit": SubscriberStatus.ACTIVE,
    "pending_confirmation": SubscriberStatus.PENDING,
    "temp_hold": SubscriberStatus.PENDING,
    "not_set": SubscriberStatus.PENDING,
    "unsubscribed": SubscriberStatus.UNSUBSCRIBED,
}

_CONSUMED = (
    "contact_id", "email_address", "first_name", "last_name", "created_at",
    "updated_at", "deleted_at", "list_memberships",
)


class ConstantContactConnector(BaseConnector):
    """Access-token connector for Constant Contact."""

    list_page_size = 50
    contact_page_size = 500

    @property
    def provider(self) -> EspProvider:
        return EspProvider.CONSTANT_CONTACT

    @property
    def display_name(self) -> str:
        return "Constant Contact"

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{_API}/account/summary", credential, what="validating access token")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(
            client, f"{_API}/contact_lists/{list_id}", credential, what=f"looking up list {list_id}"
        )

    async def _drain(
        self,
        client: httpx.AsyncClient,
        url: str,
        credential: Credential,
        key: str,
        params: Dict[str, Any],
        what: str,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            query = dict(params)
            if cursor:
                query["cursor"] = cursor
            body = await self._get_json(client, url, credential, params=query, what=what)
            items.extend(body.get(key) or [])
            cursor = (body.get("cursor") or {}).get("next")
            if not cursor:
                break
        return items

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        async with self._client() as client:
            raw = await self._drain(
                client,
                f"{_API}/contact_lists",
                credential,
                "lists",
                {"limit": self.list_page_size, "include_count": "true", "include_membership_count": "all"},
                "fetching contact lists",
            )
        return [
            EspList(
                id=str(item["list_id"]),
                name=item.get("name") or "",
                size=item.get("membership_count"),
                extra=leftover_fields(item, ("list_id", "name", "membership_count")),
            )
            for item in raw
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        async with self._client() as client:
            contacts = await self._drain(
                client,
                f"{_API}/contacts",
                credential,
                "contacts",
                {
                    "lists": list_id,
                    "limit": self.contact_page_size,
                    "include": "custom_fields,list_memberships,street_addresses",
                    "status": "all",
                },
                f"fetching contacts of list {list_id}",
            )
        logger.debug("Constant Contact list %s: %d contacts", list_id, len(contacts))
        return [self._to_raw(contact) for contact in contacts]

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{_API}/contact_lists/{list_id}",
                credential,
                params={"include_membership_count": "all"},
                what=f"counting contacts of list {list_id}",
            )
        return int(body.get("membership_count") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(contact: Dict[str, Any]) -> Set[SubscriberStatus]:
        permission = str((contact.get("email_address") or {}).get("permission_to_send") or "").lower()
        flags = {_PERMISSION_FLAGS.get(permission, SubscriberStatus.ACTIVE)}
        if contact.get("deleted_at"):
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        return flags

    def _to_raw(self, contact: Dict[str, Any]) -> RawSubscriber:
        address = contact.get("email_address") or {}
        email = address.get("address") or ""
        if not email and contact.get("email_addresses"):
            email = contact["email_addresses"][0].get("address") or ""
        flags = self.status_flags(contact)
        unsubscribed_at = None
        if SubscriberStatus.UNSUBSCRIBED in flags:
            unsubscribed_at = parse_timestamp(
                contact.get("deleted_at") or address.get("opt_out_date")
            )
        return RawSubscriber(
            external_id=str(contact.get("contact_id") or email),
            email=email,
            flags=frozenset(flags),
            first_name=contact.get("first_name") or None,
            last_name=contact.get("last_name") or None,
            subscribed_at=parse_timestamp(contact.get("created_at")),
            unsubscribed_at=unsubscribed_at,
            extra=leftover_fields(contact, _CONSUMED),
        )
