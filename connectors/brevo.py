"""
BrevoConnector — contact lists over the Brevo v3 API.

Authentication: ``api-key`` header.  Offset pagination everywhere.

Status flags (Brevo has no single status field):

    emailBlacklisted == true           → unsubscribed
    list id in ``listUnsubscribed``    → unsubscribed
    hardBounced == true                → bounced
    spamReported == true               → complained
    otherwise                          → active
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Set

import httpx

from connectors.base import BaseConnector, leftover_fields
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_BREVO_API = "https://api.brevo.com/v3"

_CONSUMED = ("id", "email", "attributes", "createdAt", "unsubscribedAt")


class BrevoConnector(BaseConnector):
    """API-key connector for Brevo (formerly Sendinblue)."""

    list_page_size = 50
    contact_page_size = 500

    @property
    def provider(self) -> EspProvider:
        return EspProvider.BREVO

    @property
    def display_name(self) -> str:
        return "Brevo"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {"api-key": credential.reveal()}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{_BREVO_API}/account", credential, what="validating API key")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(
            client, f"{_BREVO_API}/contacts/lists/{list_id}", credential, what=f"looking up list {list_id}"
        )

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        lists: List[EspList] = []
        offset = 0
        async with self._client() as client:
            while True:
                body = await self._get_json(
                    client,
                    f"{_BREVO_API}/contacts/lists",
                    credential,
                    params={"limit": self.list_page_size, "offset": offset},
                    what="fetching lists",
                )
                batch = body.get("lists") or []
                for item in batch:
                    lists.append(
                        EspList(
                            id=str(item["id"]),
                            name=item.get("name") or "",
                            size=item.get("uniqueSubscribers") or item.get("totalSubscribers"),
                            extra=leftover_fields(item, ("id", "name")),
                        )
                    )
                if len(batch) < self.list_page_size:
                    break
                offset += self.list_page_size
        return lists

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        subscribers: List[RawSubscriber] = []
        offset = 0
        async with self._client() as client:
            while True:
                body = await self._get_json(
                    client,
                    f"{_BREVO_API}/contacts/lists/{list_id}/contacts",
                    credential,
                    params={"limit": self.contact_page_size, "offset": offset},
                    what=f"fetching contacts of list {list_id}",
                )
                batch = body.get("contacts") or []
                subscribers.extend(self._to_raw(contact, list_id) for contact in batch)
                if len(batch) < self.contact_page_size:
                    break
                offset += self.contact_page_size
        logger.debug("Brevo list %s: %d contacts", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{_BREVO_API}/contacts/lists/{list_id}",
                credential,
                what=f"counting contacts of list {list_id}",
            )
        return int(body.get("uniqueSubscribers") or body.get("totalSubscribers") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(contact: Dict[str, Any], list_id: str = "") -> Set[SubscriberStatus]:
        flags: Set[SubscriberStatus] = {SubscriberStatus.ACTIVE}
        if contact.get("emailBlacklisted") is True:
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        unsubscribed_lists = {str(i) for i in contact.get("listUnsubscribed") or []}
        if list_id and list_id in unsubscribed_lists:
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        if contact.get("hardBounced") is True:
            flags.add(SubscriberStatus.BOUNCED)
        if contact.get("spamReported") is True:
            flags.add(SubscriberStatus.COMPLAINED)
        return flags

    def _to_raw(self, contact: Dict[str, Any], list_id: str) -> RawSubscriber:
        attributes = contact.get("attributes") or {}
        return RawSubscriber(
            external_id=str(contact["id"]) if contact.get("id") is not None else (contact.get("email") or ""),
            email=contact.get("email") or "",
            flags=frozenset(self.status_flags(contact, list_id)),
            first_name=attributes.get("FIRSTNAME") or attributes.get("firstName"),
            last_name=attributes.get("LASTNAME") or attributes.get("lastName"),
            subscribed_at=parse_timestamp(contact.get("createdAt")),
            unsubscribed_at=parse_timestamp(contact.get("unsubscribedAt")),
            extra={**leftover_fields(contact, _CONSUMED), **({"attributes": attributes} if attributes else {})},
        )
