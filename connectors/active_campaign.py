"""
ActiveCampaignConnector — lists and contacts over the ActiveCampaign v3 API.

The stored secret is ``"<account>|<api key>"``: the account name picks the
API host, the key goes in the ``Api-Token`` header.  Offset pagination.

Status flags.  The per-list membership status comes from the side-loaded
``contactLists`` rows (falling back to the contact's own ``status``):

    0 → pending (unconfirmed)
    1 → active
    2 → unsubscribed
    3 → bounced
    deleted == "1"        → unsubscribed
    bounced_hard > 0      → bounced
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from connectors.base import BaseConnector, leftover_fields
from connectors.errors import CredentialInvalid
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_STATUS_FLAGS = {
    0: SubscriberStatus.PENDING,
    1: SubscriberStatus.ACTIVE,
    2: SubscriberStatus.UNSUBSCRIBED,
    3: SubscriberStatus.BOUNCED,
}

_CONSUMED = ("id", "email", "firstName", "lastName", "cdate", "status", "deleted", "links")


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class ActiveCampaignConnector(BaseConnector):
    """API-key connector for ActiveCampaign."""

    page_size = 100

    @property
    def provider(self) -> EspProvider:
        return EspProvider.ACTIVE_CAMPAIGN

    @property
    def display_name(self) -> str:
        return "ActiveCampaign"

    # ── secret handling ─────────────────────────────────────────────────

    def _split(self, credential: Credential) -> Tuple[str, str]:
        parts = credential.reveal().split("|")
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            raise CredentialInvalid(
                'active_campaign: invalid API key format, expected "accountName|apiKey"',
                provider=self.provider.value,
            )
        return parts[0].strip(), parts[1].strip()

    def _base_url(self, credential: Credential) -> str:
        account, _ = self._split(credential)
        return f"https://{account}.api-us1.com/api/3"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        _, key = self._split(credential)
        return {"Api-Token": key}

    # ── capability set ──────────────────────────────────────────────────

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(
            client, f"{self._base_url(credential)}/users/me", credential, what="validating API key"
        )

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(
            client,
            f"{self._base_url(credential)}/lists/{list_id}",
            credential,
            what=f"looking up list {list_id}",
        )

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        base = self._base_url(credential)
        lists: List[EspList] = []
        offset = 0
        async with self._client() as client:
            while True:
                body = await self._get_json(
                    client,
                    f"{base}/lists",
                    credential,
                    params={"limit": self.page_size, "offset": offset},
                    what="fetching lists",
                )
                batch = body.get("lists") or []
                for item in batch:
                    lists.append(
                        EspList(
                            id=str(item["id"]),
                            name=item.get("name") or "",
                            size=_as_int(item.get("subscriber_count"), 0) if item.get("subscriber_count") is not None else None,
                            extra=leftover_fields(item, ("id", "name", "subscriber_count", "links")),
                        )
                    )
                if len(batch) < self.page_size:
                    break
                offset += self.page_size
        return lists

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        base = self._base_url(credential)
        subscribers: List[RawSubscriber] = []
        offset = 0
        async with self._client() as client:
            while True:
                body = await self._get_json(
                    client,
                    f"{base}/contacts",
                    credential,
                    params={
                        "listid": list_id,
                        "status": -1,
                        "include": "contactLists",
                        "limit": self.page_size,
                        "offset": offset,
                    },
                    what=f"fetching contacts of list {list_id}",
                )
                batch = body.get("contacts") or []
                memberships = {
                    str(row.get("contact")): row
                    for row in body.get("contactLists") or []
                    if str(row.get("list")) == str(list_id)
                }
                subscribers.extend(
                    self._to_raw(contact, memberships.get(str(contact.get("id")))) for contact in batch
                )
                if len(batch) < self.page_size:
                    break
                offset += self.page_size
        logger.debug("ActiveCampaign list %s: %d contacts", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{self._base_url(credential)}/contacts",
                credential,
                params={"listid": list_id, "status": 1, "limit": 1},
                what=f"counting contacts of list {list_id}",
            )
        return _as_int((body.get("meta") or {}).get("total"), 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(contact: Dict[str, Any], membership: Optional[Dict[str, Any]] = None) -> Set[SubscriberStatus]:
        flags: Set[SubscriberStatus] = set()
        source = membership if membership and membership.get("status") is not None else contact
        code = _as_int(source.get("status"), 1)
        if code in _STATUS_FLAGS:
            flags.add(_STATUS_FLAGS[code])
        if str(contact.get("deleted") or "0") == "1":
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        if _as_int(contact.get("bounced_hard"), 0) > 0:
            flags.add(SubscriberStatus.BOUNCED)
        return flags

    def _to_raw(self, contact: Dict[str, Any], membership: Optional[Dict[str, Any]]) -> RawSubscriber:
        flags = self.status_flags(contact, membership)
        unsubscribed_at = None
        if SubscriberStatus.UNSUBSCRIBED in flags:
            unsubscribed_at = parse_timestamp(
                (membership or {}).get("unsubscribe_date") or contact.get("udate")
            )
        return RawSubscriber(
            external_id=str(contact.get("id") or contact.get("email") or ""),
            email=contact.get("email") or "",
            flags=frozenset(flags),
            first_name=contact.get("firstName") or None,
            last_name=contact.get("lastName") or None,
            subscribed_at=parse_timestamp(
                (membership or {}).get("subscribe_date") or contact.get("cdate")
            ),
            unsubscribed_at=unsubscribed_at,
            extra=leftover_fields(contact, _CONSUMED),
        )
