"""
CampaignMonitorConnector — client lists over the Campaign Monitor v3.2 API.

HTTP Basic auth with the API key as the username.  Lists belong to
clients, so ``fetch_lists`` walks every client the key can see.  A list's
members are read from the ``active``, ``unsubscribed`` and ``bounced``
segments, page by page (``NumberOfPages``).  The email address is the
subscriber id.

Status flags (``State``):

    Active        → active
    Unconfirmed   → pending
    Unsubscribed  → unsubscribed
    Deleted       → unsubscribed
    Bounced       → bounced
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Set

import httpx

from connectors.base import BaseConnector, leftover_fields, split_name
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_API = "https://api.createsend.com/api/v3.2"

# Segments read for a full backup, in order.
_SEGMENTS = ("active", "unsubscribed", "bounced")

_STATE_FLAGS = {
    "active": SubscriberStatus.ACTIVE,
    "unconfirmed": SubscriberStatus.PENDING,
    "unsubscribed": SubscriberStatus.UNSUBSCRIBED,
    "deleted": SubscriberStatus.UNSUBSCRIBED,
    "bounced": SubscriberStatus.BOUNCED,
}

_CONSUMED = ("EmailAddress", "Name", "Date", "State")


class CampaignMonitorConnector(BaseConnector):
    """API-key connector for Campaign Monitor."""

    page_size = 1000

    @property
    def provider(self) -> EspProvider:
        return EspProvider.CAMPAIGN_MONITOR

    @property
    def display_name(self) -> str:
        return "Campaign Monitor"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        token = base64.b64encode(f"{credential.reveal()}:".encode()).decode()
        return {"Authorization": f"Basic {token}"}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{_API}/clients.json", credential, what="validating API key")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(
            client, f"{_API}/lists/{list_id}.json", credential, what=f"looking up list {list_id}"
        )

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        lists: List[EspList] = []
        async with self._client() as client:
            clients = await self._get_json(
                client, f"{_API}/clients.json", credential, what="fetching clients"
            )
            for account in clients or []:
                client_id = account.get("ClientID")
                body = await self._get_json(
                    client,
                    f"{_API}/clients/{client_id}/lists.json",
                    credential,
                    what=f"fetching lists of client {client_id}",
                )
                for item in body or []:
                    lists.append(
                        EspList(
                            id=str(item["ListID"]),
                            name=item.get("Name") or "",
                            extra={"client_id": client_id, "client_name": account.get("Name")},
                        )
                    )
        return lists

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        subscribers: List[RawSubscriber] = []
        async with self._client() as client:
            for segment in _SEGMENTS:
                page = 1
                while True:
                    body = await self._get_json(
                        client,
                        f"{_API}/lists/{list_id}/{segment}.json",
                        credential,
                        params={
                            "page": page,
                            "pagesize": self.page_size,
                            "orderfield": "email",
                            "orderdirection": "asc",
                        },
                        what=f"fetching {segment} subscribers of list {list_id}",
                    )
                    subscribers.extend(self._to_raw(record) for record in body.get("Results") or [])
                    if page >= int(body.get("NumberOfPages") or 0):
                        break
                    page += 1
        logger.debug("Campaign Monitor list %s: %d subscribers", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{_API}/lists/{list_id}/stats.json",
                credential,
                what=f"counting subscribers of list {list_id}",
            )
        return int(body.get("TotalActiveSubscribers") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(record: Dict[str, Any]) -> Set[SubscriberStatus]:
        flag = _STATE_FLAGS.get(str(record.get("State") or "").lower())
        return {flag} if flag else set()

    def _to_raw(self, record: Dict[str, Any]) -> RawSubscriber:
        flags = self.status_flags(record)
        first, last = split_name(record.get("Name") or "")
        date = parse_timestamp(record.get("Date"))
        unsubscribed = SubscriberStatus.UNSUBSCRIBED in flags
        return RawSubscriber(
            external_id=str(record.get("EmailAddress") or ""),
            email=record.get("EmailAddress") or "",
            flags=frozenset(flags),
            first_name=first,
            last_name=last,
            subscribed_at=None if unsubscribed else date,
            unsubscribed_at=date if unsubscribed else None,
            extra=leftover_fields(record, _CONSUMED),
        )
