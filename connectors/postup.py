"""
PostUpConnector — mailing lists over the PostUp REST API.

The stored secret is ``"<username>:<password>"``, sent as HTTP Basic auth.
Lists and recipients page by ``limit`` / ``offset`` until a short page.

Status flags (``status``):

    A / active / subscribed    → active
    U / unsubscribed           → unsubscribed
    H / S / bounced            → bounced
    C / complaint              → complained
    P / pending                → pending
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Set

import httpx

from connectors.base import BaseConnector, leftover_fields
from connectors.errors import CredentialInvalid
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_API = "https://api.postup.com/api"

_STATUS = {
    "a": SubscriberStatus.ACTIVE,
    "active": SubscriberStatus.ACTIVE,
    "subscribed": SubscriberStatus.ACTIVE,
    "u": SubscriberStatus.UNSUBSCRIBED,
    "unsubscribed": SubscriberStatus.UNSUBSCRIBED,
    "h": SubscriberStatus.BOUNCED,
    "s": SubscriberStatus.BOUNCED,
    "bounced": SubscriberStatus.BOUNCED,
    "hardbounce": SubscriberStatus.BOUNCED,
    "softbounce": SubscriberStatus.BOUNCED,
    "c": SubscriberStatus.COMPLAINED,
    "complaint": SubscriberStatus.COMPLAINED,
    "p": SubscriberStatus.PENDING,
    "pending": SubscriberStatus.PENDING,
}

_CONSUMED = (
    "recipientId", "address", "status", "firstName", "lastName", "createDate",
    "unsubscribeDate", "demographics",
)


def _rows(body: Any, key: str) -> List[Dict[str, Any]]:
    if isinstance(body, list):
        return body
    return (body or {}).get(key) or []


class PostUpConnector(BaseConnector):
    """Username/password connector for PostUp."""

    list_page_size = 100
    page_size = 500

    @property
    def provider(self) -> EspProvider:
        return EspProvider.POSTUP

    @property
    def display_name(self) -> str:
        return "PostUp"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        secret = credential.reveal()
        if ":" not in secret:
            raise CredentialInvalid(
                'postup: invalid API key format, expected "username:password"',
                provider=self.provider.value,
            )
        token = base64.b64encode(secret.encode()).decode()
        return {"Authorization": f"Basic {token}"}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{_API}/list", credential, params={"limit": 1}, what="validating API key")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(client, f"{_API}/list/{list_id}", credential, what=f"looking up list {list_id}")

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        lists: List[EspList] = []
        offset = 0
        async with self._client() as client:
            while True:
                body = await self._get_json(
                    client,
                    f"{_API}/list",
                    credential,
                    params={"limit": self.list_page_size, "offset": offset},
                    what="fetching lists",
                )
                rows = _rows(body, "lists")
                for item in rows:
                    lists.append(
                        EspList(
                            id=str(item.get("listId") or item.get("id")),
                            name=item.get("title") or item.get("listName") or item.get("name") or "",
                            size=item.get("recipientCount"),
                            extra=leftover_fields(
                                item, ("listId", "id", "title", "listName", "name", "recipientCount")
                            ),
                        )
                    )
                if len(rows) < self.list_page_size:
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
                    f"{_API}/recipient",
                    credential,
                    params={"listId": list_id, "limit": self.page_size, "offset": offset},
                    what=f"fetching recipients of list {list_id}",
                )
                rows = _rows(body, "recipients")
                subscribers.extend(self._to_raw(recipient) for recipient in rows)
                if len(rows) < self.page_size:
                    break
                offset += self.page_size
        logger.debug("PostUp list %s: %d recipients", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client, f"{_API}/list/{list_id}", credential, what=f"counting recipients of list {list_id}"
            )
        return int(body.get("recipientCount") or body.get("subscriberCount") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(recipient: Dict[str, Any]) -> Set[SubscriberStatus]:
        flag = _STATUS.get(str(recipient.get("status") or "").lower())
        return {flag or SubscriberStatus.ACTIVE}

    def _to_raw(self, recipient: Dict[str, Any]) -> RawSubscriber:
        demographics = recipient.get("demographics") or {}
        extra = leftover_fields(recipient, _CONSUMED)
        if demographics:
            extra["demographics"] = demographics
        return RawSubscriber(
            external_id=str(recipient.get("recipientId") or recipient.get("address") or ""),
            email=recipient.get("address") or "",
            flags=frozenset(self.status_flags(recipient)),
            first_name=recipient.get("firstName") or demographics.get("firstName") or None,
            last_name=recipient.get("lastName") or demographics.get("lastName") or None,
            subscribed_at=parse_timestamp(recipient.get("createDate")),
            unsubscribed_at=parse_timestamp(recipient.get("unsubscribeDate")),
            extra=extra,
        )
