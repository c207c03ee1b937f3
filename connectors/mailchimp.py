"""
MailchimpConnector — audiences and members over the Mailchimp Marketing API 3.0.

OAuth only.  Mailchimp access tokens never expire and carry no refresh
token; the account's data centre is looked up from the OAuth metadata
endpoint before each call sequence.  Offset pagination (``count`` /
``offset``) against ``total_items``.

Status flags (member ``status``):

    subscribed     → active
    transactional  → active
    pending        → pending
    unsubscribed   → unsubscribed
    archived       → unsubscribed
    cleaned        → bounced
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Set, Tuple

import httpx

from connectors.base import BaseConnector, leftover_fields
from connectors.errors import ProviderServerError
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

METADATA_URL = "https://login.mailchimp.com/oauth2/metadata"

_STATUS_FLAGS = {
    "subscribed": SubscriberStatus.ACTIVE,
    "transactional": SubscriberStatus.ACTIVE,
    "pending": SubscriberStatus.PENDING,
    "unsubscribed": SubscriberStatus.UNSUBSCRIBED,
    "archived": SubscriberStatus.UNSUBSCRIBED,
    "cleaned": SubscriberStatus.BOUNCED,
}

_CONSUMED = (
    "id", "email_address", "status", "merge_fields", "timestamp_signup",
    "timestamp_opt", "last_changed", "_links", "list_id", "unique_email_id",
)


class MailchimpConnector(BaseConnector):
    """OAuth connector for Mailchimp audiences."""

    page_size = 1000

    @property
    def provider(self) -> EspProvider:
        return EspProvider.MAILCHIMP

    @property
    def display_name(self) -> str:
        return "Mailchimp"

    @property
    def auth_methods(self) -> Tuple[AuthMethod, ...]:
        return (AuthMethod.OAUTH,)

    async def _base_url(self, client: httpx.AsyncClient, credential: Credential) -> str:
        what = "resolving data centre"
        response = await self._request(
            client,
            "GET",
            METADATA_URL,
            credential,
            headers={"Authorization": f"OAuth {credential.reveal()}"},
            what=what,
        )
        body = self._decode(response, what) or {}
        endpoint = body.get("api_endpoint")
        if not endpoint and body.get("dc"):
            endpoint = f"https://{body['dc']}.api.mailchimp.com"
        if not endpoint:
            raise ProviderServerError(
                "mailchimp: metadata response without a data centre", provider=self.provider.value
            )
        return f"{endpoint.rstrip('/')}/3.0"

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        base = await self._base_url(client, credential)
        await self._get_json(client, f"{base}/ping", credential, what="validating access token")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        base = await self._base_url(client, credential)
        await self._get_json(
            client, f"{base}/lists/{list_id}", credential, what=f"looking up audience {list_id}"
        )

    async def _drain(
        self,
        client: httpx.AsyncClient,
        url: str,
        credential: Credential,
        key: str,
        what: str,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        offset = 0
        while True:
            body = await self._get_json(
                client,
                url,
                credential,
                params={"count": self.page_size, "offset": offset},
                what=what,
            )
            batch = body.get(key) or []
            items.extend(batch)
            offset += len(batch)
            if not batch or offset >= int(body.get("total_items") or 0):
                break
        return items

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        async with self._client() as client:
            base = await self._base_url(client, credential)
            audiences = await self._drain(
                client, f"{base}/lists", credential, "lists", "fetching audiences"
            )
        return [
            EspList(
                id=str(item["id"]),
                name=item.get("name") or "",
                size=(item.get("stats") or {}).get("member_count"),
                extra=leftover_fields(item, ("id", "name", "stats", "_links")),
            )
            for item in audiences
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        async with self._client() as client:
            base = await self._base_url(client, credential)
            members = await self._drain(
                client,
                f"{base}/lists/{list_id}/members",
                credential,
                "members",
                f"fetching members of audience {list_id}",
            )
        logger.debug("Mailchimp audience %s: %d members", list_id, len(members))
        return [self._to_raw(member) for member in members]

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            base = await self._base_url(client, credential)
            body = await self._get_json(
                client,
                f"{base}/lists/{list_id}/members",
                credential,
                params={"count": 1},
                what=f"counting members of audience {list_id}",
            )
        return int(body.get("total_items") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(member: Dict[str, Any]) -> Set[SubscriberStatus]:
        flag = _STATUS_FLAGS.get(str(member.get("status") or "").lower())
        return {flag} if flag else set()

    def _to_raw(self, member: Dict[str, Any]) -> RawSubscriber:
        flags = self.status_flags(member)
        merge = member.get("merge_fields") or {}
        return RawSubscriber(
            external_id=str(member.get("id") or member.get("email_address") or ""),
            email=member.get("email_address") or "",
            flags=frozenset(flags),
            first_name=merge.get("FNAME") or None,
            last_name=merge.get("LNAME") or None,
            subscribed_at=parse_timestamp(member.get("timestamp_opt") or member.get("timestamp_signup")),
            unsubscribed_at=(
                parse_timestamp(member.get("last_changed"))
                if SubscriberStatus.UNSUBSCRIBED in flags
                else None
            ),
            extra=leftover_fields(member, _CONSUMED),
        )
