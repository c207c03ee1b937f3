"""
IterableConnector — static lists over the Iterable API.

``Api-Key`` header auth.  ``/lists/getUsers`` returns the members of a
list as newline-separated emails (some accounts get a JSON ``users``
array instead); each member's profile then comes from ``/users/{email}``.
A profile deleted between the two calls (404) is skipped.

Status flags (profile fields, top level or under ``dataFields``):

    unsubscribedChannelIds non-empty / unsubscribed / emailListIds == []
                                    → unsubscribed
    bounced / hardBounced           → bounced
    spamComplaint                   → complained
    emailVerified == False          → pending
    otherwise                       → active
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set
from urllib.parse import quote

import httpx

from connectors.base import BaseConnector, leftover_fields
from connectors.errors import RemoteNotFound
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_API = "https://api.iterable.com/api"

_CONSUMED = ("email", "userId", "signupDate", "createdAt", "dataFields")


class IterableConnector(BaseConnector):
    """API-key connector for Iterable."""

    @property
    def provider(self) -> EspProvider:
        return EspProvider.ITERABLE

    @property
    def display_name(self) -> str:
        return "Iterable"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {"Api-Key": credential.reveal()}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{_API}/lists", credential, what="validating API key")

    async def _lists(self, client: httpx.AsyncClient, credential: Credential) -> List[Dict[str, Any]]:
        body = await self._get_json(client, f"{_API}/lists", credential, what="fetching lists")
        return body.get("lists") or []

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        async with self._client() as client:
            raw = await self._lists(client, credential)
        return [
            EspList(
                id=str(item["id"]),
                name=item.get("name") or "",
                size=item.get("size"),
                extra=leftover_fields(item, ("id", "name", "size")),
            )
            for item in raw
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        subscribers: List[RawSubscriber] = []
        async with self._client() as client:
            what = f"fetching members of list {list_id}"
            response = await self._request(
                client, "GET", f"{_API}/lists/getUsers", credential, params={"listId": list_id}, what=what
            )
            for email in self._member_emails(response, what):
                profile = await self._profile(client, credential, email)
                if profile is not None:
                    subscribers.append(self._to_raw(profile))
        logger.debug("Iterable list %s: %d users", list_id, len(subscribers))
        return subscribers

    def _member_emails(self, response: httpx.Response, what: str) -> List[str]:
        if "json" in response.headers.get("content-type", ""):
            body = self._decode(response, what)
            users = body.get("users") if isinstance(body, dict) else body
            emails = [u if isinstance(u, str) else (u or {}).get("email") for u in users or []]
        else:
            emails = response.text.splitlines()
        return [e.strip() for e in emails if e and e.strip()]

    async def _profile(
        self, client: httpx.AsyncClient, credential: Credential, email: str
    ) -> Optional[Dict[str, Any]]:
        try:
            body = await self._get_json(
                client, f"{_API}/users/{quote(email, safe='')}", credential, what="fetching user profile"
            )
        except RemoteNotFound:
            logger.info("Iterable user disappeared mid-sync; skipped")
            return None
        return body.get("user") or body or None

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            lists = await self._lists(client, credential)
        for item in lists:
            if str(item.get("id")) == str(list_id):
                return int(item.get("size") or 0)
        raise RemoteNotFound(f"iterable: list {list_id} not found", provider=self.provider.value)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(user: Dict[str, Any]) -> Set[SubscriberStatus]:
        fields = {**(user.get("dataFields") or {}), **user}
        flags: Set[SubscriberStatus] = set()
        email_lists = fields.get("emailListIds")
        if fields.get("unsubscribedChannelIds") or fields.get("unsubscribed") is True or (
            isinstance(email_lists, list) and not email_lists
        ):
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        if fields.get("bounced") is True or fields.get("hardBounced") is True:
            flags.add(SubscriberStatus.BOUNCED)
        if fields.get("spamComplaint") is True:
            flags.add(SubscriberStatus.COMPLAINED)
        if fields.get("emailVerified") is False:
            flags.add(SubscriberStatus.PENDING)
        if not flags:
            flags.add(SubscriberStatus.ACTIVE)
        return flags

    def _to_raw(self, user: Dict[str, Any]) -> RawSubscriber:
        data = user.get("dataFields") or {}
        return RawSubscriber(
            external_id=str(user.get("userId") or user.get("email") or data.get("email") or ""),
            email=user.get("email") or data.get("email") or "",
            flags=frozenset(self.status_flags(user)),
            first_name=data.get("firstName") or None,
            last_name=data.get("lastName") or None,
            subscribed_at=parse_timestamp(
                user.get("signupDate") or data.get("signupDate") or user.get("createdAt")
            ),
            extra={**leftover_fields(user, _CONSUMED), **leftover_fields(data, ("email", "firstName", "lastName"))},
        )
