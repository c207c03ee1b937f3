"""
GhostConnector — members of a Ghost site over the Admin API.

The stored secret is ``"<site url>|<key id>:<hex secret>"``.  Every
request carries a short-lived HS256 token signed with the hex-decoded
secret (``Authorization: Ghost <token>``).  A Ghost site is a single
publication: ``fetch_lists`` returns the site itself, keyed by its URL.
Page pagination via ``meta.pagination.next``.

Status flags:

    subscribed == False, or no newsletters  → unsubscribed
    email_suppression reason "spam"         → complained
    email_suppression (any other reason)    → bounced
    otherwise                               → active
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from connectors.base import BaseConnector, leftover_fields, split_name
from connectors.errors import CredentialInvalid
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

TOKEN_LIFETIME_SECONDS = 300

_HEX = re.compile(r"^[0-9a-fA-F]+$")

_CONSUMED = (
    "id", "uuid", "email", "name", "created_at", "updated_at", "subscribed",
    "newsletters", "email_suppression",
)


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def admin_token(key_id: str, secret: str, now: Optional[int] = None) -> str:
    """Sign a Ghost Admin API token (HS256, audience ``/admin/``)."""
    issued = int(now if now is not None else time.time())
    header = {"alg": "HS256", "typ": "JWT", "kid": key_id}
    payload = {"iat": issued, "exp": issued + TOKEN_LIFETIME_SECONDS, "aud": "/admin/"}
    signing_input = (
        _b64url(json.dumps(header, separators=(",", ":")).encode())
        + "."
        + _b64url(json.dumps(payload, separators=(",", ":")).encode())
    )
    sig = hmac.new(bytes.fromhex(secret), signing_input.encode(), hashlib.sha256).digest()
    return signing_input + "." + _b64url(sig)


class GhostConnector(BaseConnector):
    """Admin-API-key connector for Ghost."""

    page_size = 100

    @property
    def provider(self) -> EspProvider:
        return EspProvider.GHOST

    @property
    def display_name(self) -> str:
        return "Ghost"

    def _split(self, credential: Credential) -> Tuple[str, str, str]:
        site, _, key = credential.reveal().partition("|")
        key_id, _, secret = key.partition(":")
        if not site.strip() or not _HEX.match(key_id) or not _HEX.match(secret) or len(secret) % 2:
            raise CredentialInvalid(
                'ghost: invalid Admin API key format, expected "https://site|id:secret"',
                provider=self.provider.value,
            )
        return site.strip().rstrip("/"), key_id, secret

    def _base_url(self, credential: Credential) -> str:
        site, _, _ = self._split(credential)
        return f"{site}/ghost/api/admin"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        _, key_id, secret = self._split(credential)
        return {"Authorization": f"Ghost {admin_token(key_id, secret)}"}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{self._base_url(credential)}/site/", credential, what="validating API key")

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        site_url, _, _ = self._split(credential)
        async with self._client() as client:
            body = await self._get_json(
                client, f"{self._base_url(credential)}/site/", credential, what="fetching site"
            )
        site = body.get("site") or {}
        return [
            EspList(
                id=site.get("url") or site_url,
                name=site.get("title") or "Ghost Publication",
                extra=leftover_fields(site, ("url", "title")),
            )
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        base = self._base_url(credential)
        subscribers: List[RawSubscriber] = []
        page: Optional[int] = 1
        async with self._client() as client:
            while page:
                body = await self._get_json(
                    client,
                    f"{base}/members/",
                    credential,
                    params={"page": page, "limit": self.page_size},
                    what="fetching members",
                )
                members = body.get("members") or []
                subscribers.extend(self._to_raw(member) for member in members)
                pagination = (body.get("meta") or {}).get("pagination") or {}
                page = pagination.get("next") if members else None
        logger.debug("Ghost site %s: %d members", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{self._base_url(credential)}/members/",
                credential,
                params={"limit": 1},
                what="counting members",
            )
        return int(((body.get("meta") or {}).get("pagination") or {}).get("total") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(member: Dict[str, Any]) -> Set[SubscriberStatus]:
        flags: Set[SubscriberStatus] = set()
        if member.get("subscribed") is False or (
            "newsletters" in member and not member["newsletters"] and member.get("subscribed") is not True
        ):
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        suppression = member.get("email_suppression") or {}
        if suppression.get("suppressed"):
            reason = str((suppression.get("info") or {}).get("reason") or "").lower()
            flags.add(SubscriberStatus.COMPLAINED if reason == "spam" else SubscriberStatus.BOUNCED)
        if not flags:
            flags.add(SubscriberStatus.ACTIVE)
        return flags

    def _to_raw(self, member: Dict[str, Any]) -> RawSubscriber:
        flags = self.status_flags(member)
        first, last = split_name(member.get("name"))
        return RawSubscriber(
            external_id=str(member.get("id") or member.get("uuid") or member.get("email") or ""),
            email=member.get("email") or "",
            flags=frozenset(flags),
            first_name=first,
            last_name=last,
            subscribed_at=parse_timestamp(member.get("created_at")),
            unsubscribed_at=(
                parse_timestamp(member.get("updated_at"))
                if SubscriberStatus.UNSUBSCRIBED in flags
                else None
            ),
            extra=leftover_fields(member, _CONSUMED),
        )
