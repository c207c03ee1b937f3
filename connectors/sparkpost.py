"""
SparkPostConnector — recipient lists over the SparkPost v1 API.

The raw API key goes in the ``Authorization`` header (no scheme).  Keys
for the EU region are stored with an ``eu|`` prefix.  A recipient list is
returned whole by ``/recipient-lists/{id}?show_recipients=true``; there
is no paging.  The recipient's address is also its id.

Status flags:

    suppressed                   → unsubscribed
    metadata.unsubscribed        → unsubscribed
    metadata.bounced             → bounced
    return_path.hard_bounce      → bounced
    otherwise                    → active
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Set, Tuple

import httpx

from connectors.base import BaseConnector, leftover_fields, split_name
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_US_API = "https://api.sparkpost.com/api/v1"
_EU_API = "https://api.eu.sparkpost.com/api/v1"

_CONSUMED = ("address", "recipient", "metadata", "substitution_data", "suppressed", "return_path")


def _address(recipient: Dict[str, Any]) -> Dict[str, Any]:
    address = recipient.get("address")
    if isinstance(address, str):
        return {"email": address}
    return address or recipient.get("recipient") or {}


class SparkPostConnector(BaseConnector):
    """API-key connector for SparkPost."""

    @property
    def provider(self) -> EspProvider:
        return EspProvider.SPARKPOST

    @property
    def display_name(self) -> str:
        return "SparkPost"

    def _split(self, credential: Credential) -> Tuple[str, str]:
        secret = credential.reveal().strip()
        if secret.lower().startswith("eu|"):
            return _EU_API, secret[3:].strip()
        return _US_API, secret

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        _, key = self._split(credential)
        return {"Authorization": key}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        base, _ = self._split(credential)
        await self._get_json(client, f"{base}/account", credential, what="validating API key")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._recipient_list(client, credential, list_id, show_recipients=False)

    async def _recipient_list(
        self,
        client: httpx.AsyncClient,
        credential: Credential,
        list_id: str,
        *,
        show_recipients: bool,
    ) -> Dict[str, Any]:
        base, _ = self._split(credential)
        body = await self._get_json(
            client,
            f"{base}/recipient-lists/{list_id}",
            credential,
            params={"show_recipients": "true" if show_recipients else "false"},
            what=f"fetching recipient list {list_id}",
        )
        return body.get("results") or {}

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        base, _ = self._split(credential)
        async with self._client() as client:
            body = await self._get_json(
                client, f"{base}/recipient-lists", credential, what="fetching recipient lists"
            )
        return [
            EspList(
                id=str(item["id"]),
                name=item.get("name") or str(item["id"]),
                size=item.get("total_accepted_recipients"),
                extra=leftover_fields(item, ("id", "name", "total_accepted_recipients")),
            )
            for item in body.get("results") or []
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        async with self._client() as client:
            results = await self._recipient_list(client, credential, list_id, show_recipients=True)
        subscribers = [self._to_raw(r) for r in results.get("recipients") or []]
        logger.debug("SparkPost list %s: %d recipients", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            results = await self._recipient_list(client, credential, list_id, show_recipients=False)
        return int(results.get("total_accepted_recipients") or results.get("recipient_count") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(recipient: Dict[str, Any]) -> Set[SubscriberStatus]:
        metadata = recipient.get("metadata") or {}
        flags: Set[SubscriberStatus] = set()
        if recipient.get("suppressed") is True or metadata.get("unsubscribed") is True:
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        if metadata.get("bounced") is True or (recipient.get("return_path") or {}).get("hard_bounce") is True:
            flags.add(SubscriberStatus.BOUNCED)
        if not flags:
            flags.add(SubscriberStatus.ACTIVE)
        return flags

    def _to_raw(self, recipient: Dict[str, Any]) -> RawSubscriber:
        address = _address(recipient)
        email = address.get("email") or ""
        first, last = split_name(address.get("name"))
        extra = leftover_fields(recipient, _CONSUMED)
        if recipient.get("substitution_data"):
            extra["substitution_data"] = recipient["substitution_data"]
        if recipient.get("metadata"):
            extra["metadata"] = recipient["metadata"]
        return RawSubscriber(
            external_id=email,
            email=email,
            flags=frozenset(self.status_flags(recipient)),
            first_name=first,
            last_name=last,
            extra=extra,
        )
