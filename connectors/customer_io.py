"""
CustomerIoConnector — segments over the Customer.io App API.

The stored secret is the App API key, optionally prefixed ``eu|`` for the
EU data centre.  Lists are segments.  Segment membership only returns
customer ids (paged with ``start`` / ``next``), so each member's profile
is fetched from ``/customers/{id}/attributes``.  A profile that vanished
between the two calls (404) is skipped; any other failure aborts the fetch.

Status flags (customer attributes):

    unsubscribed   → unsubscribed
    email_bounced  → bounced
    email_pending  → pending
    otherwise      → active
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from connectors.base import BaseConnector, leftover_fields
from connectors.errors import RemoteNotFound
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_US_API = "https://api.customer.io/v1"
_EU_API = "https://api-eu.customer.io/v1"

_CONSUMED = (
    "id", "email", "first_name", "last_name", "created_at", "unsubscribed",
    "unsubscribed_at", "email_bounced", "email_pending", "attributes",
)


def _truthy(value: Any) -> bool:
    return value is True or str(value).lower() == "true"


class CustomerIoConnector(BaseConnector):
    """API-key connector for Customer.io."""

    page_size = 100

    @property
    def provider(self) -> EspProvider:
        return EspProvider.CUSTOMER_IO

    @property
    def display_name(self) -> str:
        return "Customer.io"

    def _split(self, credential: Credential) -> Tuple[str, str]:
        secret = credential.reveal().strip()
        if secret.startswith("eu|"):
            return _EU_API, secret[3:].strip()
        return _US_API, secret

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        _, key = self._split(credential)
        return {"Authorization": f"Bearer {key}"}

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        base, _ = self._split(credential)
        await self._get_json(client, f"{base}/segments", credential, what="validating API key")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        base, _ = self._split(credential)
        await self._get_json(
            client, f"{base}/segments/{list_id}", credential, what=f"looking up segment {list_id}"
        )

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        base, _ = self._split(credential)
        async with self._client() as client:
            body = await self._get_json(client, f"{base}/segments", credential, what="fetching segments")
        return [
            EspList(
                id=str(item["id"]),
                name=item.get("name") or "",
                extra=leftover_fields(item, ("id", "name")),
            )
            for item in body.get("segments") or []
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        base, _ = self._split(credential)
        subscribers: List[RawSubscriber] = []
        async with self._client() as client:
            start: Optional[str] = None
            while True:
                params: Dict[str, Any] = {"limit": self.page_size}
                if start:
                    params["start"] = start
                body = await self._get_json(
                    client,
                    f"{base}/segments/{list_id}/membership",
                    credential,
                    params=params,
                    what=f"fetching membership of segment {list_id}",
                )
                for customer_id in body.get("ids") or []:
                    profile = await self._profile(client, base, credential, str(customer_id))
                    if profile is not None:
                        subscribers.append(self._to_raw(str(customer_id), profile))
                start = body.get("next") or None
                if not start:
                    break
        logger.debug("Customer.io segment %s: %d customers", list_id, len(subscribers))
        return subscribers

    async def _profile(
        self, client: httpx.AsyncClient, base: str, credential: Credential, customer_id: str
    ) -> Optional[Dict[str, Any]]:
        try:
            body = await self._get_json(
                client,
                f"{base}/customers/{customer_id}/attributes",
                credential,
                what=f"fetching customer {customer_id}",
            )
        except RemoteNotFound:
            logger.info("Customer.io customer %s disappeared mid-sync; skipped", customer_id)
            return None
        customer = body.get("customer") or body
        # attributes may be nested; flatten them over the top-level fields
        return {**customer, **(customer.get("attributes") or {})}

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        base, _ = self._split(credential)
        async with self._client() as client:
            body = await self._get_json(
                client,
                f"{base}/segments/{list_id}",
                credential,
                what=f"counting customers of segment {list_id}",
            )
        segment = body.get("segment") or body
        return int(segment.get("count") or segment.get("customer_count") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(customer: Dict[str, Any]) -> Set[SubscriberStatus]:
        flags: Set[SubscriberStatus] = set()
        if _truthy(customer.get("unsubscribed")):
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        if _truthy(customer.get("email_bounced")):
            flags.add(SubscriberStatus.BOUNCED)
        if _truthy(customer.get("email_pending")):
            flags.add(SubscriberStatus.PENDING)
        if not flags:
            flags.add(SubscriberStatus.ACTIVE)
        return flags

    def _to_raw(self, customer_id: str, customer: Dict[str, Any]) -> RawSubscriber:
        return RawSubscriber(
            external_id=customer_id,
            email=customer.get("email") or "",
            flags=frozenset(self.status_flags(customer)),
            first_name=customer.get("first_name") or None,
            last_name=customer.get("last_name") or None,
            subscribed_at=parse_timestamp(_epoch(customer.get("created_at"))),
            unsubscribed_at=parse_timestamp(_epoch(customer.get("unsubscribed_at"))),
            extra=leftover_fields(customer, _CONSUMED),
        )


def _epoch(value: Any) -> Any:
    """Customer.io timestamps are unix seconds, sometimes as strings."""
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return value
