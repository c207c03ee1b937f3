"""
OmedaConnector — product audiences over the Omeda web services API.

The stored secret is ``"<client>:<app id>[:<input id>]"``.  The client
(brand) abbreviation is part of the base URL; the app id and optional
input id travel as ``x-omeda-appid`` / ``x-omeda-inputid`` headers.
Lists are products.  Members come from the audience query endpoint,
paged by ``Offset`` / ``Limit`` against ``TotalCount``.

Status flags (``EmailStatus``):

    A   → active
    O   → unsubscribed
    U   → unsubscribed
    B   → bounced
    I   → pending
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from connectors.base import BaseConnector, leftover_fields
from connectors.errors import CredentialInvalid, RemoteNotFound
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_API = "https://ows.omeda.com/webservices/rest"

OUTPUT_FIELDS = ["Email", "FirstName", "LastName", "CustomerId", "EmailStatus", "CreateDate", "ChangeDate"]

_EMAIL_STATUS = {
    "a": SubscriberStatus.ACTIVE,
    "active": SubscriberStatus.ACTIVE,
    "o": SubscriberStatus.UNSUBSCRIBED,
    "opt-out": SubscriberStatus.UNSUBSCRIBED,
    "optout": SubscriberStatus.UNSUBSCRIBED,
    "u": SubscriberStatus.UNSUBSCRIBED,
    "unsubscribed": SubscriberStatus.UNSUBSCRIBED,
    "b": SubscriberStatus.BOUNCED,
    "bounced": SubscriberStatus.BOUNCED,
    "i": SubscriberStatus.PENDING,
    "inactive": SubscriberStatus.PENDING,
}

_CONSUMED = tuple(OUTPUT_FIELDS)


class OmedaConnector(BaseConnector):
    """API-key connector for Omeda."""

    page_size = 500

    @property
    def provider(self) -> EspProvider:
        return EspProvider.OMEDA

    @property
    def display_name(self) -> str:
        return "Omeda"

    def _split(self, credential: Credential) -> Tuple[str, str, Optional[str]]:
        parts = [p.strip() for p in credential.reveal().split(":")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise CredentialInvalid(
                'omeda: invalid API key format, expected "client:appid:inputid"',
                provider=self.provider.value,
            )
        return parts[0], parts[1], (parts[2] if len(parts) > 2 and parts[2] else None)

    def _base(self, credential: Credential) -> str:
        client, _, _ = self._split(credential)
        return f"{_API}/{client}"

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        _, app_id, input_id = self._split(credential)
        headers = {"x-omeda-appid": app_id}
        if input_id:
            headers["x-omeda-inputid"] = input_id
        return headers

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._get_json(client, f"{self._base(credential)}/brand/*", credential, what="validating API key")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._get_json(
            client, f"{self._base(credential)}/product/{list_id}/*", credential, what=f"looking up product {list_id}"
        )

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        async with self._client() as client:
            body = await self._get_json(
                client, f"{self._base(credential)}/products/*", credential, what="fetching products"
            )
        products = body.get("Products") or body.get("products") or []
        return [
            EspList(
                id=str(item.get("ProductId") or item.get("Id")),
                name=item.get("ProductName") or item.get("Name") or "",
                extra=leftover_fields(item, ("ProductId", "Id", "ProductName", "Name")),
            )
            for item in products
        ]

    def _product_ids(self, list_id: str) -> List[int]:
        try:
            return [int(list_id)]
        except ValueError:
            raise RemoteNotFound(f"omeda: product {list_id} not found", provider=self.provider.value) from None

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        url = f"{self._base(credential)}/audience/query/*"
        product_ids = self._product_ids(list_id)
        subscribers: List[RawSubscriber] = []
        offset = 0
        async with self._client() as client:
            while True:
                body = await self._post_json(
                    client,
                    url,
                    credential,
                    body={
                        "ProductIds": product_ids,
                        "OutputFields": OUTPUT_FIELDS,
                        "Pagination": {"Offset": offset, "Limit": self.page_size},
                    },
                    what=f"querying audience of product {list_id}",
                )
                customers = body.get("Customers") or []
                subscribers.extend(self._to_raw(customer) for customer in customers)
                total = int(body.get("TotalCount") or 0)
                if len(customers) < self.page_size or offset + self.page_size >= total:
                    break
                offset += self.page_size
        logger.debug("Omeda product %s: %d customers", list_id, len(subscribers))
        return subscribers

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._post_json(
                client,
                f"{self._base(credential)}/audience/query/*",
                credential,
                body={"ProductIds": self._product_ids(list_id), "CountOnly": True},
                what=f"counting audience of product {list_id}",
            )
        return int(body.get("TotalCount") or body.get("Count") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(customer: Dict[str, Any]) -> Set[SubscriberStatus]:
        flag = _EMAIL_STATUS.get(str(customer.get("EmailStatus") or "").lower())
        return {flag} if flag else set()

    def _to_raw(self, customer: Dict[str, Any]) -> RawSubscriber:
        flags = self.status_flags(customer)
        return RawSubscriber(
            external_id=str(customer.get("CustomerId") or customer.get("Email") or ""),
            email=customer.get("Email") or "",
            flags=frozenset(flags),
            first_name=customer.get("FirstName") or None,
            last_name=customer.get("LastName") or None,
            subscribed_at=parse_timestamp(customer.get("CreateDate")),
            unsubscribed_at=(
                parse_timestamp(customer.get("ChangeDate"))
                if SubscriberStatus.UNSUBSCRIBED in flags
                else None
            ),
            extra=leftover_fields(customer, _CONSUMED),
        )
