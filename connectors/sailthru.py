"""
SailthruConnector — lists over the signed Sailthru REST API.

The stored secret is ``"<api key>|<api secret>"``.  Requests carry
``api_key``, ``format=json`` and ``sig``, where ``sig`` is the MD5 of the
secret followed by every other parameter value, sorted and concatenated.
Lists are identified by name.  Members come from an ``export_list_data``
job: the job is polled until it reports ``completed`` with an
``export_url``, then the export (one JSON user per line) is downloaded.

Status flags:

    optout_email all/basic   → unsubscribed
    hardbounce_time set      → bounced
    valid == False           → bounced
    otherwise                → active
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from connectors.base import BaseConnector, leftover_fields, raise_for_provider_status, split_name
from connectors.errors import CredentialInvalid, ProviderServerError, RemoteNotFound
from utils.clock import parse_timestamp
from utils.schemas import Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

_API = "https://api.sailthru.com"

# Sailthru error codes carried in a 400 body
_BAD_KEY_CODES = (3, 5)
_NOT_FOUND_CODE = 99

_CONSUMED = (
    "id", "email", "profile", "first_name", "firstName", "last_name", "lastName", "name",
    "optout_email", "optout_time", "create_time", "hardbounce_time", "valid",
)


def _values(obj: Any) -> List[str]:
    if isinstance(obj, dict):
        return [v for item in obj.values() for v in _values(item)]
    if isinstance(obj, (list, tuple)):
        return [v for item in obj for v in _values(item)]
    if obj is None:
        return []
    return [str(obj)]


def signature(secret: str, params: Dict[str, Any]) -> str:
    """MD5 of *secret* plus the sorted leaf values of *params*."""
    values = sorted(_values({k: v for k, v in params.items() if k != "sig"}))
    return hashlib.md5((secret + "".join(values)).encode()).hexdigest()


class SailthruConnector(BaseConnector):
    """API-key connector for Sailthru."""

    poll_interval_seconds = 5.0
    max_polls = 60

    @property
    def provider(self) -> EspProvider:
        return EspProvider.SAILTHRU

    @property
    def display_name(self) -> str:
        return "Sailthru"

    def _split(self, credential: Credential) -> Tuple[str, str]:
        parts = credential.reveal().split("|")
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            raise CredentialInvalid(
                'sailthru: invalid API key format, expected "apiKey|apiSecret"',
                provider=self.provider.value,
            )
        return parts[0].strip(), parts[1].strip()

    def _auth_headers(self, credential: Credential) -> Dict[str, str]:
        return {}

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        if response.status_code == 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            code = body.get("error") if isinstance(body, dict) else None
            if code in _BAD_KEY_CODES:
                raise CredentialInvalid(
                    f"sailthru: credential rejected (error {code}) while {what}", provider=self.provider.value
                )
            if code == _NOT_FOUND_CODE:
                raise RemoteNotFound(f"sailthru: not found while {what}", provider=self.provider.value)
        raise_for_provider_status(response, provider=self.provider.value, what=what)

    def _signed(self, credential: Credential, params: Dict[str, Any]) -> Dict[str, str]:
        api_key, secret = self._split(credential)
        flat = {
            key: value if isinstance(value, str) else json.dumps(value, separators=(",", ":"))
            for key, value in params.items()
        }
        flat.update(api_key=api_key, format="json")
        flat["sig"] = signature(secret, flat)
        return flat

    async def _call(
        self,
        client: httpx.AsyncClient,
        method: str,
        action: str,
        credential: Credential,
        params: Optional[Dict[str, Any]] = None,
        *,
        what: str,
    ) -> Any:
        signed = self._signed(credential, params or {})
        if method == "GET":
            response = await self._request(client, "GET", f"{_API}/{action}", credential, params=signed, what=what)
        else:
            response = await self._request(client, "POST", f"{_API}/{action}", credential, data=signed, what=what)
        return self._decode(response, what)

    async def _probe(self, client: httpx.AsyncClient, credential: Credential) -> None:
        await self._call(client, "GET", "settings", credential, what="validating API key")

    async def _probe_list(
        self, client: httpx.AsyncClient, credential: Credential, list_id: str
    ) -> None:
        await self._call(client, "GET", "list", credential, {"list": list_id}, what=f"looking up list {list_id}")

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        async with self._client() as client:
            body = await self._call(client, "GET", "list", credential, what="fetching lists")
        return [
            EspList(
                id=str(item["name"]),
                name=item.get("name") or "",
                size=item.get("email_count"),
                extra=leftover_fields(item, ("name", "email_count")),
            )
            for item in body.get("lists") or []
        ]

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        async with self._client() as client:
            export_url = await self._export(client, credential, list_id)
            response = await self._request(
                client, "GET", export_url, credential, what=f"downloading export of list {list_id}"
            )
        subscribers: List[RawSubscriber] = []
        for line in response.text.splitlines():
            if not line.strip():
                continue
            try:
                user = json.loads(line)
            except ValueError as exc:
                raise ProviderServerError(
                    f"sailthru: malformed export line for list {list_id}", provider=self.provider.value
                ) from exc
            if isinstance(user, dict) and user.get("email"):
                subscribers.append(self._to_raw(user))
        logger.debug("Sailthru list %s: %d users", list_id, len(subscribers))
        return subscribers

    async def _export(self, client: httpx.AsyncClient, credential: Credential, list_id: str) -> str:
        job = await self._call(
            client,
            "POST",
            "job",
            credential,
            {
                "job": "export_list_data",
                "list": list_id,
                "fields": json.dumps({"profile": 1, "activity": 0, "engagement": 0}),
            },
            what=f"starting export of list {list_id}",
        )
        job_id = job.get("job_id")
        if not job_id:
            raise ProviderServerError(
                f"sailthru: export job for list {list_id} was not created", provider=self.provider.value
            )

        for _ in range(self.max_polls):
            await asyncio.sleep(self.poll_interval_seconds)
            status = await self._call(
                client, "GET", "job", credential, {"job_id": job_id}, what=f"polling export job {job_id}"
            )
            if status.get("status") == "completed" and status.get("export_url"):
                return status["export_url"]
        raise ProviderServerError(
            f"sailthru: export job {job_id} did not complete after {self.max_polls} polls",
            provider=self.provider.value,
        )

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        async with self._client() as client:
            body = await self._call(
                client, "GET", "list", credential, {"list": list_id}, what=f"counting users of list {list_id}"
            )
        return int(body.get("email_count") or body.get("count") or 0)

    # ── mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def status_flags(user: Dict[str, Any]) -> Set[SubscriberStatus]:
        flags: Set[SubscriberStatus] = set()
        if user.get("optout_email") in ("all", "basic"):
            flags.add(SubscriberStatus.UNSUBSCRIBED)
        if user.get("hardbounce_time") or user.get("valid") is False:
            flags.add(SubscriberStatus.BOUNCED)
        if not flags:
            flags.add(SubscriberStatus.ACTIVE)
        return flags

    def _to_raw(self, user: Dict[str, Any]) -> RawSubscriber:
        profile = user.get("profile") or user
        first, last = split_name(profile.get("name"))
        return RawSubscriber(
            external_id=str(user.get("id") or user["email"]),
            email=user["email"],
            flags=frozenset(self.status_flags(user)),
            first_name=profile.get("first_name") or profile.get("firstName") or first,
            last_name=profile.get("last_name") or profile.get("lastName") or last,
            subscribed_at=_epoch(user.get("create_time")),
            unsubscribed_at=_epoch(user.get("optout_time")),
            extra=leftover_fields(profile, _CONSUMED),
        )


def _epoch(value: Any):
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    return parse_timestamp(value)
