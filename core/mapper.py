"""
Subscriber Mapper — RawSubscriber → CanonicalSubscriber.

Connectors report every status flag a provider payload signals; the
mapper resolves them to one canonical status by fixed priority, encrypts
the email and derives its masked and fingerprinted forms.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Optional, Tuple

from connectors.encryption import CredentialVault
from utils.email import is_valid_email, mask_email
from utils.schemas import CanonicalSubscriber, RawSubscriber, SubscriberStatus

logger = logging.getLogger(__name__)

# Highest first.
STATUS_PRIORITY: Tuple[SubscriberStatus, ...] = (
    SubscriberStatus.COMPLAINED,
    SubscriberStatus.BOUNCED,
    SubscriberStatus.UNSUBSCRIBED,
    SubscriberStatus.PENDING,
    SubscriberStatus.ACTIVE,
)


class MappingError(ValueError):
    """A raw record cannot become a canonical subscriber."""


def resolve_status(flags: Iterable[SubscriberStatus]) -> SubscriberStatus:
    """Pick the highest-priority flag; no flags at all means ``active``."""
    present = set(flags)
    for status in STATUS_PRIORITY:
        if status in present:
            return status
    return SubscriberStatus.ACTIVE


class SubscriberMapper:
    def __init__(self, vault: CredentialVault):
        self._vault = vault

    def map(
        self,
        raw: RawSubscriber,
        connection_id: uuid.UUID,
        list_id: Optional[str] = None,
    ) -> CanonicalSubscriber:
        if not raw.external_id:
            raise MappingError("subscriber record has no external id")
        email = (raw.email or "").strip()
        if not is_valid_email(email):
            raise MappingError(f"subscriber {raw.external_id} has no valid email")

        metadata = dict(raw.extra)
        if list_id is not None:
            metadata["list_id"] = list_id

        return CanonicalSubscriber(
            connection_id=connection_id,
            external_id=raw.external_id,
            encrypted_email=self._vault.encrypt(email),
            email_fingerprint=self._vault.fingerprint(email),
            masked_email=mask_email(email),
            status=resolve_status(raw.flags),
            first_name=raw.first_name,
            last_name=raw.last_name,
            subscribed_at=raw.subscribed_at,
            unsubscribed_at=raw.unsubscribed_at,
            metadata=metadata or None,
        )

    def map_many(
        self,
        records: Iterable[RawSubscriber],
        connection_id: uuid.UUID,
        list_id: Optional[str] = None,
    ) -> List[CanonicalSubscriber]:
        """Map a batch; malformed records are skipped with a warning."""
        mapped: List[CanonicalSubscriber] = []
        skipped = 0
        for raw in records:
            try:
                mapped.append(self.map(raw, connection_id, list_id))
            except MappingError as exc:
                skipped += 1
                logger.warning("Skipping record on connection %s: %s", connection_id, exc)
        if skipped:
            logger.info(
                "Mapped %d records for connection %s list %s (%d skipped)",
                len(mapped), connection_id, list_id, skipped,
            )
        return mapped
