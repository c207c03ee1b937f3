"""
Pydantic schemas and enums shared by the connectors, the sync engine and
the API surface.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr


# ═══════════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════════


class EspProvider(str, Enum):
    MAILERLITE = "mailerlite"
    BREVO = "brevo"
    EMAIL_OCTOPUS = "email_octopus"
    ACTIVE_CAMPAIGN = "active_campaign"
    KIT = "kit"
    MAILCHIMP = "mailchimp"
    CAMPAIGN_MONITOR = "campaign_monitor"
    CONSTANT_CONTACT = "constant_contact"
    CUSTOMER_IO = "customer_io"
    GHOST = "ghost"
    ITERABLE = "iterable"
    SENDGRID = "sendgrid"
    SPARKPOST = "sparkpost"
    SAILTHRU = "sailthru"
    OMEDA = "omeda"
    POSTUP = "postup"
    BEEHIIV = "beehiiv"


class AuthMethod(str, Enum):
    API_KEY = "api_key"
    OAUTH = "oauth"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    INVALID = "invalid"
    ERROR = "error"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class SyncHistoryStatus(str, Enum):
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"


class SubscriberStatus(str, Enum):
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    PENDING = "pending"


# ═══════════════════════════════════════════════════════════════════════════════
# Connector I/O
# ═══════════════════════════════════════════════════════════════════════════════


class Credential(BaseModel):
    """A decrypted secret plus the way the provider expects to receive it."""

    secret: SecretStr
    auth_method: AuthMethod = AuthMethod.API_KEY

    def reveal(self) -> str:
        return self.secret.get_secret_value()


class EspList(BaseModel):
    """A list / group / tag / publication inside one ESP account."""

    id: str
    name: str = ""
    size: Optional[int] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class RawSubscriber(BaseModel):
    """
    One subscriber as reported by a connector, before normalisation.

    ``flags`` carries every canonical status the provider payload signals;
    the mapper picks the winner by priority.
    """

    external_id: str
    email: str = ""
    flags: FrozenSet[SubscriberStatus] = frozenset()
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    subscribed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class TokenSet(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    scopes: List[str] = Field(default_factory=list)


class OAuthConfig(BaseModel):
    client_id: str
    client_secret: str
    authorization_url: str
    token_url: str
    scopes: str = ""


# ═══════════════════════════════════════════════════════════════════════════════
# Sync engine
# ═══════════════════════════════════════════════════════════════════════════════


class CanonicalSubscriber(BaseModel):
    """Provider-agnostic subscriber row, ready for upsert."""

    connection_id: uuid.UUID
    external_id: str
    encrypted_email: str
    email_fingerprint: str
    masked_email: str
    status: SubscriberStatus
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    subscribed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class SyncJob(BaseModel):
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    connection_id: uuid.UUID
    reason: str = "manual"
    attempts_made: int = 0


class SyncResult(BaseModel):
    connection_id: uuid.UUID
    started: bool
    history_id: Optional[uuid.UUID] = None
    subscriber_count: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# Read models (API / dashboard)
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    provider: str
    auth_method: str
    list_ids: List[str] = Field(default_factory=list)
    status: str
    sync_status: str
    token_expires_at: Optional[datetime] = None
    last_validated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class SyncHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    connection_id: uuid.UUID
    list_id: Optional[str] = None
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    subscriber_count: Optional[int] = None


class TriggerSyncResponse(BaseModel):
    job_id: str
    connection_id: uuid.UUID
