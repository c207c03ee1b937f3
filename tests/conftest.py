"""
Shared fixtures: in-memory SQLite store, a vault, and a scriptable connector.
"""

import uuid
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from connectors.base import BaseConnector
from connectors.encryption import CredentialVault
from connectors.registry import ConnectorRegistry
from database import helpers
from database.models import Base
from utils.schemas import AuthMethod, Credential, EspList, EspProvider, RawSubscriber, SubscriberStatus


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="session")
def vault():
    return CredentialVault("test-master-secret")


@pytest.fixture(autouse=True)
def _fresh_registry():
    ConnectorRegistry.reset()
    yield
    ConnectorRegistry.reset()


def raw(external_id: str, email: Optional[str] = None, *flags: SubscriberStatus, **extra) -> RawSubscriber:
    return RawSubscriber(
        external_id=external_id,
        email=email if email is not None else f"{external_id.lower()}@example.com",
        flags=frozenset(flags),
        extra=extra,
    )


class FakeConnector(BaseConnector):
    """In-memory connector whose lists, pages and failures are set by the test."""

    def __init__(self, provider: EspProvider = EspProvider.MAILERLITE, list_ids=("L",)):
        super().__init__()
        self._provider = provider
        self.lists: List[EspList] = [EspList(id=lid, name=f"List {lid}") for lid in list_ids]
        self.pages: Dict[str, List[RawSubscriber]] = {}
        self.failures: List[Exception] = []
        self.list_failures: List[Exception] = []
        self.calls: List[tuple] = []

    @property
    def provider(self) -> EspProvider:
        return self._provider

    @property
    def display_name(self) -> str:
        return f"Fake {self._provider.value}"

    @property
    def auth_methods(self):
        return (AuthMethod.API_KEY, AuthMethod.OAUTH)

    async def fetch_lists(self, credential: Credential) -> List[EspList]:
        self.calls.append(("fetch_lists", credential.reveal()))
        if self.list_failures:
            raise self.list_failures.pop(0)
        return list(self.lists)

    async def fetch_subscribers(self, credential: Credential, list_id: str) -> List[RawSubscriber]:
        self.calls.append(("fetch_subscribers", credential.reveal(), list_id))
        if self.failures:
            raise self.failures.pop(0)
        return list(self.pages.get(list_id, []))

    async def get_subscriber_count(self, credential: Credential, list_id: str) -> int:
        return len(self.pages.get(list_id, []))

    async def validate_credential(self, credential: Credential, list_id: Optional[str] = None) -> bool:
        self.calls.append(("validate", credential.reveal(), list_id))
        if credential.reveal() == "bad-key":
            return False
        return list_id is None or any(item.id == list_id for item in self.lists)

    async def _probe(self, client, credential: Credential) -> None:
        return None


@pytest.fixture
def fake_connector():
    connector = FakeConnector()
    ConnectorRegistry().register(connector)
    return connector


@pytest.fixture
def make_connection(session_factory, vault):
    async def _make(**overrides):
        values = dict(
            user_id=uuid.uuid4(),
            provider="mailerlite",
            auth_method="api_key",
            list_ids=["L"],
            encrypted_api_key=vault.encrypt("key-123"),
        )
        values.update(overrides)
        async with session_factory() as session:
            conn = await helpers.create_connection(session, **values)
            await session.commit()
        return conn

    return _make
