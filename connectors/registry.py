"""
ConnectorRegistry — maps each EspProvider to its connector implementation.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from config.settings import config
from connectors.active_campaign import ActiveCampaignConnector
from connectors.base import BaseConnector
from connectors.beehiiv import BeehiivConnector
from connectors.brevo import BrevoConnector
from connectors.campaign_monitor import CampaignMonitorConnector
from connectors.constant_contact import ConstantContactConnector
from connectors.customer_io import CustomerIoConnector
from connectors.email_octopus import EmailOctopusConnector
from connectors.ghost import GhostConnector
from connectors.iterable import IterableConnector
from connectors.kit import KitConnector
from connectors.mailchimp import MailchimpConnector
from connectors.mailerlite import MailerLiteConnector
from connectors.omeda import OmedaConnector
from connectors.postup import PostUpConnector
from connectors.sailthru import SailthruConnector
from connectors.sendgrid import SendGridConnector
from connectors.sparkpost import SparkPostConnector
from utils.schemas import AuthMethod, EspProvider

logger = logging.getLogger(__name__)

# ── All known connectors; add new ones here ──────────────────────────────


def _default_connectors() -> List[BaseConnector]:
    return [
        MailerLiteConnector(),
        BrevoConnector(),
        EmailOctopusConnector(),
        ActiveCampaignConnector(),
        KitConnector(),
        MailchimpConnector(),
        CampaignMonitorConnector(),
        ConstantContactConnector(),
        CustomerIoConnector(),
        GhostConnector(),
        IterableConnector(),
        SendGridConnector(),
        SparkPostConnector(),
        SailthruConnector(),
        OmedaConnector(),
        PostUpConnector(),
        BeehiivConnector(),
    ]


class ConnectorRegistry:
    """Singleton registry for all ESP connectors."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._connectors = {}
            cls._instance._discovered = False
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton (test teardown)."""
        cls._instance = None

    def discover(self) -> None:
        """Register all configured connectors."""
        if self._discovered:
            return
        for conn in _default_connectors():
            if conn.provider in self._connectors:
                continue
            if conn.is_configured():
                self.register(conn)
            else:
                logger.warning("Connector %s skipped: not configured", conn.provider.value)
        self._discovered = True

    def register(self, connector: BaseConnector) -> None:
        self._connectors[connector.provider] = connector
        logger.info(
            "Connector registered: %s (%s)",
            connector.display_name,
            connector.provider.value,
        )

    def get(self, provider: Union[EspProvider, str]) -> Optional[BaseConnector]:
        """Get a connector by provider; None for unknown providers."""
        self.discover()
        try:
            key = EspProvider(provider)
        except ValueError:
            return None
        return self._connectors.get(key)

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all registered connectors."""
        self.discover()
        providers = []
        for conn in self._connectors.values():
            oauth_settings = config.get_oauth_settings(conn.provider.value) or {}
            providers.append(
                {
                    "provider": conn.provider.value,
                    "display_name": conn.display_name,
                    "auth_methods": [m.value for m in conn.auth_methods],
                    "oauth_configured": conn.supports(AuthMethod.OAUTH)
                    and bool(
                        oauth_settings.get("client_id")
                        and oauth_settings.get("client_secret")
                        and oauth_settings.get("token_url")
                    ),
                }
            )
        return providers

    def list_configured(self) -> List[str]:
        """Return names of registered connectors."""
        self.discover()
        return [p.value for p in self._connectors.keys()]
