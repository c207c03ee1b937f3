"""
connectors — ESP integration module.

Provides a uniform connector framework that handles:
  • One adapter per ESP (MailerLite, Brevo, EmailOctopus, ActiveCampaign, Kit)
  • Translation of provider failures into a shared error taxonomy
  • AES-256-GCM encryption of stored credentials
  • OAuth token refresh and authorization-code exchange

Each provider is a subclass of BaseConnector, looked up via ConnectorRegistry.
"""
