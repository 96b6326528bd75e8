"""orderflow — multi-tenant order confirmation and delivery orchestrator.

Receives Shopify order webhooks, confirms orders with customers over
WhatsApp, books courier shipments and reconciles delivery status.
"""

__version__ = "0.3.0"
