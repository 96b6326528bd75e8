"""External service clients: WhatsApp, Shopify and courier."""
