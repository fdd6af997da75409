"""
WhatsApp CRM

Contacts, conversations and purchases for WhatsApp inboxes, stored in a
key-value store (Redis), with Click-to-WhatsApp ad attribution.

Components:
- storage: key-value store contract, Redis and in-memory implementations
- services: contact repository, message log, conversations, attribution,
  purchase ledger, stats
- webhooks: Twilio inbound messages
- clients: Meta Conversions API, outbound notification webhook
- routes / main: FastAPI application
"""

__version__ = "0.1.0"
