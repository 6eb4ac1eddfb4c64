"""
💬 WhatsApp Claim Intake Package
--------------------------------
Conversation lifecycle engine for the insurance-claim intake dialogue:
identity normalization, durable conversation records, the stage machine,
the send window and the timing sweep.
"""

from .config import settings
from .errors import IntakeError, InvalidIdentity, StoreError, TransportError

__all__ = [
    "settings",
    "IntakeError",
    "InvalidIdentity",
    "StoreError",
    "TransportError",
]
