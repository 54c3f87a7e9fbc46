"""
router.py: relay-side delivery of sealed envelopes.

At-most-once, best effort: if the recipient is online the envelope is
forwarded once, untouched; otherwise it is dropped without telling the
sender. No acks, no retries, no offline queue.
"""

import logging
from typing import Any, Awaitable, Callable, Dict

from . import messages as m
from .crypto import EncryptedEnvelope
from .directory import Directory

logger = logging.getLogger(__name__)

Deliver = Callable[[str, Dict[str, Any]], Awaitable[None]]


class Router:
    def __init__(self, directory: Directory, deliver: Deliver) -> None:
        self.directory = directory
        self.deliver = deliver

    async def route(self, envelope: EncryptedEnvelope, sender_identity: str,
                    recipient_identity: str) -> bool:
        """Forward to the recipient if present. Returns whether a delivery was attempted."""
        sender = self.directory.get(sender_identity)
        if sender is None:
            logger.debug("Dropping message from unregistered connection %s", sender_identity)
            return False
        if recipient_identity not in self.directory:
            # RecipientUnavailable: nothing goes back to the sender.
            logger.debug("Dropping message for absent recipient %s", recipient_identity)
            return False

        frame = m.private_message_in(sender_identity, sender.display_name, envelope)
        try:
            await self.deliver(recipient_identity, frame)
        except (ConnectionError, OSError) as exc:
            logger.info("Delivery to %s failed: %s", recipient_identity, exc)
            return False
        return True
