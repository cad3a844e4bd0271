# conversation.py
"""
Reply orchestration for inbound WhatsApp messages.

Each inbound message loads the sender's transcript, asks the completion
service for the next turn, replies, and stores the extended transcript.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from transcript_store import SYSTEM_ROLE, USER_ROLE, KeyedLocks, Turn
from whatsapp_session import InboundMessage

logger = logging.getLogger("conversation")

EXIT_PHRASE = "i don't need your services"
CLOSING_MESSAGE = "Thank you for your time. If you change your mind, feel free to reach out!"


def wants_to_stop(text: str) -> bool:
    return EXIT_PHRASE in (text or "").lower()


class ReplyOrchestrator:
    def __init__(self, store: Any, completer: Any, session: Any, locks: Optional[KeyedLocks] = None):
        self.store = store
        self.completer = completer
        self.session = session
        self.locks = locks or KeyedLocks()

    def handle_message(self, message: InboundMessage) -> Optional[str]:
        """Answer one inbound message; returns the reply text sent."""
        user_id = message.user_id
        try:
            with self.locks.hold(user_id):
                transcript = self.store.load(user_id) or []
                transcript.append(Turn(USER_ROLE, message.body))

                # the closing exchange is never persisted
                if wants_to_stop(message.body):
                    self.session.send(message.chat_id, CLOSING_MESSAGE, reply_to=message.message_id)
                    logger.info("User %s opted out", user_id)
                    return CLOSING_MESSAGE

                reply = self.completer.complete(transcript)
                self.session.send(message.chat_id, reply, reply_to=message.message_id)

                transcript.append(Turn(SYSTEM_ROLE, reply))
                self.store.save(user_id, transcript)
        except Exception:
            logger.exception("Failed to answer message from %s", user_id)
            raise
        logger.info("Replied to %s (transcript now %s turns)", user_id, len(transcript))
        return reply
