"""
Conversation Log

Append-only chat history of one business plan. Messages are immutable and
ordered by created_at, ties broken by append order.
"""

from typing import Any, Dict, List, Optional

from bizplan.database.entity_store import EntityStore
from bizplan.exceptions import ValidationError
from bizplan.models.ai_chat_models import ChatMessage, MessageRole, ThreadEntry
from bizplan.services.change_summary import describe_change
from bizplan.services.session_lifetime import SessionLifetime
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)


class ConversationLog:
    def __init__(
        self,
        store: EntityStore,
        conversation_id: str,
        lifetime: Optional[SessionLifetime] = None,
    ):
        self.store = store
        self.conversation_id = conversation_id
        self.lifetime = lifetime or SessionLifetime()
        self._messages: List[ChatMessage] = []

    async def load(self) -> bool:
        applied, messages = await self.lifetime.guard(
            self.store.list_messages(self.conversation_id), "conversation load"
        )
        if not applied:
            return False
        # sorted() is stable, so store order breaks created_at ties
        self._messages = sorted(messages, key=lambda m: m.created_at)
        logger.info(f"✅ Loaded {len(self._messages)} messages for {self.conversation_id}")
        return True

    async def append(
        self, role: Any, content: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[ChatMessage]:
        """
        Persist a new message and add it to the end of the log

        Raises:
            ValidationError: unknown role or empty content
        """
        try:
            role = MessageRole(role)
        except ValueError as e:
            raise ValidationError(f"Invalid message role: {role!r}", field="role") from e
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content cannot be empty", field="content")

        applied, message = await self.lifetime.guard(
            self.store.create_message(
                self.conversation_id,
                {"role": role, "content": content, "metadata": metadata},
            ),
            "append message",
        )
        if not applied:
            return None
        self._messages.append(message)
        logger.info(f"✅ Appended {role.value} message {message.id}")
        return message

    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def message_ids(self) -> List[str]:
        return [m.id for m in self._messages]

    def render_thread(self, engine, doc=None, tasks=None) -> List[ThreadEntry]:
        """
        Messages in order, each with the pending changes it originated

        doc and tasks name the targets of those changes; without them the
        labels fall back to raw ids.
        """
        return [
            ThreadEntry(
                message=message,
                pending_changes=[
                    describe_change(change, doc, tasks)
                    for change in engine.changes_for_message(message.id)
                ],
            )
            for message in self._messages
        ]
