"""
Chat resolution and persistence for the relay.

``ChatStore`` is the storage service: every call opens its own SQLAlchemy session in
a worker thread and hands back detached pydantic snapshots, so nothing ORM-bound
leaks into the event loop. ``ChatSessionManager`` layers the relay's rules (lazy chat
creation, ownership, context window) on top of it.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.chat import services
from app.api.chat.schemas import ChatContext, ChatResponse, MessageResponse
from app.core.errors import NotFoundError, PersistenceError
from app.core.metrics import RelayMetrics
from app.db.models.chat.message import MessageRole

logger = logging.getLogger(__name__)


class ChatStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def create_chat(self, user_id: str, title: str, context: Optional[str] = None) -> ChatResponse:
        def work(db: Session) -> ChatResponse:
            return ChatResponse.model_validate(services.create_chat(db, user_id, title, context))

        return await self._run("create_chat", work)

    async def get_chat_by_id(self, chat_id: str, user_id: str) -> Optional[ChatResponse]:
        def work(db: Session) -> Optional[ChatResponse]:
            chat = services.get_chat_by_id(db, chat_id, user_id)
            return ChatResponse.model_validate(chat) if chat else None

        return await self._run("get_chat_by_id", work)

    async def list_user_chats(self, user_id: str) -> List[ChatResponse]:
        def work(db: Session) -> List[ChatResponse]:
            return [ChatResponse.model_validate(c) for c in services.list_user_chats(db, user_id)]

        return await self._run("list_user_chats", work)

    async def delete_chat(self, chat_id: str, user_id: str) -> bool:
        def work(db: Session) -> bool:
            chat = services.get_chat_by_id(db, chat_id, user_id)
            if chat is None:
                return False
            services.delete_chat(db, chat)
            return True

        return await self._run("delete_chat", work)

    async def append_message(self, chat_id: str, user_id: str, role: MessageRole, content: str) -> MessageResponse:
        def work(db: Session) -> MessageResponse:
            return MessageResponse.model_validate(services.append_message(db, chat_id, user_id, role, content))

        return await self._run("append_message", work)

    async def get_recent_messages(self, chat_id: str, limit: int) -> List[MessageResponse]:
        def work(db: Session) -> List[MessageResponse]:
            return [MessageResponse.model_validate(m) for m in services.get_recent_messages(db, chat_id, limit)]

        return await self._run("get_recent_messages", work)

    async def _run(self, operation: str, work: Callable[[Session], object]):
        return await asyncio.to_thread(self._call, operation, work)

    def _call(self, operation: str, work: Callable[[Session], object]):
        db = self._session_factory()
        try:
            return work(db)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Storage operation %s failed", operation)
            raise PersistenceError(f"{operation} failed: {e}") from e
        finally:
            db.close()


class ChatSessionManager:
    def __init__(
        self,
        store: ChatStore,
        context_limit: int = 20,
        default_title: str = "New Chat",
        metrics: Optional[RelayMetrics] = None,
    ):
        self.store = store
        self.context_limit = context_limit
        self.default_title = default_title
        self.metrics = metrics

    async def resolve_or_create_chat(self, chat_id: Optional[str], user_id: str) -> Tuple[ChatResponse, bool]:
        """
        Return ``(chat, created)``.

        An absent id, an unknown id and an id owned by someone else all lead to a
        fresh chat; the caller announces it so the client can adopt the new id.
        """
        if chat_id:
            existing = await self.store.get_chat_by_id(chat_id, user_id)
            if existing is not None:
                return existing, False
            logger.info("Chat %s not found for user %s, starting a new one", chat_id, user_id)

        chat = await self.store.create_chat(user_id, self.default_title)
        logger.info("Chat created: chat_id=%s user_id=%s", chat.id, user_id)
        return chat, True

    async def create_chat(self, user_id: str, title: Optional[str] = None, context: Optional[str] = None) -> ChatResponse:
        chat = await self.store.create_chat(user_id, title or self.default_title, context)
        logger.info("Chat created: chat_id=%s user_id=%s", chat.id, user_id)
        return chat

    async def list_chats(self, user_id: str) -> List[ChatResponse]:
        return await self.store.list_user_chats(user_id)

    async def delete_chat(self, chat_id: str, user_id: str) -> None:
        if not await self.store.delete_chat(chat_id, user_id):
            raise NotFoundError(f"chat {chat_id} not found for user {user_id}")
        logger.info("Chat deleted: chat_id=%s user_id=%s", chat_id, user_id)

    async def append_message(self, chat_id: str, user_id: str, role: MessageRole, content: str) -> MessageResponse:
        message = await self.store.append_message(chat_id, user_id, role, content)
        if self.metrics:
            self.metrics.message_persisted(message.role)
        logger.debug("Message %s appended to chat %s (%s)", message.id, chat_id, message.role)
        return message

    async def build_context(self, chat_id: str, user_id: str, limit: Optional[int] = None) -> ChatContext:
        chat = await self.store.get_chat_by_id(chat_id, user_id)
        if chat is None:
            raise NotFoundError(f"chat {chat_id} not found for user {user_id}")

        messages = await self.store.get_recent_messages(chat_id, limit or self.context_limit)
        return ChatContext(context=chat.context, messages=messages)
