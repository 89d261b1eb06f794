"""
Per-connection relay: prompt -> chat -> inference stream -> chunks -> transcript.

One ``RelayOrchestrator`` lives as long as its connection and runs at most one
prompt at a time. Each prompt gets a fresh ``StreamingSession`` holding the token
buffer and the reply collected so far; the session is dropped when the prompt
finishes, fails or is cancelled.
"""

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from app.agent import events
from app.agent.chat_manager import ChatSessionManager
from app.agent.connection import Connection
from app.agent.inference import InferenceAdapter
from app.agent.prompts import build_full_prompt
from app.agent.token_buffer import DEFAULT_FLUSH_INTERVAL, TokenBuffer
from app.api.chat.schemas import ChatWithLLMRequest
from app.config import DEFAULT_SYSTEM_PROMPT
from app.core.errors import AuthenticationError, InvalidPromptError, RelayError
from app.core.metrics import RelayMetrics
from app.core.security import TokenIdentity
from app.db.models.chat.message import MessageRole

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    RESOLVING_CHAT = "resolving_chat"
    STREAMING = "streaming"
    PERSISTING = "persisting"
    ERRORED = "errored"


@dataclass
class StreamingSession:
    chat_id: str
    user_id: str
    buffer: TokenBuffer
    reply: List[str] = field(default_factory=list)
    typing_started: bool = False
    in_flight: bool = True

    def append(self, fragment: str) -> None:
        if not fragment:
            return
        self.reply.append(fragment)
        self.buffer.append(fragment)

    @property
    def text(self) -> str:
        return "".join(self.reply)


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


class RelayOrchestrator:
    def __init__(
        self,
        connection: Connection,
        chats: ChatSessionManager,
        inference: InferenceAdapter,
        metrics: Optional[RelayMetrics] = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ):
        self.connection = connection
        self.chats = chats
        self.inference = inference
        self.metrics = metrics
        self.flush_interval = flush_interval
        self.system_prompt = system_prompt

        self._state = RelayState.IDLE
        self._session: Optional[StreamingSession] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is not RelayState.IDLE

    @property
    def session(self) -> Optional[StreamingSession]:
        return self._session

    # ---------------------------------------------------
    # Entry points
    # ---------------------------------------------------

    async def submit(self, payload: Any) -> Optional[asyncio.Task]:
        """
        Start relaying one prompt in the background.

        Returns the task, or None when a prompt is already in flight on this
        connection; in that case the client is told and the new prompt is dropped.
        """
        if self.busy:
            logger.warning("Connection %s busy (%s), rejecting prompt", self.connection.id, self._state.value)
            await self.connection.emit(events.ERROR, {"message": events.BUSY_MESSAGE, "code": "busy"})
            return None

        # claimed before the task exists so a second submit cannot slip in
        self._state = RelayState.AUTHENTICATING
        self._task = asyncio.create_task(self._relay(payload))
        return self._task

    async def handle_prompt(self, payload: Any) -> None:
        """Relay one prompt and wait for it to finish."""
        task = await self.submit(payload)
        if task is not None:
            await task

    async def cancel(self) -> None:
        """Stop an in-flight prompt (client went away). Its partial reply is discarded."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ---------------------------------------------------
    # State machine
    # ---------------------------------------------------

    async def _relay(self, payload: Any) -> None:
        started = time.monotonic()
        session: Optional[StreamingSession] = None
        chat_id: Optional[str] = None
        try:
            identity = self._authenticate()
            request = self._parse(payload)

            self._state = RelayState.RESOLVING_CHAT
            chat, created = await self.chats.resolve_or_create_chat(request.chat_id, identity.user_id)
            chat_id = chat.id
            if created:
                await self.connection.emit(events.CHAT_CREATED, {"chatId": chat.id, "chat": _dump(chat)})

            logger.info(
                "Processing LLM request: user_id=%s chat_id=%s content_length=%d",
                identity.user_id, chat.id, len(request.content),
            )
            user_message = await self.chats.append_message(chat.id, identity.user_id, MessageRole.USER, request.content)

            self._state = RelayState.STREAMING
            session = StreamingSession(
                chat_id=chat.id,
                user_id=identity.user_id,
                buffer=TokenBuffer(self._emit_chunk, self.flush_interval),
            )
            self._session = session
            await self.connection.emit(events.LLM_TYPING_START)
            session.typing_started = True

            limit = self.chats.context_limit
            # one extra row for the turn just stored; build_full_prompt appends it itself
            chat_context = await self.chats.build_context(chat.id, identity.user_id, limit=limit + 1)
            history = [m for m in chat_context.messages if m.id != user_message.id]
            chat_context.messages = history[-limit:]
            prompt = build_full_prompt(chat_context, request.content, request.context, self.system_prompt)

            await self._stream(session, prompt)

            self._state = RelayState.PERSISTING
            await self._end_typing(session)
            reply = await self.chats.append_message(chat.id, identity.user_id, MessageRole.ASSISTANT, session.text)

            await self.connection.emit(events.LLM_RESPONSE_COMPLETE, {"message": _dump(reply), "chatId": chat.id})
            await self.connection.emit(events.LLM_RESPONSE_END)

            duration = time.monotonic() - started
            if self.metrics:
                self.metrics.observe_response_time(self.inference.model_name, duration)
            logger.info(
                "LLM response completed: user_id=%s chat_id=%s response_length=%d chunks=%d duration=%.3fs",
                identity.user_id, chat.id, len(session.text), session.buffer.chunks_emitted, duration,
            )

        except AuthenticationError as e:
            self._state = RelayState.ERRORED
            logger.warning("Prompt on unauthenticated connection %s: %s", self.connection.id, e)
            await self.connection.emit(events.AUTH_ERROR, {"message": e.public_message})
            await self.connection.close(code=events.CLOSE_POLICY_VIOLATION, reason="Authentication failed")

        except InvalidPromptError as e:
            self._state = RelayState.ERRORED
            await self.connection.emit(events.ERROR, {"message": e.public_message})

        except asyncio.CancelledError:
            if session is not None:
                session.buffer.discard()
                logger.info(
                    "Relay cancelled mid-stream: chat_id=%s, %d characters not persisted",
                    session.chat_id, len(session.text),
                )
            raise

        except Exception as e:
            self._state = RelayState.ERRORED
            await self._fail(session, chat_id, e)

        finally:
            if session is not None:
                session.in_flight = False
            self._session = None
            self._task = None
            self._state = RelayState.IDLE

    def _authenticate(self) -> TokenIdentity:
        # identity is bound once at connection open; nothing to re-verify here
        if self.connection.user is None:
            raise AuthenticationError("connection has no bound identity", public_message="Authentication required")
        return self.connection.user

    def _parse(self, payload: Any) -> ChatWithLLMRequest:
        try:
            request = ChatWithLLMRequest.model_validate(payload or {})
        except ValidationError as e:
            raise InvalidPromptError(str(e)) from e

        if request.user_id and request.user_id != self.connection.user.user_id:
            logger.warning(
                "Ignoring client-supplied userId %s on connection %s bound to %s",
                request.user_id, self.connection.id, self.connection.user.user_id,
            )
        return request

    async def _stream(self, session: StreamingSession, prompt: str) -> None:
        try:
            async with aclosing(self.inference.stream(prompt)) as fragments:
                async for fragment in fragments:
                    session.append(fragment)
        except Exception:
            # whatever already arrived still reaches the client
            await session.buffer.close()
            raise
        await session.buffer.close()

    async def _emit_chunk(self, chunk: str) -> None:
        await self.connection.emit(events.LLM_RESPONSE_CHUNK, {"chunk": chunk})
        if self.metrics:
            self.metrics.chunk_emitted()

    async def _end_typing(self, session: Optional[StreamingSession]) -> None:
        if session is not None and session.typing_started:
            session.typing_started = False
            await self.connection.emit(events.LLM_TYPING_END)

    async def _fail(self, session: Optional[StreamingSession], chat_id: Optional[str], error: Exception) -> None:
        if isinstance(error, RelayError):
            logger.error(
                "LLM request failed: user_id=%s chat_id=%s error=%s",
                self.connection.user.user_id, chat_id or "unknown", error,
            )
            public = error.public_message
        else:
            logger.exception(
                "LLM request failed unexpectedly: user_id=%s chat_id=%s",
                self.connection.user.user_id, chat_id or "unknown",
            )
            public = RelayError.public_message

        if self.metrics:
            self.metrics.relay_failed(error)

        await self._end_typing(session)
        await self.connection.emit(
            events.LLM_RESPONSE_ERROR,
            {"message": events.RESPONSE_FAILED_MESSAGE, "error": public},
        )
