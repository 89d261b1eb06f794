"""
Service container for the relay.

Everything the websocket endpoint needs is built once at start-up and hung off
``app.state.services``; tests swap individual collaborators for fakes.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from fastapi import FastAPI
from sqlalchemy.orm import Session

from app.agent.chat_manager import ChatSessionManager, ChatStore
from app.agent.connection import ConnectionRegistry
from app.agent.inference import InferenceAdapter, build_inference_adapter
from app.config import Settings
from app.core.metrics import RelayMetrics

logger = logging.getLogger(__name__)


@dataclass
class RelayServices:
    settings: Settings
    chats: ChatSessionManager
    inference: InferenceAdapter
    metrics: RelayMetrics
    connections: ConnectionRegistry


def build_services(settings: Settings, session_factory: Callable[[], Session]) -> RelayServices:
    metrics = RelayMetrics()
    chats = ChatSessionManager(
        ChatStore(session_factory),
        context_limit=settings.CONTEXT_MESSAGE_LIMIT,
        default_title=settings.DEFAULT_CHAT_TITLE,
        metrics=metrics,
    )
    return RelayServices(
        settings=settings,
        chats=chats,
        inference=build_inference_adapter(settings),
        metrics=metrics,
        connections=ConnectionRegistry(),
    )


def wire_services(app: FastAPI, settings: Settings, session_factory: Callable[[], Session]) -> RelayServices:
    """Wire all relay services into app.state on startup."""
    logger.info("Wiring relay services...")
    services = build_services(settings, session_factory)
    app.state.services = services
    logger.info("Relay services ready (inference model: %s)", services.inference.model_name)
    return services


async def shutdown_services(app: FastAPI) -> None:
    services = getattr(app.state, "services", None)
    if services is None:
        return
    aclose = getattr(services.inference, "aclose", None)
    if aclose is not None:
        await aclose()
