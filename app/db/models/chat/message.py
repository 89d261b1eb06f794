# app/db/models/chat/message.py
from enum import Enum

from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Index
from sqlalchemy.orm import relationship

from app.db.session import Base
from app.db.models.user import utcnow


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(Base):
    __tablename__ = "messages"

    # autoincrement id doubles as the insertion-order tie breaker
    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), nullable=False)
    role = Column(String(10), nullable=False)  # 'user', 'assistant' or 'system'
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    chat = relationship("Chat", back_populates="messages")

    __table_args__ = (Index("ix_messages_chat_created", "chat_id", "created_at", "id"),)
