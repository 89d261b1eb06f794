from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime

# Wire format is camelCase (chatId, createdAt ...), attribute names stay snake_case.
_wire_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


# -----------------------------
# 🧾 Message Schemas
# -----------------------------

class MessageResponse(BaseModel):
    id: int
    chat_id: str
    role: str
    content: str
    created_at: datetime

    model_config = _wire_config


# -----------------------------
# 📁 Chat Schemas
# -----------------------------

class ChatResponse(BaseModel):
    id: str
    user_id: str
    title: str
    context: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = _wire_config


class ChatWithMessagesResponse(ChatResponse):
    messages: List[MessageResponse] = []


class ChatContext(BaseModel):
    """Prompt material for one chat: its free-text context plus recent messages."""

    context: Optional[str] = None
    messages: List[MessageResponse] = []


# -----------------------------
# ✏️ Create / Rename / Delete
# -----------------------------

class ChatCreateRequest(BaseModel):
    title: str = Field(default="New Chat", max_length=100)
    context: Optional[str] = None


class ChatRenameRequest(BaseModel):
    title: str = Field(min_length=1, max_length=100)


class ChatRenameResponse(BaseModel):
    detail: str
    new_title: str


class ChatDeleteResponse(BaseModel):
    detail: str


# -----------------------------
# 🚀 Relay payloads
# -----------------------------

class ChatWithLLMRequest(BaseModel):
    """Body of a ``chat-with-llm`` event."""

    content: str = Field(min_length=1)
    chat_id: Optional[str] = None
    user_id: Optional[str] = None  # informational only, never trusted
    context: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeleteChatRequest(BaseModel):
    chat_id: str = Field(min_length=1)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
