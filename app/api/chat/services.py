# app/api/chat/services.py

from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.db.models.chat.chat import Chat
from app.db.models.chat.message import Message, MessageRole
from app.db.models.user import utcnow


# ---------------------------------------------------
# 🛠️ Chat Management
# ---------------------------------------------------

def create_chat(db: Session, user_id: str, title: str = "New Chat", context: Optional[str] = None) -> Chat:
    """Create a new chat owned by ``user_id``."""
    chat = Chat(user_id=user_id, title=title, context=context)
    db.add(chat)
    db.commit()
    db.refresh(chat)
    return chat


def get_chat_by_id(db: Session, chat_id: str, user_id: str) -> Optional[Chat]:
    """Fetch a chat, but only if ``user_id`` owns it."""
    if not chat_id:
        return None
    return db.query(Chat).filter(Chat.id == chat_id, Chat.user_id == user_id).first()


def list_user_chats(db: Session, user_id: str) -> List[Chat]:
    """List all chats for a user, most recently active first."""
    return db.query(Chat)\
             .filter(Chat.user_id == user_id)\
             .order_by(Chat.updated_at.desc(), Chat.created_at.desc())\
             .all()


def delete_chat(db: Session, chat: Chat) -> None:
    """Delete a chat and its messages."""
    db.delete(chat)
    db.commit()


def rename_chat(db: Session, chat: Chat, new_title: str) -> Chat:
    chat.title = new_title
    chat.updated_at = utcnow()
    db.commit()
    db.refresh(chat)
    return chat


# ---------------------------------------------------
# 🛠️ Message Handling
# ---------------------------------------------------

def append_message(db: Session, chat_id: str, user_id: str, role: MessageRole, content: str) -> Message:
    """Persist a message and bump the chat's updated_at."""
    chat = get_chat_by_id(db, chat_id, user_id)
    if chat is None:
        raise NotFoundError(f"chat {chat_id} not found for user {user_id}")

    message = Message(
        chat_id=chat.id,
        user_id=user_id,
        role=MessageRole(role).value,
        content=content,
    )
    db.add(message)
    chat.updated_at = utcnow()

    db.commit()
    db.refresh(message)
    return message


def get_recent_messages(db: Session, chat_id: str, limit: int = 20) -> List[Message]:
    """The newest ``limit`` messages of a chat, returned oldest first."""
    newest_first = db.query(Message)\
                     .filter(Message.chat_id == chat_id)\
                     .order_by(Message.created_at.desc(), Message.id.desc())\
                     .limit(limit)\
                     .all()
    return list(reversed(newest_first))
