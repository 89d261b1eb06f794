# app/db/models/__init__.py
from .user import User
from .chat import Chat, Message, MessageRole
