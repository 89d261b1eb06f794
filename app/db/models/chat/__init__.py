# app/db/models/chat/__init__.py
from .chat import Chat
from .message import Message, MessageRole
