from typing import Iterable, Optional

from app.api.chat.schemas import ChatContext, MessageResponse
from app.config import DEFAULT_SYSTEM_PROMPT

_SPEAKERS = {"user": "User", "assistant": "Assistant", "system": "System"}


def _transcript(messages: Iterable[MessageResponse]) -> str:
    return "".join(f"{_SPEAKERS.get(m.role, m.role.title())}: {m.content}\n" for m in messages)


def build_context_prompt(
    chat_context: ChatContext,
    additional_context: Optional[str] = None,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> str:
    prompt = system_prompt

    if additional_context:
        prompt += f"\n\nAdditional context: {additional_context}"

    if chat_context.context:
        prompt += f"\n\nChat context: {chat_context.context}"

    if chat_context.messages:
        prompt += "\n\nPrevious conversation:\n" + _transcript(chat_context.messages)

    return prompt


def build_full_prompt(
    chat_context: ChatContext,
    content: str,
    additional_context: Optional[str] = None,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> str:
    """Preamble, contexts and history, then the new user turn and an open assistant turn."""
    context_prompt = build_context_prompt(chat_context, additional_context, system_prompt)
    return f"{context_prompt}\n\nUser: {content}\n\nAssistant:"
