# Event names on the websocket, kept identical to what existing clients listen for.

# client -> server
CHAT_WITH_LLM = "chat-with-llm"
CREATE_CHAT = "create-chat"
GET_USER_CHATS = "get-user-chats"
DELETE_CHAT = "delete-chat"

# server -> client
LLM_TYPING_START = "llm-typing-start"
LLM_RESPONSE_CHUNK = "llm-response-chunk"
LLM_TYPING_END = "llm-typing-end"
LLM_RESPONSE_COMPLETE = "llm-response-complete"
LLM_RESPONSE_END = "llm-response-end"
LLM_RESPONSE_ERROR = "llm-response-error"
CHAT_CREATED = "chat-created"
USER_CHATS = "user-chats"
CHAT_DELETED = "chat-deleted"
AUTH_ERROR = "auth_error"
ERROR = "error"

# websocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008

RESPONSE_FAILED_MESSAGE = "Failed to get AI response. Please try again."
BUSY_MESSAGE = "A response is already being generated. Wait for it to finish."
