from typing import Optional

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant. Provide clear, accurate, and helpful responses."


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./llm_chat.db"
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    ENV: str = "local"  # Environment setting
    LOG_LEVEL: str = "INFO"

    # Inference engine ("ollama" native API or "openai" compatible endpoint)
    INFERENCE_BACKEND: str = "ollama"
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "gemma3:4b"
    OLLAMA_TEMPERATURE: float = 0.7
    INFERENCE_TIMEOUT_SECS: Optional[float] = None

    # Relay behaviour
    FLUSH_INTERVAL_MS: int = 100
    CONTEXT_MESSAGE_LIMIT: int = 20
    DEFAULT_CHAT_TITLE: str = "New Chat"
    SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def flush_interval(self) -> float:
        return self.FLUSH_INTERVAL_MS / 1000.0


settings = Settings()
