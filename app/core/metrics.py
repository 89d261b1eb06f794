from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class RelayMetrics:
    """Prometheus collectors for the relay, registered on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.active_connections = Gauge(
            "websocket_active_connections",
            "Number of active WebSocket connections",
            registry=self.registry,
        )
        self.chat_messages = Counter(
            "chat_messages_total",
            "Total number of persisted chat messages",
            ["role"],
            registry=self.registry,
        )
        self.chunks_emitted = Counter(
            "llm_response_chunks_total",
            "Coalesced response chunks sent to clients",
            registry=self.registry,
        )
        self.relay_errors = Counter(
            "relay_errors_total",
            "Prompts that ended in an error event",
            ["error_type"],
            registry=self.registry,
        )
        self.ai_response_time = Histogram(
            "ai_response_time_seconds",
            "AI response time in seconds",
            ["model"],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
            registry=self.registry,
        )

    def connection_opened(self) -> None:
        self.active_connections.inc()

    def connection_closed(self) -> None:
        self.active_connections.dec()

    def message_persisted(self, role: str) -> None:
        self.chat_messages.labels(role=role).inc()

    def chunk_emitted(self) -> None:
        self.chunks_emitted.inc()

    def relay_failed(self, error: BaseException) -> None:
        self.relay_errors.labels(error_type=type(error).__name__).inc()

    def observe_response_time(self, model: str, seconds: float) -> None:
        self.ai_response_time.labels(model=model).observe(seconds)

    def render(self) -> bytes:
        return generate_latest(self.registry)
