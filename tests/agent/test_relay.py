import asyncio

import httpx
import pytest

from app.agent import events
from app.agent.chat_manager import ChatSessionManager
from app.agent.inference import OllamaInferenceAdapter
from app.agent.relay import RelayOrchestrator, RelayState
from app.core.errors import InferenceError, PersistenceError
from app.db.models.chat.message import MessageRole

from conftest import FakeConnection, FakeInference, GatedInference


def _relay(connection, chats, inference, metrics=None, flush_interval=0.02):
    return RelayOrchestrator(connection, chats, inference, metrics=metrics, flush_interval=flush_interval)


def _chunks(connection):
    return "".join(p["chunk"] for p in connection.payloads(events.LLM_RESPONSE_CHUNK))


async def _transcript(store, chat_id):
    return [(m.role, m.content) for m in await store.get_recent_messages(chat_id, 100)]


@pytest.mark.asyncio
async def test_hello_on_fresh_connection(connection, chats, store, metrics):
    inference = FakeInference(["Hi", " there", "!"])
    relay = _relay(connection, chats, inference, metrics)

    await relay.handle_prompt({"content": "Hello"})

    names = connection.events()
    assert names[0] == events.CHAT_CREATED
    assert names[1] == events.LLM_TYPING_START
    assert names[-3:] == [events.LLM_TYPING_END, events.LLM_RESPONSE_COMPLETE, events.LLM_RESPONSE_END]
    assert events.LLM_RESPONSE_CHUNK in names
    assert _chunks(connection) == "Hi there!"

    chat_id = connection.payloads(events.CHAT_CREATED)[0]["chatId"]
    complete = connection.payloads(events.LLM_RESPONSE_COMPLETE)[0]
    assert complete["chatId"] == chat_id
    assert complete["message"]["chatId"] == chat_id
    assert complete["message"]["role"] == "assistant"
    assert complete["message"]["content"] == "Hi there!"

    assert await _transcript(store, chat_id) == [("user", "Hello"), ("assistant", "Hi there!")]
    assert inference.prompts[0].endswith("User: Hello\n\nAssistant:")
    assert "Previous conversation" not in inference.prompts[0]

    assert relay.state is RelayState.IDLE
    assert relay.session is None
    assert metrics.registry.get_sample_value("llm_response_chunks_total") >= 1
    assert metrics.registry.get_sample_value("ai_response_time_seconds_count", {"model": "fake-model"}) == 1


@pytest.mark.asyncio
async def test_existing_chat_is_reused(connection, chats, store):
    chat = await chats.create_chat("user-1", title="Ongoing")
    relay = _relay(connection, chats, FakeInference(["ok"]))

    await relay.handle_prompt({"content": "Continue", "chatId": chat.id})

    assert events.CHAT_CREATED not in connection.events()
    assert connection.payloads(events.LLM_RESPONSE_COMPLETE)[0]["chatId"] == chat.id
    assert await _transcript(store, chat.id) == [("user", "Continue"), ("assistant", "ok")]


@pytest.mark.asyncio
async def test_engine_failure_mid_stream(connection, chats, store, metrics, failing_inference):
    relay = _relay(connection, chats, failing_inference, metrics)

    await relay.handle_prompt({"content": "Hello"})

    names = connection.events()
    assert names[-2:] == [events.LLM_TYPING_END, events.LLM_RESPONSE_ERROR]
    assert events.LLM_RESPONSE_COMPLETE not in names
    assert events.LLM_RESPONSE_END not in names
    # fragments that arrived before the failure are still delivered
    assert _chunks(connection) == "Hello"

    error = connection.payloads(events.LLM_RESPONSE_ERROR)[0]
    assert error == {"message": events.RESPONSE_FAILED_MESSAGE, "error": InferenceError.public_message}
    assert "connection reset" not in str(error)

    chat_id = connection.payloads(events.CHAT_CREATED)[0]["chatId"]
    assert await _transcript(store, chat_id) == [("user", "Hello")]
    assert metrics.registry.get_sample_value("relay_errors_total", {"error_type": "InferenceError"}) == 1
    assert relay.state is RelayState.IDLE
    assert connection.closed_with is None


@pytest.mark.asyncio
async def test_unauthenticated_connection_touches_no_storage(chats, store):
    connection = FakeConnection(user=None)
    relay = _relay(connection, chats, FakeInference(["never"]))

    await relay.handle_prompt({"content": "Hello"})

    assert connection.events() == [events.AUTH_ERROR]
    assert connection.closed_with[0] == events.CLOSE_POLICY_VIOLATION
    assert store.calls == []


@pytest.mark.asyncio
async def test_two_sequential_prompts(connection, chats, store):
    inference = FakeInference(["first reply"])
    relay = _relay(connection, chats, inference)

    await relay.handle_prompt({"content": "one"})
    chat_id = connection.payloads(events.CHAT_CREATED)[0]["chatId"]

    inference.fragments = ["second reply"]
    await relay.handle_prompt({"content": "two", "chatId": chat_id})

    completes = connection.payloads(events.LLM_RESPONSE_COMPLETE)
    assert [c["message"]["content"] for c in completes] == ["first reply", "second reply"]
    assert completes[0]["message"]["id"] != completes[1]["message"]["id"]
    assert connection.events().count(events.CHAT_CREATED) == 1

    assert await _transcript(store, chat_id) == [
        ("user", "one"), ("assistant", "first reply"),
        ("user", "two"), ("assistant", "second reply"),
    ]

    second_prompt = inference.prompts[1]
    assert "Previous conversation:\nUser: one\nAssistant: first reply\n" in second_prompt
    assert second_prompt.count("User: two") == 1


@pytest.mark.asyncio
async def test_prompt_while_streaming_is_rejected(connection, chats, store):
    inference = GatedInference(first="part", rest=[" done"])
    relay = _relay(connection, chats, inference, flush_interval=5)

    task = await relay.submit({"content": "first"})
    await inference.started.wait()
    assert relay.busy

    assert await relay.submit({"content": "second"}) is None
    assert connection.payloads(events.ERROR) == [{"message": events.BUSY_MESSAGE, "code": "busy"}]

    inference.release.set()
    await task

    chat_id = connection.payloads(events.CHAT_CREATED)[0]["chatId"]
    assert await _transcript(store, chat_id) == [("user", "first"), ("assistant", "part done")]
    assert not relay.busy


@pytest.mark.asyncio
async def test_disconnect_mid_stream_discards_partial_reply(connection, chats, store):
    inference = GatedInference(first="half an ans")
    relay = _relay(connection, chats, inference, flush_interval=5)

    await relay.submit({"content": "Tell me"})
    await inference.started.wait()
    assert relay.session is not None
    assert relay.session.text == "half an ans"

    await relay.cancel()

    names = connection.events()
    assert events.LLM_RESPONSE_CHUNK not in names
    assert events.LLM_RESPONSE_COMPLETE not in names
    chat_id = connection.payloads(events.CHAT_CREATED)[0]["chatId"]
    assert await _transcript(store, chat_id) == [("user", "Tell me")]
    assert relay.state is RelayState.IDLE
    assert relay.session is None


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [None, {}, {"content": ""}, {"chatId": "abc"}])
async def test_invalid_prompt_payload(connection, chats, store, payload):
    relay = _relay(connection, chats, FakeInference(["x"]))

    await relay.handle_prompt(payload)

    assert connection.events() == [events.ERROR]
    assert connection.payloads(events.ERROR)[0]["message"] == "Content is required"
    assert store.calls == []
    assert relay.state is RelayState.IDLE


@pytest.mark.asyncio
async def test_client_supplied_user_id_is_ignored(connection, chats, store):
    relay = _relay(connection, chats, FakeInference(["ok"]))

    await relay.handle_prompt({"content": "hi", "userId": "someone-else"})

    chat = connection.payloads(events.CHAT_CREATED)[0]["chat"]
    assert chat["userId"] == "user-1"
    assert await store.list_user_chats("someone-else") == []


@pytest.mark.asyncio
async def test_empty_stream_still_completes(connection, chats, store):
    relay = _relay(connection, chats, FakeInference([]))

    await relay.handle_prompt({"content": "Say nothing"})

    names = connection.events()
    assert events.LLM_RESPONSE_CHUNK not in names
    assert names[-3:] == [events.LLM_TYPING_END, events.LLM_RESPONSE_COMPLETE, events.LLM_RESPONSE_END]
    chat_id = connection.payloads(events.CHAT_CREATED)[0]["chatId"]
    assert await _transcript(store, chat_id) == [("user", "Say nothing"), ("assistant", "")]


@pytest.mark.asyncio
async def test_storage_failure_is_reported_generically(connection, chats, monkeypatch):
    async def broken_create(user_id, title, context=None):
        raise PersistenceError("INSERT INTO chats failed: disk I/O error")

    monkeypatch.setattr(chats.store, "create_chat", broken_create)
    relay = _relay(connection, chats, FakeInference(["x"]))

    await relay.handle_prompt({"content": "Hello"})

    assert connection.events() == [events.LLM_RESPONSE_ERROR]
    error = connection.payloads(events.LLM_RESPONSE_ERROR)[0]
    assert error["error"] == PersistenceError.public_message
    assert "INSERT" not in str(error)


@pytest.mark.asyncio
async def test_unexpected_error_is_not_leaked(connection, chats):
    relay = _relay(connection, chats, FakeInference(["a"], fail_with=KeyError("secret internals")))

    await relay.handle_prompt({"content": "Hello"})

    error = connection.payloads(events.LLM_RESPONSE_ERROR)[0]
    assert error["error"] == "Unexpected server error"
    assert "secret" not in str(error)


@pytest.mark.asyncio
async def test_closed_connection_does_not_break_relay(connection, chats, store):
    inference = GatedInference(first="a", rest=["b"])
    relay = _relay(connection, chats, inference, flush_interval=5)

    task = await relay.submit({"content": "hi"})
    await inference.started.wait()
    await connection.close()
    inference.release.set()
    await asyncio.wait_for(task, timeout=2)

    assert relay.state is RelayState.IDLE


@pytest.mark.asyncio
async def test_truncated_engine_stream_is_not_persisted(connection, chats, store, metrics):
    body = b'{"response": "Hel", "done": false}\n{"response": "lo", "done": false}\n'
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))
    inference = OllamaInferenceAdapter("http://ollama:11434", "gemma3:4b", client=client)
    relay = _relay(connection, chats, inference, metrics)

    await relay.handle_prompt({"content": "Hello"})
    await client.aclose()

    names = connection.events()
    assert names[-2:] == [events.LLM_TYPING_END, events.LLM_RESPONSE_ERROR]
    assert events.LLM_RESPONSE_COMPLETE not in names
    assert _chunks(connection) == "Hello"

    chat_id = connection.payloads(events.CHAT_CREATED)[0]["chatId"]
    assert await _transcript(store, chat_id) == [("user", "Hello")]
    assert metrics.registry.get_sample_value("relay_errors_total", {"error_type": "InferenceError"}) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("earlier, expected", [
    (3, ["m0", "m1", "m2"]),
    (4, ["m1", "m2", "m3"]),
])
async def test_prompt_history_fills_context_window(connection, store, earlier, expected):
    chats = ChatSessionManager(store, context_limit=3)
    chat = await chats.create_chat("user-1")
    for i in range(earlier):
        role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
        await chats.append_message(chat.id, "user-1", role, f"m{i}")
    inference = FakeInference(["ok"])
    relay = _relay(connection, chats, inference)

    await relay.handle_prompt({"content": "latest", "chatId": chat.id})

    prompt = inference.prompts[0]
    history = prompt.split("Previous conversation:\n", 1)[1].split("\n\nUser: latest", 1)[0]
    assert [line.split(": ", 1)[1] for line in history.splitlines()] == expected
    assert prompt.count("latest") == 1
