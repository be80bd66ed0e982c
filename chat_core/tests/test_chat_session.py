import asyncio
import json

import pytest

from chat_core.agents.chat_session import ChatSession, SessionState
from chat_core.agents.retry import RetryOptions
from chat_core.config.session import SessionConfig
from chat_core.domain.exceptions import ApiError, ExchangeError, RateLimitError, ValidationError
from chat_core.domain.models import (
    Candidate,
    FunctionCall,
    FunctionResponse,
    GenerateContentResponse,
    Part,
    Turn,
    UsageMetadata,
)
from chat_core.providers.registry import DEFAULT_MODEL, FALLBACK_MODEL
from chat_core.telemetry.behavior_log import BehaviorLogWriter
from chat_core.telemetry.identity import IdentityHasher


class FakeStream:
    def __init__(self, items):
        self._items = list(items)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        item = self._items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self):
        self.closed = True


class FakeGenerator:
    name = "fake"

    def __init__(self, responses=None, streams=None):
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.requests = []
        self.opened = []

    async def generate_content(self, request, prompt_id, request_id):
        self.requests.append((request, prompt_id, request_id))
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def generate_content_stream(self, request, prompt_id, request_id):
        self.requests.append((request, prompt_id, request_id))
        item = self.streams.pop(0)
        if isinstance(item, BaseException):
            raise item
        stream = FakeStream(item)
        self.opened.append(stream)
        return stream


def text_response(text, usage=True, thought=False):
    return GenerateContentResponse(
        candidates=[Candidate(content=Turn(role="model", parts=[Part(text=text, thought=thought or None)]))],
        usage_metadata=UsageMetadata(input_token_count=3, output_token_count=5) if usage else None,
    )


def user(text):
    return Turn(role="user", parts=[Part(text=text)])


def model(text):
    return Turn(role="model", parts=[Part(text=text)])


def make_session(tmp_path, generator, **config_kw):
    writer = BehaviorLogWriter(
        session_id="sess-0001",
        log_dir=tmp_path,
        hasher=IdentityHasher(environ={"QWEN_STUDENT_ID": "s"}),
    )
    config = SessionConfig(session_id="sess-0001", model=DEFAULT_MODEL, **config_kw)
    session = ChatSession(
        config,
        generator,
        behavior_log=writer,
        retry_options=RetryOptions(max_attempts=2, initial_delay=0, max_delay=0),
    )
    return session, writer


def events(writer):
    if not writer.current_path.exists():
        return []
    return [json.loads(line) for line in writer.current_path.read_text(encoding="utf-8").splitlines()]


async def collect(agen):
    return [chunk async for chunk in agen]


def test_send_correlates_request_and_response(tmp_path):
    gen = FakeGenerator(responses=[text_response("hi there")])
    session, writer = make_session(tmp_path, gen)
    resp = asyncio.run(session.send("hello", "p1"))
    assert resp.text == "hi there"

    request, prompt_id, request_id = gen.requests[0]
    assert prompt_id == "p1"
    assert request.model == DEFAULT_MODEL
    assert request.contents == [user("hello")]

    req_event, resp_event = events(writer)
    assert req_event["eventType"] == "api_request"
    assert resp_event["eventType"] == "api_response"
    assert req_event["requestId"] == resp_event["requestId"] == request_id
    assert req_event["promptId"] == resp_event["promptId"] == "p1"
    assert req_event["requestContext"] == "new"
    assert resp_event["inputTokenCount"] == 3
    assert resp_event["outputTokenCount"] == 5
    assert resp_event["responseType"] == "text_response"
    assert session.get_history() == [user("hello"), model("hi there")]
    assert session.state == SessionState.IDLE


def test_response_without_usage_is_not_logged(tmp_path):
    gen = FakeGenerator(responses=[text_response("ok", usage=False)])
    session, writer = make_session(tmp_path, gen)
    asyncio.run(session.send("hello", "p1"))
    assert [e["eventType"] for e in events(writer)] == ["api_request"]
    assert session.get_history() == [user("hello"), model("ok")]


def test_failed_send_logs_error_and_keeps_history(tmp_path):
    gen = FakeGenerator(responses=[ApiError(code="API_ERROR", message="bad request", http_status=400)])
    session, writer = make_session(tmp_path, gen)
    session.set_history([user("a"), model("b")])

    with pytest.raises(ExchangeError) as exc:
        asyncio.run(session.send("hello", "p1"))
    assert isinstance(exc.value.__cause__, ApiError)
    assert exc.value.error_type == "ApiError"
    assert exc.value.model == DEFAULT_MODEL
    assert exc.value.http_status == 400

    req_event, err_event = events(writer)
    assert err_event["eventType"] == "api_error"
    assert err_event["requestId"] == req_event["requestId"]
    assert err_event["errorType"] == "ApiError"
    assert err_event["error"] == "bad request"
    assert session.get_history() == [user("a"), model("b")]
    assert session.state == SessionState.IDLE


def test_retries_reuse_request_id(tmp_path):
    gen = FakeGenerator(responses=[RateLimitError(), text_response("ok")])
    session, writer = make_session(tmp_path, gen)
    asyncio.run(session.send("hello", "p1"))
    assert len(gen.requests) == 2
    assert gen.requests[0][2] == gen.requests[1][2]
    assert [e["eventType"] for e in events(writer)] == ["api_request", "api_response"]


def test_empty_message_rejected_before_request(tmp_path):
    gen = FakeGenerator()
    session, writer = make_session(tmp_path, gen)
    with pytest.raises(ValidationError):
        asyncio.run(session.send("", "p1"))
    with pytest.raises(ValidationError):
        session.send_streaming([], "p1")
    assert gen.requests == []
    assert events(writer) == []


def test_request_uses_curated_history(tmp_path):
    gen = FakeGenerator(responses=[text_response("ok")])
    session, _ = make_session(tmp_path, gen)
    session.set_history([user("a"), Turn(role="model", parts=[]), user("b"), model("c")])
    asyncio.run(session.send("d", "p1"))
    assert gen.requests[0][0].contents == [user("b"), model("c"), user("d")]
    assert len(session.get_history()) == 6
    assert session.get_history(curated=True) == [user("b"), model("c"), user("d"), model("ok")]


def test_streaming_excludes_thoughts_and_logs_final_usage(tmp_path):
    chunks = [
        text_response("thinking", usage=False, thought=True),
        text_response("Hel", usage=False),
        text_response("lo"),
    ]
    gen = FakeGenerator(streams=[chunks])
    session, writer = make_session(tmp_path, gen)

    received = asyncio.run(collect(session.send_streaming("hello", "p1")))
    assert len(received) == 3
    assert received[0].first_content.parts[0].thought is True
    assert session.get_history() == [user("hello"), model("Hello")]
    assert gen.opened[0].closed is True

    req_event, resp_event = events(writer)
    assert resp_event["eventType"] == "api_response"
    assert resp_event["requestId"] == req_event["requestId"]
    assert resp_event["outputTokenCount"] == 5
    assert resp_event["responseType"] == "text_response"


def test_stream_error_midway_commits_nothing(tmp_path):
    chunks = [text_response("partial", usage=False), ApiError(code="API_ERROR", message="boom", http_status=500)]
    gen = FakeGenerator(streams=[chunks])
    session, writer = make_session(tmp_path, gen)
    received = []

    async def consume():
        async for chunk in session.send_streaming("hello", "p1"):
            received.append(chunk)

    with pytest.raises(ExchangeError) as exc:
        asyncio.run(consume())
    assert isinstance(exc.value.__cause__, ApiError)
    assert len(received) == 1
    assert session.get_history() == []
    assert [e["eventType"] for e in events(writer)] == ["api_request", "api_error"]
    assert gen.opened[0].closed is True


def test_stream_open_is_retried(tmp_path):
    gen = FakeGenerator(streams=[RateLimitError(), [text_response("ok")]])
    session, writer = make_session(tmp_path, gen)
    received = asyncio.run(collect(session.send_streaming("hello", "p1")))
    assert len(received) == 1
    assert gen.requests[0][2] == gen.requests[1][2]
    assert [e["eventType"] for e in events(writer)] == ["api_request", "api_response"]


def test_early_stop_discards_exchange(tmp_path):
    gen = FakeGenerator(
        streams=[[text_response("one", usage=False), text_response("two")]],
        responses=[text_response("after")],
    )
    session, writer = make_session(tmp_path, gen)

    async def run():
        agen = session.send_streaming("hello", "p1")
        first = await agen.__anext__()
        await agen.aclose()
        assert first.text == "one"
        # slot 已释放，后续交换可以继续
        await session.send("next", "p2")

    asyncio.run(run())
    assert gen.opened[0].closed is True
    assert session.get_history() == [user("next"), model("after")]
    assert [e["eventType"] for e in events(writer)] == ["api_request", "api_request", "api_response"]
    assert session.state == SessionState.IDLE


def test_concurrent_sends_are_serialized(tmp_path):
    class SlowGenerator(FakeGenerator):
        active = 0
        max_active = 0

        async def generate_content(self, request, prompt_id, request_id):
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            await asyncio.sleep(0.01)
            self.active -= 1
            return await super().generate_content(request, prompt_id, request_id)

    gen = SlowGenerator(responses=[text_response("first"), text_response("second")])
    session, _ = make_session(tmp_path, gen)

    async def run():
        await asyncio.gather(session.send("one", "p1"), session.send("two", "p2"))

    asyncio.run(run())
    assert gen.max_active == 1
    assert gen.requests[1][0].contents == [user("one"), model("first"), user("two")]
    assert session.get_history() == [user("one"), model("first"), user("two"), model("second")]


def test_persistent_rate_limit_falls_back_when_accepted(tmp_path):
    asked = []

    def handler(current, fallback, error):
        asked.append((current, fallback))
        return True

    gen = FakeGenerator(responses=[RateLimitError(), RateLimitError(), text_response("ok")])
    session, writer = make_session(tmp_path, gen, auth_type="oauth-personal", fallback_handler=handler)
    asyncio.run(session.send("hello", "p1"))

    assert asked == [(DEFAULT_MODEL, FALLBACK_MODEL)]
    assert session.model == FALLBACK_MODEL
    assert session.config.fallback_mode is True
    assert [r[0].model for r in gen.requests] == [DEFAULT_MODEL, DEFAULT_MODEL, FALLBACK_MODEL]

    req_event, fallback_event, resp_event = events(writer)
    assert fallback_event["eventType"] == "flash_fallback"
    assert fallback_event["fromModel"] == DEFAULT_MODEL
    assert resp_event["model"] == FALLBACK_MODEL


def test_declined_fallback_surfaces_error(tmp_path):
    async def handler(current, fallback, error):
        return False

    gen = FakeGenerator(responses=[RateLimitError(), RateLimitError()])
    session, writer = make_session(tmp_path, gen, auth_type="oauth-personal", fallback_handler=handler)
    with pytest.raises(ExchangeError) as exc:
        asyncio.run(session.send("hello", "p1"))
    assert isinstance(exc.value.__cause__, RateLimitError)
    assert exc.value.http_status == 429
    assert session.model == DEFAULT_MODEL
    assert [e["eventType"] for e in events(writer)] == ["api_request", "api_error"]


def test_api_key_auth_never_falls_back(tmp_path):
    asked = []
    gen = FakeGenerator(responses=[RateLimitError(), RateLimitError()])
    session, _ = make_session(
        tmp_path, gen, auth_type="api-key", fallback_handler=lambda *a: asked.append(a) or True
    )
    with pytest.raises(ExchangeError):
        asyncio.run(session.send("hello", "p1"))
    assert asked == []
    assert session.model == DEFAULT_MODEL


def test_automatic_function_calling_history_is_recorded(tmp_path):
    call = Turn(role="model", parts=[Part(function_call=FunctionCall(name="read_file", args={"path": "a.py"}))])
    result = Turn(role="user", parts=[Part(function_response=FunctionResponse(name="read_file", response={"ok": True}))])
    resp = text_response("done")
    resp.automatic_function_calling_history = [user("a"), model("b"), user("open a.py"), call, result]
    gen = FakeGenerator(responses=[resp])
    session, _ = make_session(tmp_path, gen)
    session.set_history([user("a"), model("b")])

    asyncio.run(session.send("open a.py", "p1"))
    assert session.get_history() == [user("a"), model("b"), user("open a.py"), call, result, model("done")]


def test_telemetry_disabled_writes_nothing(tmp_path):
    gen = FakeGenerator(responses=[text_response("ok")])
    session, writer = make_session(tmp_path, gen, telemetry_enabled=False)
    asyncio.run(session.send("hello", "p1"))
    assert events(writer) == []


def test_telemetry_failure_does_not_break_exchange():
    class BrokenLog:
        def __getattr__(self, name):
            def fail(*args, **kwargs):
                raise RuntimeError("disk full")

            return fail

    gen = FakeGenerator(responses=[text_response("ok")])
    config = SessionConfig(session_id="s", model=DEFAULT_MODEL)
    session = ChatSession(config, gen, behavior_log=BrokenLog())
    resp = asyncio.run(session.send("hello", "p1"))
    assert resp.text == "ok"
    assert session.get_history() == [user("hello"), model("ok")]


def test_history_api():
    gen = FakeGenerator()
    session = ChatSession(SessionConfig(session_id="s", model=DEFAULT_MODEL), gen, history=[user("a")])
    copy = session.get_history()
    copy[0].parts[0].text = "changed"
    assert session.get_history() == [user("a")]

    session.add_history(model("b"))
    assert session.get_history() == [user("a"), model("b")]
    session.clear_history()
    assert session.get_history() == []

    with pytest.raises(ValidationError):
        ChatSession(SessionConfig(session_id="s", model=DEFAULT_MODEL), gen, history=[Turn(role="system", parts=[])])


def test_set_tools_reaches_request_profile(tmp_path):
    gen = FakeGenerator(responses=[text_response("ok")])
    session, writer = make_session(tmp_path, gen)
    session.set_tools([{"function_declarations": [{"name": "read_file"}]}])
    asyncio.run(session.send("read @a.py", "p1"))
    req_event = events(writer)[0]
    assert req_event["availableTools"] == ["read_file"]
    assert req_event["toolsCalled"] == ["read_file"]
    assert req_event["hasFileContext"] is True
    assert gen.requests[0][0].config.tools[0].declarations[0].name == "read_file"


def test_stream_without_usage_writes_no_response_event(tmp_path):
    gen = FakeGenerator(streams=[[text_response("Hel", usage=False), text_response("lo", usage=False)]])
    session, writer = make_session(tmp_path, gen)
    asyncio.run(collect(session.send_streaming("hello", "p1")))
    assert [e["eventType"] for e in events(writer)] == ["api_request"]
    assert session.get_history() == [user("hello"), model("Hello")]


def test_no_fallback_when_already_on_fallback_model(tmp_path):
    asked = []
    gen = FakeGenerator(responses=[RateLimitError(), RateLimitError()])
    session, writer = make_session(
        tmp_path, gen, auth_type="oauth-personal", fallback_handler=lambda *a: asked.append(a) or True
    )
    session.config.model = FALLBACK_MODEL
    with pytest.raises(ExchangeError):
        asyncio.run(session.send("hello", "p1"))
    assert asked == []
    assert len(gen.requests) == 2
    assert "flash_fallback" not in [e["eventType"] for e in events(writer)]


def test_failing_fallback_handler_counts_as_declined(tmp_path):
    def handler(current, fallback, error):
        raise RuntimeError("dialog crashed")

    gen = FakeGenerator(responses=[RateLimitError(), RateLimitError()])
    session, writer = make_session(tmp_path, gen, auth_type="oauth-personal", fallback_handler=handler)
    with pytest.raises(ExchangeError) as exc:
        asyncio.run(session.send("hello", "p1"))
    assert isinstance(exc.value.__cause__, RateLimitError)
    assert session.model == DEFAULT_MODEL
    assert session.config.fallback_mode is False
    assert [e["eventType"] for e in events(writer)] == ["api_request", "api_error"]


@pytest.mark.parametrize("answer, switched", [(None, False), (False, False), ("yes", True), (True, True)])
def test_fallback_handler_answers(tmp_path, answer, switched):
    gen = FakeGenerator(responses=[RateLimitError(), RateLimitError(), text_response("ok")])
    session, _ = make_session(tmp_path, gen, auth_type="oauth-personal", fallback_handler=lambda *a: answer)
    if switched:
        asyncio.run(session.send("hello", "p1"))
        assert session.model == FALLBACK_MODEL
    else:
        with pytest.raises(ExchangeError):
            asyncio.run(session.send("hello", "p1"))
        assert session.model == DEFAULT_MODEL


def test_provider_oauth_quota_warning_logged_once(tmp_path, caplog):
    gen = FakeGenerator(responses=[RateLimitError(), RateLimitError()])
    session, _ = make_session(tmp_path, gen, auth_type="qwen-oauth")
    with caplog.at_level("WARNING", logger="chat_core"):
        with pytest.raises(ExchangeError):
            asyncio.run(session.send("hello", "p1"))
    messages = [r.getMessage() for r in caplog.records if "OAuth" in r.getMessage()]
    assert messages == ["OAuth quota exhausted, try again later"]
