import json
from datetime import datetime, timezone

import pytest

from chat_core.domain.events import RequestProfile
from chat_core.domain.models import UsageMetadata
from chat_core.telemetry.behavior_log import BehaviorLogWriter
from chat_core.telemetry.dedup import DedupWindow
from chat_core.telemetry.identity import IdentityHasher, hash_identity


FIXED = datetime(2025, 3, 4, 10, 0, tzinfo=timezone.utc)


def make_writer(log_dir, **kw):
    return BehaviorLogWriter(
        session_id="abcdef1234567890",
        log_dir=log_dir,
        hasher=IdentityHasher(environ={"QWEN_STUDENT_ID": "s1"}),
        clock=lambda: FIXED,
        **kw,
    )


def read_records(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_file_name_and_record_shape(tmp_path):
    writer = make_writer(tmp_path)
    assert writer.log_typing_start("p1") is True
    assert writer.current_path == tmp_path / "2025-03-04-abcdef12.jsonl"
    (record,) = read_records(writer.current_path)
    assert record["eventType"] == "typing_start"
    assert record["timestamp"] == "2025-03-04T10:00:00Z"
    assert record["sessionId"] == "abcdef1234567890"
    assert record["studentIdHash"] == hash_identity("s1")
    assert len(record["machineIdHash"]) == 16
    assert record["promptId"] == "p1"
    # 未设置的字段不输出
    assert "model" not in record
    assert "requestId" not in record


def test_prompt_submit_records_content_and_length(tmp_path):
    writer = make_writer(tmp_path)
    writer.log_prompt_submit("p1", "explain main.py")
    (record,) = read_records(writer.current_path)
    assert record["content"] == "explain main.py"
    assert record["inputTokenCount"] == len("explain main.py")


def test_rolls_to_new_file_when_limit_reached(tmp_path):
    probe = make_writer(tmp_path / "probe")
    probe.log_typing_start("p1")
    line_size = probe.current_path.stat().st_size

    writer = make_writer(tmp_path / "logs", max_file_bytes=line_size * 2 + 1)
    for _ in range(3):
        assert writer.log_typing_start("p1")
    first = tmp_path / "logs" / "2025-03-04-abcdef12.jsonl"
    second = tmp_path / "logs" / "2025-03-04-abcdef12-1.jsonl"
    assert len(read_records(first)) == 2
    assert len(read_records(second)) == 1
    assert writer.current_roll_number == 1
    assert writer.current_path == second


def test_oversized_line_goes_to_fresh_file(tmp_path):
    writer = make_writer(tmp_path, max_file_bytes=1)
    writer.log_typing_start("p1")
    writer.log_typing_start("p2")
    assert read_records(tmp_path / "2025-03-04-abcdef12.jsonl")[0]["promptId"] == "p1"
    assert read_records(tmp_path / "2025-03-04-abcdef12-1.jsonl")[0]["promptId"] == "p2"


def test_api_response_deduplicated_by_request_id(tmp_path):
    writer = make_writer(tmp_path)
    usage = UsageMetadata(input_token_count=10, output_token_count=4)
    assert writer.log_api_response("m", "p1", "r1", usage, 120, "text_response") is True
    assert writer.log_api_response("m", "p1", "r1", usage, 130, "text_response") is False
    records = read_records(writer.current_path)
    assert len(records) == 1
    assert records[0]["inputTokenCount"] == 10
    assert records[0]["outputTokenCount"] == 4
    assert records[0]["durationMs"] == 120
    assert records[0]["responseType"] == "text_response"


def test_api_request_carries_profile(tmp_path):
    writer = make_writer(tmp_path)
    profile = RequestProfile(
        operation_type="chat",
        tools_called=("read_file",),
        request_context="new",
        estimated_tokens=5,
        conversation_turn=1,
        has_file_context=True,
        system_prompt_length=12,
        available_tools=("read_file", "write_file"),
    )
    writer.log_api_request("qwen3-coder-plus", "p1", "r1", profile)
    (record,) = read_records(writer.current_path)
    assert record["eventType"] == "api_request"
    assert record["requestId"] == "r1"
    assert record["toolsCalled"] == ["read_file"]
    assert record["availableTools"] == ["read_file", "write_file"]
    assert record["hasFileContext"] is True
    assert record["systemPromptLength"] == 12


def test_api_error_records_type(tmp_path):
    writer = make_writer(tmp_path)
    writer.log_api_error("m", "p1", "r1", TimeoutError("slow"), 50, auth_type="api-key")
    (record,) = read_records(writer.current_path)
    assert record["error"] == "slow"
    assert record["errorType"] == "TimeoutError"
    assert record["authType"] == "api-key"


def test_passthrough_events(tmp_path):
    writer = make_writer(tmp_path)
    writer.log_passthrough("at_command", prompt_id="p1", command="@notes.md")
    writer.log_flash_fallback("qwen3-coder-plus", "qwen3-coder-flash", "oauth-personal")
    at_command, fallback = read_records(writer.current_path)
    assert at_command["command"] == "@notes.md"
    assert fallback["eventType"] == "flash_fallback"
    assert fallback["model"] == "qwen3-coder-flash"
    assert fallback["fromModel"] == "qwen3-coder-plus"
    with pytest.raises(ValueError):
        writer.log_passthrough("api_request")


def test_disabled_writer_writes_nothing(tmp_path):
    writer = make_writer(tmp_path, enabled=False)
    assert writer.enabled is False
    assert writer.log_typing_start("p1") is False
    assert not writer.current_path.exists()


def test_write_failure_is_swallowed(tmp_path):
    blocked = tmp_path / "blocked"
    blocked.write_text("not a directory", encoding="utf-8")
    writer = make_writer(blocked)
    assert writer.log_typing_start("p1") is False


def test_dedup_window_evicts_oldest_half():
    window = DedupWindow(4)
    for key in "abcde":
        assert window.add(key)
    assert len(window) == 3
    assert "a" not in window and "b" not in window
    assert "e" in window
    assert window.add("e") is False
    assert window.add("a") is True


def test_prompt_cancel_is_passthrough(tmp_path):
    writer = make_writer(tmp_path)
    assert writer.log_prompt_cancel("p9")
    (record,) = read_records(writer.current_path)
    assert record == {
        "eventType": "prompt_cancel",
        "timestamp": "2025-03-04T10:00:00Z",
        "sessionId": "abcdef1234567890",
        "studentIdHash": hash_identity("s1"),
        "machineIdHash": writer.machine_id_hash,
        "promptId": "p9",
    }
