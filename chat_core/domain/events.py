"""行为日志事件模型。

每个可观测的交互（开始输入、提交 prompt、API 请求/响应/错误等）
在发生时创建一个 TelemetryEvent，创建后不可修改；写入日志时序列化为
一行 camelCase 键的 JSON，未设置的字段不输出。
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Tuple


EventType = Literal[
    "typing_start",
    "prompt_submit",
    "prompt_cancel",
    "api_request",
    "api_response",
    "api_error",
    "flash_fallback",
    "loop_detected",
    "at_command",
    "shell_command",
]

EVENT_TYPES: Tuple[str, ...] = (
    "typing_start",
    "prompt_submit",
    "prompt_cancel",
    "api_request",
    "api_response",
    "api_error",
    "flash_fallback",
    "loop_detected",
    "at_command",
    "shell_command",
)

# 只做透传、不由 ChatSession 产生的 UI 侧事件
PASSTHROUGH_EVENT_TYPES: Tuple[str, ...] = (
    "prompt_cancel",
    "flash_fallback",
    "loop_detected",
    "at_command",
    "shell_command",
)

OperationType = Literal["chat", "tool_call", "completion", "embedding", "unknown"]
RequestContext = Literal["new", "continuation", "tool_result"]
ResponseType = Literal["tool_call", "text_response", "mixed", "error", "streaming_chunk"]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(word.capitalize() for word in rest)


@dataclass(frozen=True)
class TelemetryEvent:
    event_type: EventType
    timestamp: datetime
    session_id: Optional[str] = None
    student_id_hash: Optional[str] = None
    machine_id_hash: Optional[str] = None
    model: Optional[str] = None
    prompt_id: Optional[str] = None
    request_id: Optional[str] = None
    content: Optional[str] = None
    operation_type: Optional[OperationType] = None
    tools_called: Optional[Tuple[str, ...]] = None
    available_tools: Optional[Tuple[str, ...]] = None
    request_context: Optional[RequestContext] = None
    estimated_tokens: Optional[int] = None
    conversation_turn: Optional[int] = None
    has_file_context: Optional[bool] = None
    system_prompt_length: Optional[int] = None
    response_type: Optional[ResponseType] = None
    input_token_count: Optional[int] = None
    output_token_count: Optional[int] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    auth_type: Optional[str] = None
    extra: Optional[Tuple[Tuple[str, Any], ...]] = None

    def __post_init__(self) -> None:
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.event_type!r}")

    def to_record(self) -> Dict[str, Any]:
        """序列化为日志记录：camelCase 键，None 字段省略，时间戳为 ISO-8601。"""

        record: Dict[str, Any] = {}
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "timestamp":
                value = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
            elif isinstance(value, tuple):
                value = list(value)
            record[_camel(f.name)] = value
        for key, value in self.extra or ():
            record.setdefault(key, value)
        return record


@dataclass(frozen=True)
class RequestProfile:
    """RequestClassifier 对一次出站请求给出的描述信息。"""

    operation_type: OperationType
    tools_called: Tuple[str, ...]
    request_context: RequestContext
    estimated_tokens: int
    conversation_turn: int
    has_file_context: bool
    system_prompt_length: int
    available_tools: Tuple[str, ...] = ()
