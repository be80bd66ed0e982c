"""请求 / 响应分类。

纯函数，无副作用：根据即将发送的内容和生成配置推导行为日志中的
描述字段（操作类型、预测工具、请求上下文、token 估算等）。
工具预测只是关键词启发式，并且只看最近一条 user 轮次，
请求事件只反映"将要发送什么"，不反映已经发生过的调用。
"""

from __future__ import annotations

import math
import re
from typing import List, Optional, Pattern, Sequence, Tuple

from chat_core.domain.events import OperationType, RequestContext, RequestProfile, ResponseType
from chat_core.domain.models import (
    GenerateContentConfig,
    GenerateContentResponse,
    Turn,
    declared_functions,
    instruction_text,
)


def _keywords(*words: str) -> Pattern[str]:
    alternatives = []
    for w in words:
        if w.isalnum():
            alternatives.append(rf"\b{re.escape(w)}")
        else:
            alternatives.append(re.escape(w))
    return re.compile("|".join(alternatives), re.IGNORECASE)


# (工具名, 触发关键词)；顺序即输出顺序
TOOL_KEYWORDS: Tuple[Tuple[str, Pattern[str]], ...] = (
    ("read_file", _keywords("@", "read", "file")),
    ("write_file", _keywords("write", "create", "save")),
    ("replace", _keywords("edit", "modify", "change")),
    ("search_file_content", _keywords("search", "find", "grep")),
    ("list_directory", _keywords("list", "ls", "directory")),
    ("run_shell_command", _keywords("run", "execute", "bash", "command")),
    ("web_fetch", _keywords("web", "http", "url")),
)

FILE_CONTEXT_MARKERS: Tuple[str, ...] = ("file:", ".txt", ".js", ".ts", ".py", ".json", ".md")

CHARS_PER_TOKEN = 4


def _texts(contents: Sequence[Turn]) -> List[str]:
    return [p.text for turn in contents for p in turn.parts if p.text]


def detect_operation_type(contents: Sequence[Turn]) -> OperationType:
    for turn in contents:
        if turn.role == "model" and any(p.function_call is not None for p in turn.parts):
            return "tool_call"
    if len(contents) > 1:
        return "chat"
    if len(contents) == 1:
        return "chat"
    return "unknown"


def predict_tools(contents: Sequence[Turn]) -> List[str]:
    latest_user = next((t for t in reversed(contents) if t.role == "user"), None)
    if latest_user is None:
        return []
    predicted: List[str] = []
    for part in latest_user.parts:
        if not part.text:
            continue
        for tool_name, pattern in TOOL_KEYWORDS:
            if tool_name not in predicted and pattern.search(part.text):
                predicted.append(tool_name)
    return predicted


def determine_request_context(contents: Sequence[Turn]) -> RequestContext:
    if not contents:
        return "new"
    last = contents[-1]
    if last.role == "user" and any(p.function_response is not None for p in last.parts):
        return "tool_result"
    if len(contents) > 1:
        return "continuation"
    return "new"


def estimate_tokens(contents: Sequence[Turn]) -> int:
    return sum(math.ceil(len(text) / CHARS_PER_TOKEN) for text in _texts(contents))


def conversation_turn(contents: Sequence[Turn]) -> int:
    return math.ceil(len(contents) / 2)


def has_file_context(contents: Sequence[Turn]) -> bool:
    return any(marker in text for text in _texts(contents) for marker in FILE_CONTEXT_MARKERS)


def system_prompt_length(config: Optional[GenerateContentConfig]) -> int:
    if config is None:
        return 0
    return len(instruction_text(config.system_instruction))


def available_tool_names(config: Optional[GenerateContentConfig]) -> List[str]:
    if config is None:
        return []
    names: List[str] = []
    for tool in config.tools:
        for decl in declared_functions(tool):
            if decl.name not in names:
                names.append(decl.name)
    return names


def profile_request(contents: Sequence[Turn], config: Optional[GenerateContentConfig] = None) -> RequestProfile:
    return RequestProfile(
        operation_type=detect_operation_type(contents),
        tools_called=tuple(predict_tools(contents)),
        request_context=determine_request_context(contents),
        estimated_tokens=estimate_tokens(contents),
        conversation_turn=conversation_turn(contents),
        has_file_context=has_file_context(contents),
        system_prompt_length=system_prompt_length(config),
        available_tools=tuple(available_tool_names(config)),
    )


def classify_response(response: Optional[GenerateContentResponse]) -> ResponseType:
    if response is None:
        return "error"
    if not response.candidates:
        return "streaming_chunk" if response.is_chunk else "error"
    has_tool_calls = False
    has_text = False
    for candidate in response.candidates:
        if candidate.content is None:
            continue
        for part in candidate.content.parts:
            if part.function_call is not None:
                has_tool_calls = True
            if part.text:
                has_text = True
    if has_tool_calls and has_text:
        return "mixed"
    if has_tool_calls:
        return "tool_call"
    if has_text:
        return "text_response"
    return "error"
