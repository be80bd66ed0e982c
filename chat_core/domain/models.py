"""统一的会话与生成结果数据模型。

本模块定义了 ChatSession 与 ContentGenerator 之间共享的标准数据结构：

- Part / Turn: 一条对话轮次及其组成部分（文本、工具调用、工具结果、thought 标记）。
- GenerateContentRequest: 发给底层模型的完整请求。
- GenerateContentResponse: 一次完整响应，或流式响应中的一个分块。
- SystemInstruction / ToolDeclaration: 系统指令与工具声明的封闭变体集合，
  外部传入的原始结构（字符串、dict 等）只在这里解析一次。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON
和这些模型之间做转换。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union

from chat_core.domain.exceptions import ValidationError


# 对话角色：只允许 user / model 两种
Role = Literal["user", "model"]
VALID_ROLES = ("user", "model")


@dataclass
class FunctionCall:
    """模型发起的一次工具调用。"""

    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class FunctionResponse:
    """工具执行结果，以 user 轮次回传给模型。"""

    name: str
    response: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class Part:
    """轮次中的一个组成部分，字段之间互斥，全部为空视为"空 Part"。"""

    text: Optional[str] = None
    thought: Optional[bool] = None
    function_call: Optional[FunctionCall] = None
    function_response: Optional[FunctionResponse] = None

    def is_empty(self) -> bool:
        return (
            self.text is None
            and self.thought is None
            and self.function_call is None
            and self.function_response is None
        )


@dataclass
class Turn:
    """一条对话消息：角色 + 有序的 parts。"""

    role: Role
    parts: List[Part] = field(default_factory=list)


@dataclass
class UsageMetadata:
    """模型返回的 token 统计。缺失该结构的分块视为非终态分块。"""

    input_token_count: int = 0
    output_token_count: int = 0
    cached_content_token_count: Optional[int] = None
    thoughts_token_count: Optional[int] = None
    total_token_count: Optional[int] = None


@dataclass
class Candidate:
    """单个候选回答（目前通常只用 index=0 的一条）。"""

    content: Optional[Turn] = None
    finish_reason: Optional[str] = None
    index: int = 0


@dataclass
class GenerateContentResponse:
    """一次生成调用的结果，流式模式下每个分块也是一个 GenerateContentResponse。

    - candidates: 候选回答，中间分块可能为空。
    - usage_metadata: token 统计，通常只出现在最后一个分块。
    - automatic_function_calling_history: 传输层自动执行工具调用时返回的完整子历史。
    - is_chunk: 标记为流式的中间分块。
    - raw: 原始响应 JSON，用于调试。
    """

    candidates: Optional[List[Candidate]] = None
    usage_metadata: Optional[UsageMetadata] = None
    automatic_function_calling_history: Optional[List[Turn]] = None
    is_chunk: bool = False
    response_id: Optional[str] = None
    raw: Optional[dict] = None

    @property
    def first_content(self) -> Optional[Turn]:
        if not self.candidates:
            return None
        return self.candidates[0].content

    @property
    def text(self) -> str:
        """第一个候选中所有非 thought 文本的拼接。"""

        content = self.first_content
        if content is None:
            return ""
        return "".join(p.text for p in content.parts if p.text and not p.thought)

    @property
    def function_calls(self) -> List[FunctionCall]:
        content = self.first_content
        if content is None:
            return []
        return [p.function_call for p in content.parts if p.function_call is not None]


# ---- 系统指令变体 ----


@dataclass(frozen=True)
class TextInstruction:
    """形如 {"text": "..."} 的系统指令。"""

    text: str


@dataclass(frozen=True)
class PartsInstruction:
    """形如 {"parts": [{"text": ...}, ...]} 的结构化系统指令。"""

    parts: Tuple[Part, ...]


SystemInstruction = Union[str, TextInstruction, PartsInstruction]


def parse_system_instruction(raw: Any) -> Optional[SystemInstruction]:
    """把外部传入的系统指令统一解析为三种变体之一。"""

    if raw is None:
        return None
    if isinstance(raw, (str, TextInstruction, PartsInstruction)):
        return raw
    if isinstance(raw, Turn):
        return PartsInstruction(parts=tuple(raw.parts))
    if isinstance(raw, Mapping):
        if "parts" in raw:
            parts = []
            for item in raw.get("parts") or []:
                if isinstance(item, Part):
                    parts.append(item)
                elif isinstance(item, Mapping):
                    parts.append(Part(text=item.get("text")))
                else:
                    parts.append(Part(text=str(item)))
            return PartsInstruction(parts=tuple(parts))
        if "text" in raw:
            return TextInstruction(text=raw.get("text") or "")
    raise ValidationError(code="INVALID_SYSTEM_INSTRUCTION", message=f"Unsupported system instruction: {type(raw).__name__}")


def instruction_text(instruction: Optional[SystemInstruction]) -> str:
    if instruction is None:
        return ""
    if isinstance(instruction, str):
        return instruction
    if isinstance(instruction, TextInstruction):
        return instruction.text
    return "".join(p.text or "" for p in instruction.parts)


# ---- 工具声明变体 ----


@dataclass(frozen=True)
class FunctionDeclaration:
    """单个可调用函数的描述。"""

    name: str
    description: str = ""
    parameters: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class FunctionDeclarationsTool:
    """{"function_declarations": [...]} 形式，一个工具对象声明多个函数。"""

    declarations: Tuple[FunctionDeclaration, ...]


@dataclass(frozen=True)
class OpenAIFunctionTool:
    """{"type": "function", "function": {...}} 形式。"""

    declaration: FunctionDeclaration


@dataclass(frozen=True)
class NamedTool:
    """只有名字的工具，例如 {"name": "read_file"}。"""

    name: str


ToolDeclaration = Union[FunctionDeclarationsTool, OpenAIFunctionTool, NamedTool]


def _declaration_from_mapping(raw: Mapping[str, Any]) -> FunctionDeclaration:
    name = raw.get("name")
    if not name:
        raise ValidationError(code="INVALID_TOOL", message="Function declaration without name")
    return FunctionDeclaration(
        name=str(name),
        description=str(raw.get("description") or ""),
        parameters=raw.get("parameters"),
    )


def _parse_function_declarations(raw: Mapping[str, Any]) -> FunctionDeclarationsTool:
    items = raw.get("function_declarations")
    if items is None:
        items = raw.get("functionDeclarations")
    return FunctionDeclarationsTool(declarations=tuple(_declaration_from_mapping(d) for d in items or []))


def _parse_openai_function(raw: Mapping[str, Any]) -> OpenAIFunctionTool:
    return OpenAIFunctionTool(declaration=_declaration_from_mapping(raw.get("function") or {}))


def _parse_named(raw: Mapping[str, Any]) -> NamedTool:
    return NamedTool(name=str(raw["name"]))


def parse_tool_declaration(raw: Any) -> ToolDeclaration:
    """把原始工具声明解析为封闭变体之一，未知形状直接报错。"""

    if isinstance(raw, (FunctionDeclarationsTool, OpenAIFunctionTool, NamedTool)):
        return raw
    if isinstance(raw, FunctionDeclaration):
        return FunctionDeclarationsTool(declarations=(raw,))
    if not isinstance(raw, Mapping):
        raise ValidationError(code="INVALID_TOOL", message=f"Unsupported tool declaration: {type(raw).__name__}")
    if "function_declarations" in raw or "functionDeclarations" in raw:
        return _parse_function_declarations(raw)
    if raw.get("type") == "function" and isinstance(raw.get("function"), Mapping):
        return _parse_openai_function(raw)
    if raw.get("name"):
        return _parse_named(raw)
    raise ValidationError(code="INVALID_TOOL", message=f"Unrecognized tool declaration keys: {sorted(raw)}")


def declared_functions(tool: ToolDeclaration) -> List[FunctionDeclaration]:
    if isinstance(tool, FunctionDeclarationsTool):
        return list(tool.declarations)
    if isinstance(tool, OpenAIFunctionTool):
        return [tool.declaration]
    return [FunctionDeclaration(name=tool.name)]


@dataclass
class GenerateContentConfig:
    """生成参数。system_instruction 与 tools 在构造时统一解析为变体类型。"""

    system_instruction: Optional[SystemInstruction] = None
    tools: List[ToolDeclaration] = field(default_factory=list)
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_output_tokens: Optional[int] = None

    def __post_init__(self) -> None:
        self.system_instruction = parse_system_instruction(self.system_instruction)
        self.tools = [parse_tool_declaration(t) for t in self.tools or []]

    def merged(self, override: Optional["GenerateContentConfig"]) -> "GenerateContentConfig":
        """返回以 override 中非空字段覆盖后的新配置。"""

        if override is None:
            return replace(self, tools=list(self.tools))
        return GenerateContentConfig(
            system_instruction=override.system_instruction or self.system_instruction,
            tools=list(override.tools or self.tools),
            temperature=override.temperature if override.temperature is not None else self.temperature,
            top_p=override.top_p if override.top_p is not None else self.top_p,
            max_output_tokens=(
                override.max_output_tokens if override.max_output_tokens is not None else self.max_output_tokens
            ),
        )


@dataclass
class GenerateContentRequest:
    """一次完整的生成请求。"""

    model: str
    contents: List[Turn]
    config: GenerateContentConfig = field(default_factory=GenerateContentConfig)


MessageInput = Union[str, Part, Sequence[Union[str, Part]]]


def create_user_content(message: MessageInput) -> Turn:
    """把调用方传入的消息（字符串 / Part / 列表）包装成 user 轮次。"""

    if isinstance(message, (str, Part)):
        items: Sequence[Union[str, Part]] = [message]
    else:
        items = list(message)
    parts: List[Part] = []
    for item in items:
        if isinstance(item, Part):
            if not item.is_empty():
                parts.append(item)
        elif isinstance(item, str):
            if item:
                parts.append(Part(text=item))
        else:
            raise ValidationError(code="INVALID_MESSAGE", message=f"Unsupported message part: {type(item).__name__}")
    if not parts:
        raise ValidationError(code="EMPTY_MESSAGE", message="Message must not be empty")
    return Turn(role="user", parts=parts)
