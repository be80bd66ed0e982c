"""会话历史的校验、整理与合并。

两种视图：
- comprehensive：记录过的所有轮次（包括无效的模型输出），是唯一的事实来源。
- curated：可以安全重新发送给模型的子集，每次按需从 comprehensive 计算。

模型有时会因为安全过滤等原因返回空内容，整理时会把整段无效的模型输出
连同触发它的 user 轮次一起剔除，避免后续请求被孤立的 user 轮次污染。
"""

from __future__ import annotations

import copy
from typing import List, Optional, Sequence

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import VALID_ROLES, GenerateContentResponse, Turn


def validate_history(history: Sequence[Turn]) -> None:
    for turn in history:
        if turn.role not in VALID_ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"Role must be user or model, but got {turn.role}.")


def is_valid_content(turn: Turn) -> bool:
    if not turn.parts:
        return False
    for part in turn.parts:
        if part is None or part.is_empty():
            return False
        if not part.thought and part.text is not None and part.text == "":
            return False
    return True


def is_valid_response(response: GenerateContentResponse) -> bool:
    content = response.first_content
    if content is None:
        return False
    return is_valid_content(content)


def is_thought_content(turn: Optional[Turn]) -> bool:
    return bool(
        turn is not None
        and turn.role == "model"
        and turn.parts
        and turn.parts[0].thought is True
    )


def is_text_content(turn: Optional[Turn]) -> bool:
    return bool(
        turn is not None
        and turn.role == "model"
        and turn.parts
        and isinstance(turn.parts[0].text, str)
        and turn.parts[0].text != ""
    )


def is_function_response(turn: Turn) -> bool:
    return turn.role == "user" and bool(turn.parts) and all(p.function_response is not None for p in turn.parts)


def extract_curated_history(comprehensive: Sequence[Turn]) -> List[Turn]:
    """按连续的模型轮次分段，任一轮无效则整段连同前一个 user 轮次丢弃。"""

    curated: List[Turn] = []
    i = 0
    length = len(comprehensive)
    while i < length:
        if comprehensive[i].role == "user":
            curated.append(comprehensive[i])
            i += 1
            continue
        model_output: List[Turn] = []
        valid = True
        while i < length and comprehensive[i].role == "model":
            model_output.append(comprehensive[i])
            if valid and not is_valid_content(comprehensive[i]):
                valid = False
            i += 1
        if valid:
            curated.extend(model_output)
        elif curated and curated[-1].role == "user":
            curated.pop()
    return curated


def _merge_text(target: Turn, source: Turn) -> None:
    target.parts[0].text = (target.parts[0].text or "") + (source.parts[0].text or "")
    if len(source.parts) > 1:
        target.parts.extend(source.parts[1:])


def consolidate_model_output(outputs: Sequence[Turn]) -> List[Turn]:
    """去掉 thought 轮次，并把相邻的纯文本模型轮次合并为一条。"""

    consolidated: List[Turn] = []
    for turn in outputs:
        if is_thought_content(turn):
            continue
        last = consolidated[-1] if consolidated else None
        if is_text_content(last) and is_text_content(turn):
            _merge_text(last, turn)
        else:
            consolidated.append(turn)
    return consolidated


def record_turns(
    history: List[Turn],
    user_input: Turn,
    model_output: Sequence[Turn],
    automatic_function_calling_history: Optional[Sequence[Turn]] = None,
) -> None:
    """把一次交换的结果并入 history（原地修改）。

    - 只有 thought 的输出不落历史；没有任何输出且输入不是工具结果时，
      追加一个空的 model 轮次保持角色交替，整理时会连同 user 轮次一起剔除。
    - 传输层给出自动工具调用子历史时，用整理后的子历史替代单独的 user 轮次。
    """

    model_output = [copy.deepcopy(t) for t in model_output]
    non_thought = [t for t in model_output if not is_thought_content(t)]

    output_contents: List[Turn] = []
    if non_thought and all(t.role for t in non_thought):
        output_contents = non_thought
    elif not non_thought and model_output:
        pass
    elif not is_function_response(user_input):
        output_contents.append(Turn(role="model", parts=[]))

    afc = list(automatic_function_calling_history or [])
    if afc:
        history.extend(copy.deepcopy(extract_curated_history(afc)))
    else:
        history.append(copy.deepcopy(user_input))

    consolidated = consolidate_model_output(output_contents)
    if not consolidated:
        return
    last = history[-1] if history else None
    if not afc and is_text_content(last) and is_text_content(consolidated[0]):
        _merge_text(last, consolidated.pop(0))
    history.extend(consolidated)
