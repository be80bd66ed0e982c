"""OpenAI 兼容协议的 ContentGenerator 适配器。

本模块负责：

1. 接收统一的 GenerateContentRequest。
2. 将 user/model 轮次、系统指令与工具声明转换为 /chat/completions 请求格式。
3. 调用 HTTP 接口并把网络/限流/认证/服务端错误映射为统一的业务异常。
4. 将响应 JSON（以及 SSE 流式分块）解析回 GenerateContentResponse。

DashScope compatible-mode、Moonshot 等兼容 OpenAI 协议的服务都可以直接使用。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_core.domain.exceptions import ApiError, AuthenticationError, NetworkError, RateLimitError, ValidationError
from chat_core.domain.models import (
    Candidate,
    FunctionCall,
    GenerateContentRequest,
    GenerateContentResponse,
    Part,
    Turn,
    UsageMetadata,
    declared_functions,
    instruction_text,
)
from chat_core.providers.registry import get_model_config


class OpenAICompatibleGenerator:
    """OpenAI 兼容协议的内容生成器。

    - name: Provider 名称（供日志/调试使用）。
    - generate_content: 非流式调用。
    - generate_content_stream: 流式调用，建连和状态码检查在返回迭代器之前完成。
    """

    name = "openai-compatible"

    def __init__(self, settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = settings

    async def generate_content(
        self, request: GenerateContentRequest, prompt_id: str, request_id: str
    ) -> GenerateContentResponse:
        payload = self._build_payload(request)
        headers = self._headers(request_id)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(self._endpoint(), json=payload, headers=headers)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp.status_code, resp.text)
        return self._parse_response(resp.json())

    async def generate_content_stream(
        self, request: GenerateContentRequest, prompt_id: str, request_id: str
    ) -> AsyncIterator[GenerateContentResponse]:
        payload = self._build_payload(request)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
        headers = self._headers(request_id)
        client = httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)
        try:
            http_request = client.build_request("POST", self._endpoint(), json=payload, headers=headers)
            resp = await client.send(http_request, stream=True)
        except httpx.RequestError as e:
            await client.aclose()
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            body = (await resp.aread()).decode("utf-8", errors="replace")
            await resp.aclose()
            await client.aclose()
            self._raise_for_status(resp.status_code, body)
        return self._iter_stream(client, resp)

    async def _iter_stream(
        self, client: httpx.AsyncClient, resp: httpx.Response
    ) -> AsyncIterator[GenerateContentResponse]:
        """逐行解析 SSE 数据；工具调用的参数分散在多个增量里，结束时一次性产出。"""

        pending_calls: Dict[int, Dict[str, Any]] = {}
        try:
            async for line in resp.aiter_lines():
                if not line:
                    continue
                data_str = line
                if data_str.startswith("data:"):
                    data_str = data_str[5:].strip()
                else:
                    data_str = data_str.strip()
                if not data_str or data_str == "[DONE]":
                    continue
                try:
                    payload_chunk = json.loads(data_str)
                except json.JSONDecodeError:
                    continue
                yield self._parse_stream_chunk(payload_chunk, pending_calls)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        finally:
            await resp.aclose()
            await client.aclose()

    def _endpoint(self) -> str:
        return f"{self._settings.base_url.rstrip('/')}/chat/completions"

    def _headers(self, request_id: str) -> Dict[str, str]:
        if not getattr(self._settings, "api_key", None):
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message="CHAT_CORE_API_KEY not set")
        return {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
            "X-Request-Id": request_id,
        }

    @staticmethod
    def _raise_for_status(status_code: int, body: str) -> None:
        if status_code == 429:
            # 限流错误交给上层做重试/退避
            raise RateLimitError(message=body or "rate limit exceeded (429)")
        if status_code in (401, 403):
            raise AuthenticationError(code="AUTH_ERROR", message=body or "unauthorized", http_status=status_code)
        if status_code >= 400:
            # 其他 HTTP 错误统一包装为 ApiError，5xx 由重试策略处理
            raise ApiError(code="API_ERROR", message=body, http_status=status_code)

    # ---- 请求转换 ----

    def _build_payload(self, request: GenerateContentRequest) -> dict:
        """将 GenerateContentRequest 转成 OpenAI 兼容的请求 JSON。"""

        model_cfg = get_model_config(request.model)
        cfg = request.config
        messages: List[Dict[str, Any]] = []
        system_text = instruction_text(cfg.system_instruction)
        if system_text:
            messages.append({"role": "system", "content": system_text})
        for turn in request.contents:
            messages.extend(self._turn_to_messages(turn))
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": cfg.temperature if cfg.temperature is not None else model_cfg.default_temperature,
            "max_tokens": cfg.max_output_tokens or model_cfg.max_output_tokens,
        }
        if cfg.top_p is not None:
            payload["top_p"] = cfg.top_p
        functions = [fn for tool in cfg.tools for fn in declared_functions(tool)]
        if functions:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": fn.name,
                        "description": fn.description,
                        "parameters": fn.parameters or {"type": "object", "properties": {}},
                    },
                }
                for fn in functions
            ]
            payload["tool_choice"] = "auto"
        return payload

    @staticmethod
    def _turn_to_messages(turn: Turn) -> List[Dict[str, Any]]:
        """一个轮次可能对应多条消息：工具结果各自成为一条 role=tool 的消息。"""

        messages: List[Dict[str, Any]] = []
        texts: List[str] = []
        tool_calls: List[Dict[str, Any]] = []
        for part in turn.parts:
            if part.thought:
                continue
            if part.function_response is not None:
                fr = part.function_response
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": fr.id or fr.name,
                        "content": json.dumps(fr.response, ensure_ascii=False),
                    }
                )
            elif part.function_call is not None:
                fc = part.function_call
                tool_calls.append(
                    {
                        "id": fc.id or fc.name,
                        "type": "function",
                        "function": {"name": fc.name, "arguments": json.dumps(fc.args, ensure_ascii=False)},
                    }
                )
            elif part.text:
                texts.append(part.text)
        role = "assistant" if turn.role == "model" else "user"
        if texts or tool_calls:
            message: Dict[str, Any] = {"role": role, "content": "".join(texts) or None}
            if tool_calls:
                message["tool_calls"] = tool_calls
            messages.append(message)
        return messages

    # ---- 响应解析 ----

    def _parse_response(self, data: dict) -> GenerateContentResponse:
        """将原始响应 JSON 解析为统一的 GenerateContentResponse。"""

        candidates: List[Candidate] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            parts = self._text_parts(msg)
            for idx, call in enumerate(msg.get("tool_calls") or []):
                func = call.get("function") or {}
                parts.append(
                    Part(
                        function_call=FunctionCall(
                            name=func.get("name") or "",
                            args=self._parse_arguments(func.get("arguments")),
                            id=call.get("id") or f"tool_call_{idx}",
                        )
                    )
                )
            candidates.append(
                Candidate(
                    content=Turn(role="model", parts=parts),
                    finish_reason=ch.get("finish_reason"),
                    index=ch.get("index", i),
                )
            )
        return GenerateContentResponse(
            candidates=candidates,
            usage_metadata=self._parse_usage(data.get("usage")),
            response_id=data.get("id"),
            raw=data,
        )

    def _parse_stream_chunk(self, data: dict, pending_calls: Dict[int, Dict[str, Any]]) -> GenerateContentResponse:
        """解析流式响应中的单条增量。"""

        candidates: List[Candidate] = []
        for i, ch in enumerate(data.get("choices", [])):
            delta = ch.get("delta") or {}
            parts = self._text_parts(delta)
            for call in delta.get("tool_calls") or []:
                slot = pending_calls.setdefault(call.get("index", 0), {"id": None, "name": "", "arguments": ""})
                func = call.get("function") or {}
                slot["id"] = call.get("id") or slot["id"]
                slot["name"] = func.get("name") or slot["name"]
                slot["arguments"] += func.get("arguments") or ""
            finish_reason = ch.get("finish_reason")
            if finish_reason and pending_calls:
                for idx in sorted(pending_calls):
                    slot = pending_calls[idx]
                    parts.append(
                        Part(
                            function_call=FunctionCall(
                                name=slot["name"],
                                args=self._parse_arguments(slot["arguments"]),
                                id=slot["id"] or f"tool_call_{idx}",
                            )
                        )
                    )
                pending_calls.clear()
            candidates.append(
                Candidate(
                    content=Turn(role="model", parts=parts) if parts else None,
                    finish_reason=finish_reason,
                    index=ch.get("index", i),
                )
            )
        return GenerateContentResponse(
            candidates=candidates,
            usage_metadata=self._parse_usage(data.get("usage")),
            is_chunk=True,
            response_id=data.get("id"),
            raw=data,
        )

    @staticmethod
    def _text_parts(message: Dict[str, Any]) -> List[Part]:
        parts: List[Part] = []
        # 推理模型把思考过程放在 reasoning_content 中
        if message.get("reasoning_content"):
            parts.append(Part(text=message["reasoning_content"], thought=True))
        if message.get("content"):
            parts.append(Part(text=message["content"]))
        return parts

    @staticmethod
    def _parse_usage(raw: Optional[Dict[str, Any]]) -> Optional[UsageMetadata]:
        if not raw:
            return None
        prompt_details = raw.get("prompt_tokens_details") or {}
        completion_details = raw.get("completion_tokens_details") or {}
        return UsageMetadata(
            input_token_count=raw.get("prompt_tokens", 0),
            output_token_count=raw.get("completion_tokens", 0),
            cached_content_token_count=prompt_details.get("cached_tokens"),
            thoughts_token_count=completion_details.get("reasoning_tokens"),
            total_token_count=raw.get("total_tokens"),
        )

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        """arguments 通常是 JSON 字符串，解析失败时保留原始字符串到 `_raw`。"""

        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str) and raw:
            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
        return {}
