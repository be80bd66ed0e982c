"""会话引擎核心模块。

ChatSession 持有一段对话的历史，负责：
- 串行化交换：同一会话同一时刻只有一个请求在进行，后来者排队；
- 为每次交换生成一次 request_id，并用它关联 api_request / api_response / api_error 事件；
- 通过 retry_with_backoff 调用传输层，持续限流时按认证方式决定是否降级模型；
- 成功后把用户输入和模型输出并入历史，失败时历史保持不变。
"""

from dataclasses import replace
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4
import copy
import inspect
import logging
import time

from chat_core.agents.classifier import classify_response, profile_request
from chat_core.agents.exchange_queue import ExchangeQueue
from chat_core.agents.history import (
    extract_curated_history,
    is_thought_content,
    is_valid_response,
    record_turns,
    validate_history,
)
from chat_core.agents.retry import RetryOptions, classify_provider_oauth_error, error_status, retry_with_backoff
from chat_core.config.session import SessionConfig
from chat_core.domain.exceptions import ExchangeError
from chat_core.domain.models import (
    Candidate,
    GenerateContentConfig,
    GenerateContentRequest,
    GenerateContentResponse,
    MessageInput,
    Turn,
    UsageMetadata,
    create_user_content,
    parse_tool_declaration,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ContentGenerator
from chat_core.providers.registry import FALLBACK_MODEL, AuthType
from chat_core.telemetry.behavior_log import BehaviorLogWriter


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMMITTING = "committing"
    FAILED = "failed"


async def _aclose(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


class ChatSession:
    def __init__(
        self,
        config: SessionConfig,
        content_generator: ContentGenerator,
        behavior_log: Optional[BehaviorLogWriter] = None,
        generation_config: Optional[GenerateContentConfig] = None,
        history: Optional[Sequence[Turn]] = None,
        retry_options: Optional[RetryOptions] = None,
    ):
        history = list(history or [])
        validate_history(history)
        self._config = config
        self._content_generator = content_generator
        self._behavior_log = behavior_log
        self._generation_config = generation_config or GenerateContentConfig()
        self._history: List[Turn] = history
        self._retry_options = retry_options or RetryOptions()
        self._queue = ExchangeQueue()
        self._state = SessionState.IDLE

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def state(self) -> SessionState:
        return self._state

    # ---- 历史 ----

    def get_history(self, curated: bool = False) -> List[Turn]:
        """返回历史的深拷贝，调用方修改返回值不会影响会话。

        Args:
            curated: True 时只返回可以重新发送给模型的轮次。
        """
        history = extract_curated_history(self._history) if curated else self._history
        return copy.deepcopy(list(history))

    def add_history(self, content: Turn) -> None:
        validate_history([content])
        self._history.append(copy.deepcopy(content))

    def set_history(self, history: Sequence[Turn]) -> None:
        history = list(history)
        validate_history(history)
        self._history = copy.deepcopy(history)

    def clear_history(self) -> None:
        self._history = []

    def set_tools(self, tools: Sequence[Any]) -> None:
        self._generation_config = replace(
            self._generation_config, tools=[parse_tool_declaration(t) for t in tools]
        )

    # ---- 交换 ----

    async def send(
        self,
        message: MessageInput,
        prompt_id: str,
        config: Optional[GenerateContentConfig] = None,
    ) -> GenerateContentResponse:
        """发送一条消息并等待完整响应。

        失败时抛出 ExchangeError（原始异常作为 __cause__），历史不变。
        """
        user_content = create_user_content(message)
        async with self._queue.slot():
            try:
                curated = extract_curated_history(self._history)
                request_contents = curated + [user_content]
                gen_config = self._generation_config.merged(config)
                request_id = self._log_api_request(request_contents, gen_config, prompt_id)
                log_ctx = {"prompt_id": prompt_id, "request_id": request_id}
                self._state = SessionState.SENDING
                start = time.monotonic()

                async def api_call() -> GenerateContentResponse:
                    request = GenerateContentRequest(
                        model=self._config.model, contents=request_contents, config=gen_config
                    )
                    return await self._content_generator.generate_content(request, prompt_id, request_id)

                try:
                    response = await retry_with_backoff(api_call, self._exchange_retry_options())
                except Exception as exc:
                    raise self._fail(exc, start, prompt_id, request_id) from exc

                duration_ms = self._elapsed_ms(start)
                self._log_api_response(
                    duration_ms, prompt_id, request_id, response.usage_metadata, classify_response(response)
                )

                self._state = SessionState.COMMITTING
                output = response.first_content
                afc = list(response.automatic_function_calling_history or [])
                record_turns(
                    self._history,
                    user_content,
                    [output] if output is not None else [],
                    afc[len(curated):] if afc else None,
                )
                self._log(logging.INFO, "Exchange committed", log_ctx, duration_ms=duration_ms)
                return response
            finally:
                self._state = SessionState.IDLE

    def send_streaming(
        self,
        message: MessageInput,
        prompt_id: str,
        config: Optional[GenerateContentConfig] = None,
    ) -> AsyncIterator[GenerateContentResponse]:
        """发送一条消息并以异步迭代器逐块返回响应。

        空消息在调用时立即抛出 ValidationError；其余错误在迭代过程中以 ExchangeError 抛出。
        提前停止迭代（aclose）时不会写入历史，也不会记录响应事件。
        """
        user_content = create_user_content(message)
        return self._stream_exchange(user_content, prompt_id, config)

    async def _stream_exchange(
        self,
        user_content: Turn,
        prompt_id: str,
        config: Optional[GenerateContentConfig],
    ) -> AsyncIterator[GenerateContentResponse]:
        async with self._queue.slot():
            try:
                request_contents = extract_curated_history(self._history) + [user_content]
                gen_config = self._generation_config.merged(config)
                request_id = self._log_api_request(request_contents, gen_config, prompt_id)
                log_ctx = {"prompt_id": prompt_id, "request_id": request_id}
                self._state = SessionState.SENDING
                start = time.monotonic()

                async def open_stream() -> Tuple[Any, Optional[GenerateContentResponse]]:
                    # 第一个分块在重试内部取出，建连阶段的限流同样可以重试
                    request = GenerateContentRequest(
                        model=self._config.model, contents=request_contents, config=gen_config
                    )
                    stream = await self._content_generator.generate_content_stream(request, prompt_id, request_id)
                    try:
                        first = await stream.__anext__()
                    except StopAsyncIteration:
                        return stream, None
                    except BaseException:
                        await _aclose(stream)
                        raise
                    return stream, first

                try:
                    stream, chunk = await retry_with_backoff(open_stream, self._exchange_retry_options())
                except Exception as exc:
                    raise self._fail(exc, start, prompt_id, request_id) from exc

                self._state = SessionState.STREAMING
                chunks: List[GenerateContentResponse] = []
                output: List[Turn] = []
                try:
                    while chunk is not None:
                        chunks.append(chunk)
                        if is_valid_response(chunk):
                            output.append(chunk.first_content)
                        yield chunk
                        try:
                            chunk = await stream.__anext__()
                        except StopAsyncIteration:
                            chunk = None
                except Exception as exc:
                    raise self._fail(exc, start, prompt_id, request_id) from exc
                finally:
                    await _aclose(stream)

                duration_ms = self._elapsed_ms(start)
                visible = [t for t in output if not is_thought_content(t)]
                aggregate = None
                if visible:
                    aggregate = GenerateContentResponse(
                        candidates=[
                            Candidate(content=Turn(role="model", parts=[p for t in visible for p in t.parts]))
                        ]
                    )
                self._log_api_response(
                    duration_ms,
                    prompt_id,
                    request_id,
                    self.get_final_usage_metadata(chunks),
                    classify_response(aggregate),
                )

                self._state = SessionState.COMMITTING
                record_turns(self._history, user_content, output)
                self._log(
                    logging.INFO, "Stream committed", log_ctx, duration_ms=duration_ms, chunks=len(chunks)
                )
            finally:
                self._state = SessionState.IDLE

    @staticmethod
    def get_final_usage_metadata(chunks: Sequence[GenerateContentResponse]) -> Optional[UsageMetadata]:
        """流式响应中用量通常只出现在最后几个分块，取最后一个带用量的分块。"""

        for chunk in reversed(chunks):
            if chunk.usage_metadata is not None:
                return chunk.usage_metadata
        return None

    # ---- 重试与降级 ----

    def _exchange_retry_options(self) -> RetryOptions:
        return replace(
            self._retry_options,
            on_persistent_429=self._handle_persistent_rate_limit,
            auth_type=self._config.auth_type,
        )

    async def _handle_persistent_rate_limit(
        self, auth_type: Optional[str], error: BaseException
    ) -> Optional[str]:
        """持续限流时的降级策略，返回新的模型名表示继续重试。

        厂商 OAuth 的提示统一在 _fail 中输出，这里不降级。
        """

        if auth_type != AuthType.LOGIN_WITH_OAUTH:
            return None

        current = self._config.model
        if current == FALLBACK_MODEL:
            return None
        handler = self._config.fallback_handler
        if handler is None:
            return None

        log_ctx = {"session_id": self._config.session_id, "model": current}
        try:
            accepted = handler(current, FALLBACK_MODEL, error)
            if inspect.isawaitable(accepted):
                accepted = await accepted
        except Exception as exc:
            self._log(logging.WARNING, "Fallback handler failed", log_ctx, error=str(exc))
            return None
        if accepted is False or accepted is None:
            self._log(logging.INFO, "Fallback declined", log_ctx)
            return None

        self._config.model = FALLBACK_MODEL
        self._config.fallback_mode = True
        self._log(logging.WARNING, "Switched to fallback model", log_ctx, fallback_model=FALLBACK_MODEL)
        if self._telemetry_on():
            self._emit(self._behavior_log.log_flash_fallback, current, FALLBACK_MODEL, auth_type)
        return FALLBACK_MODEL

    def _warn_provider_oauth_error(self, error: BaseException) -> None:
        kind = classify_provider_oauth_error(error)
        log_ctx = {"session_id": self._config.session_id, "model": self._config.model}
        if kind == "auth":
            self._log(logging.WARNING, "OAuth authentication failed, please re-authenticate", log_ctx, error=str(error))
        elif kind == "rate_limit":
            self._log(logging.WARNING, "OAuth quota exhausted, try again later", log_ctx, error=str(error))

    def _fail(self, exc: BaseException, start: float, prompt_id: str, request_id: str) -> ExchangeError:
        self._state = SessionState.FAILED
        duration_ms = self._elapsed_ms(start)
        if self._config.auth_type == AuthType.QWEN_OAUTH:
            self._warn_provider_oauth_error(exc)
        self._log_api_error(duration_ms, exc, prompt_id, request_id)
        status = error_status(exc)
        return ExchangeError(
            str(exc) or type(exc).__name__,
            model=self._config.model,
            duration_ms=duration_ms,
            error_type=type(exc).__name__,
            http_status=status if status and status >= 400 else 500,
            prompt_id=prompt_id,
            request_id=request_id,
        )

    # ---- 行为日志 ----

    def _telemetry_on(self) -> bool:
        return self._behavior_log is not None and self._config.telemetry_enabled

    def _log_api_request(
        self, contents: List[Turn], gen_config: GenerateContentConfig, prompt_id: str
    ) -> str:
        request_id = str(uuid4())
        if self._telemetry_on():
            self._emit(
                self._behavior_log.log_api_request,
                self._config.model,
                prompt_id,
                request_id,
                profile_request(contents, gen_config),
            )
        return request_id

    def _log_api_response(
        self,
        duration_ms: int,
        prompt_id: str,
        request_id: str,
        usage: Optional[UsageMetadata],
        response_type: str,
    ) -> None:
        # 没有用量数据的响应不记录
        if usage is None or not self._telemetry_on():
            return
        self._emit(
            self._behavior_log.log_api_response,
            self._config.model,
            prompt_id,
            request_id,
            usage,
            duration_ms,
            response_type,
            self._config.auth_type,
        )

    def _log_api_error(self, duration_ms: int, error: BaseException, prompt_id: str, request_id: str) -> None:
        self._log(
            logging.ERROR,
            "Model call failed",
            {"prompt_id": prompt_id, "request_id": request_id},
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._telemetry_on():
            self._emit(
                self._behavior_log.log_api_error,
                self._config.model,
                prompt_id,
                request_id,
                error,
                duration_ms,
                self._config.auth_type,
            )

    def _emit(self, method: Any, *args: Any) -> None:
        """行为日志写入失败只记诊断日志，不影响交换本身。"""

        try:
            method(*args)
        except Exception as exc:
            self._log(
                logging.WARNING,
                "Behavior log emission failed",
                {"session_id": self._config.session_id},
                error=str(exc),
            )

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
