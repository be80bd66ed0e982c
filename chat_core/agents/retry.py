"""指数退避重试策略。

只对限流（429）与服务端 5xx 错误重试，其他错误立即抛出。
若重试耗尽时最后一次仍是限流错误，视为"持续限流"，调用 on_persistent_429
钩子；钩子返回新的模型名时以全新的尝试次数继续（调用工厂会读取切换后的模型），
钩子最多触发一次，避免降级循环。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_random_exponential

from chat_core.domain.exceptions import RateLimitError
from chat_core.infrastructure.logging.logger import logger


T = TypeVar("T")

PersistentRateLimitHook = Callable[[Optional[str], BaseException], Awaitable[Optional[str]]]

_STATUS_5XX = re.compile(r"\b5\d{2}\b")
_AUTH_PHRASES = ("unauthorized", "forbidden", "invalid api key", "authentication", "access denied")
_RATE_LIMIT_PHRASES = ("429", "rate limit", "too many requests")


def error_status(exc: BaseException) -> Optional[int]:
    for attr in ("http_status", "status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    if error_status(exc) == 429:
        return True
    return "429" in str(exc)


def is_server_error(exc: BaseException) -> bool:
    status = error_status(exc)
    if status is not None and 500 <= status < 600:
        return True
    return bool(_STATUS_5XX.search(str(exc)))


def default_should_retry(exc: BaseException) -> bool:
    return is_rate_limit_error(exc) or is_server_error(exc)


@dataclass
class RetryOptions:
    max_attempts: int = 5
    initial_delay: float = 5.0
    max_delay: float = 30.0
    should_retry: Callable[[BaseException], bool] = default_should_retry
    on_persistent_429: Optional[PersistentRateLimitHook] = None
    auth_type: Optional[str] = None

    @classmethod
    def from_settings(cls, cfg, **overrides) -> "RetryOptions":
        values = {
            "max_attempts": cfg.retry_max_attempts,
            "initial_delay": cfg.retry_initial_delay,
            "max_delay": cfg.retry_max_delay,
        }
        values.update(overrides)
        return cls(**values)


def _log_before_sleep(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    delay = state.next_action.sleep if state.next_action else 0
    logger.log(
        logging.WARNING,
        "Retrying model call",
        extra={"extra": {"attempt": state.attempt_number, "delay_s": delay, "error": str(exc)}},
    )


async def retry_with_backoff(call: Callable[[], Awaitable[T]], options: Optional[RetryOptions] = None) -> T:
    options = options or RetryOptions()
    fallback_used = False
    while True:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(options.max_attempts),
            wait=wait_random_exponential(multiplier=options.initial_delay, max=options.max_delay),
            retry=retry_if_exception(options.should_retry),
            before_sleep=_log_before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await call()
        except Exception as exc:
            if fallback_used or options.on_persistent_429 is None or not is_rate_limit_error(exc):
                raise
            fallback_used = True
            new_model = await options.on_persistent_429(options.auth_type, exc)
            if not new_model:
                raise
            logger.warning(
                "Persistent rate limit, switched model",
                extra={"extra": {"model": new_model, "auth_type": options.auth_type}},
            )


def classify_provider_oauth_error(exc: BaseException) -> str:
    """把厂商 OAuth 模式下的错误分为 "auth" / "rate_limit" / "other"。"""

    message = str(exc).lower()
    status = error_status(exc)
    if (
        status in (401, 403)
        or any(p in message for p in _AUTH_PHRASES)
        or ("token" in message and "expired" in message)
    ):
        return "auth"
    if status == 429 or isinstance(exc, RateLimitError) or any(p in message for p in _RATE_LIMIT_PHRASES):
        return "rate_limit"
    return "other"
