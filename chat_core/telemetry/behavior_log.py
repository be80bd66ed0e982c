"""行为日志写入器。

把每个 TelemetryEvent 追加为 JSONL 文件中的一行：

- 文件名：``{日期}-{session_id 前 8 位}[-{滚动序号}].jsonl``，序号为 0 时省略。
- 滚动：写入前若 "现有大小 + 本行字节数" 达到上限，先切换到下一个序号的新文件，
  超限的这一行写进新文件；旧文件此后不再打开。
- 去重：同一个 request id 的 api_response 只写一次。
- 写入失败只记录到诊断日志，从不向调用方抛出。

多个 ChatSession 共享同一进程时应共享同一个实例，以保持滚动与去重状态一致。
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from chat_core.config.settings import ChatSettings, DEFAULT_LOG_MAX_FILE_BYTES
from chat_core.domain.events import PASSTHROUGH_EVENT_TYPES, RequestProfile, TelemetryEvent
from chat_core.domain.models import UsageMetadata
from chat_core.infrastructure.logging.logger import logger
from chat_core.telemetry.dedup import DedupWindow
from chat_core.telemetry.identity import IdentityHasher


Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BehaviorLogWriter:
    def __init__(
        self,
        session_id: str,
        log_dir: str | Path = "logs",
        max_file_bytes: int = DEFAULT_LOG_MAX_FILE_BYTES,
        enabled: bool = True,
        hasher: Optional[IdentityHasher] = None,
        dedup_capacity: int = 100,
        clock: Optional[Clock] = None,
    ):
        if max_file_bytes < 1:
            raise ValueError("max_file_bytes must be positive")
        self._session_id = session_id
        self._log_dir = Path(log_dir)
        self._max_file_bytes = max_file_bytes
        self._enabled = enabled
        self._clock = clock or _utcnow
        self._dedup = DedupWindow(dedup_capacity)

        hasher = hasher or IdentityHasher()
        self.student_id_hash = hasher.student_id_hash
        self.machine_id_hash = hasher.machine_id_hash

        self._date = self._clock().astimezone(timezone.utc).strftime("%Y-%m-%d")
        self._roll_number = 0
        self._path = self._build_path(0)

    @classmethod
    def from_settings(cls, cfg: ChatSettings, hasher: Optional[IdentityHasher] = None) -> "BehaviorLogWriter":
        return cls(
            session_id=cfg.session_id,
            log_dir=cfg.log_dir,
            max_file_bytes=cfg.log_max_file_bytes,
            enabled=cfg.telemetry_enabled,
            hasher=hasher,
            dedup_capacity=cfg.dedup_window_size,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def current_path(self) -> Path:
        return self._path

    @property
    def current_roll_number(self) -> int:
        return self._roll_number

    def _build_path(self, roll_number: int) -> Path:
        suffix = f"-{roll_number}" if roll_number > 0 else ""
        return self._log_dir / f"{self._date}-{self._session_id[:8]}{suffix}.jsonl"

    def _roll_if_needed(self, line_size: int) -> None:
        while self._path.exists() and self._path.stat().st_size + line_size >= self._max_file_bytes:
            previous = self._path
            self._roll_number += 1
            self._path = self._build_path(self._roll_number)
            logger.info(
                "Rolled behavior log file",
                extra={"extra": {"previous": str(previous), "current": str(self._path)}},
            )

    def log_event(self, event: TelemetryEvent) -> bool:
        """追加一条事件，返回是否真正写入。"""

        if not self._enabled:
            return False
        stamped = replace(
            event,
            session_id=event.session_id or self._session_id,
            student_id_hash=self.student_id_hash,
            machine_id_hash=self.machine_id_hash,
        )
        try:
            line = json.dumps(stamped.to_record(), ensure_ascii=False) + "\n"
            data = line.encode("utf-8")
            self._log_dir.mkdir(parents=True, exist_ok=True)
            self._roll_if_needed(len(data))
            # 整行一次写入，追加模式下不会与其他行交错
            with self._path.open("ab") as f:
                f.write(data)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(
                "Failed to log user behavior event",
                extra={"extra": {"event_type": event.event_type, "path": str(self._path), "error": str(e)}},
            )
            return False
        return True

    # ---- 各类事件的便捷方法 ----

    def log_typing_start(self, prompt_id: str) -> bool:
        return self.log_event(TelemetryEvent(event_type="typing_start", timestamp=self._clock(), prompt_id=prompt_id))

    def log_prompt_submit(self, prompt_id: str, prompt: str, prompt_length: Optional[int] = None) -> bool:
        return self.log_event(
            TelemetryEvent(
                event_type="prompt_submit",
                timestamp=self._clock(),
                prompt_id=prompt_id,
                content=prompt,
                input_token_count=prompt_length if prompt_length is not None else len(prompt),
            )
        )

    def log_prompt_cancel(self, prompt_id: str) -> bool:
        return self.log_passthrough("prompt_cancel", prompt_id=prompt_id)

    def log_api_request(
        self,
        model: str,
        prompt_id: str,
        request_id: str,
        profile: Optional[RequestProfile] = None,
    ) -> bool:
        fields: dict = {}
        if profile is not None:
            fields = {
                "operation_type": profile.operation_type,
                "tools_called": tuple(profile.tools_called),
                "request_context": profile.request_context,
                "estimated_tokens": profile.estimated_tokens,
                "conversation_turn": profile.conversation_turn,
                "has_file_context": profile.has_file_context,
                "system_prompt_length": profile.system_prompt_length,
                "available_tools": tuple(profile.available_tools) or None,
            }
        return self.log_event(
            TelemetryEvent(
                event_type="api_request",
                timestamp=self._clock(),
                model=model,
                prompt_id=prompt_id,
                request_id=request_id,
                **fields,
            )
        )

    def log_api_response(
        self,
        model: str,
        prompt_id: str,
        request_id: str,
        usage: UsageMetadata,
        duration_ms: int,
        response_type: Optional[str] = None,
        auth_type: Optional[str] = None,
    ) -> bool:
        """写入响应事件；同一个 request_id 只会写一次。"""

        if not self._enabled:
            return False
        if not self._dedup.add(request_id):
            logger.info("Skipped duplicate api_response", extra={"extra": {"request_id": request_id}})
            return False
        return self.log_event(
            TelemetryEvent(
                event_type="api_response",
                timestamp=self._clock(),
                model=model,
                prompt_id=prompt_id,
                request_id=request_id,
                input_token_count=usage.input_token_count,
                output_token_count=usage.output_token_count,
                duration_ms=duration_ms,
                response_type=response_type,
                auth_type=auth_type,
            )
        )

    def log_api_error(
        self,
        model: str,
        prompt_id: str,
        request_id: Optional[str],
        error: BaseException,
        duration_ms: int,
        auth_type: Optional[str] = None,
    ) -> bool:
        return self.log_event(
            TelemetryEvent(
                event_type="api_error",
                timestamp=self._clock(),
                model=model,
                prompt_id=prompt_id,
                request_id=request_id,
                duration_ms=duration_ms,
                error=str(error) or type(error).__name__,
                error_type=type(error).__name__,
                auth_type=auth_type,
            )
        )

    def log_flash_fallback(self, from_model: str, to_model: str, auth_type: Optional[str] = None) -> bool:
        return self.log_passthrough("flash_fallback", model=to_model, auth_type=auth_type, fromModel=from_model)

    def log_passthrough(self, event_type: str, prompt_id: Optional[str] = None, **fields: Any) -> bool:
        """UI 侧事件的透传：已知字段按名字填充，其余字段原样写入记录。"""

        if event_type not in PASSTHROUGH_EVENT_TYPES:
            raise ValueError(f"{event_type!r} is not a pass-through event type")
        known = {k: v for k, v in fields.items() if k in TelemetryEvent.__dataclass_fields__}
        extra = tuple((k, v) for k, v in fields.items() if k not in known)
        return self.log_event(
            TelemetryEvent(
                event_type=event_type,
                timestamp=self._clock(),
                prompt_id=prompt_id,
                extra=extra or None,
                **known,
            )
        )
