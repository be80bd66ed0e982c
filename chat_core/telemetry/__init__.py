"""行为日志（telemetry）。

- identity: 操作者 / 机器的匿名指纹。
- dedup: 响应事件去重窗口。
- behavior_log: 滚动 JSONL 行为日志写入器。
"""

from chat_core.telemetry.behavior_log import BehaviorLogWriter
from chat_core.telemetry.dedup import DedupWindow
from chat_core.telemetry.identity import IdentityHasher, hash_identity

__all__ = ["BehaviorLogWriter", "DedupWindow", "IdentityHasher", "hash_identity"]
