"""操作者与机器的匿名指纹。

两个指纹都是 SHA-256 摘要的前 16 位十六进制字符，不可逆，
同一输入在同一进程内始终得到同一结果。
"""

from __future__ import annotations

import getpass
import hashlib
import os
import platform
import socket
from functools import cached_property
from pathlib import Path
from typing import Mapping, Optional


STUDENT_ID_ENV = "QWEN_STUDENT_ID"
ANONYMOUS_ID = "anonymous"
HASH_LENGTH = 16


def hash_identity(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def _cpu_model() -> str:
    try:
        for line in Path("/proc/cpuinfo").read_text(encoding="utf-8").splitlines():
            if line.lower().startswith("model name"):
                return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor() or platform.machine() or "unknown-cpu"


class IdentityHasher:
    """计算并缓存 studentIdHash / machineIdHash。

    environ 默认为 os.environ，测试时可以传入普通 dict。
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = os.environ if environ is None else environ

    def resolve_student_id(self) -> str:
        explicit = (self._environ.get(STUDENT_ID_ENV) or "").strip()
        if explicit:
            return explicit
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = ""
        return user or ANONYMOUS_ID

    def machine_fingerprint(self) -> str:
        return "-".join(
            [
                socket.gethostname(),
                platform.system(),
                _cpu_model(),
                str(Path.home()),
            ]
        )

    @cached_property
    def student_id_hash(self) -> str:
        return hash_identity(self.resolve_student_id())

    @cached_property
    def machine_id_hash(self) -> str:
        return hash_identity(self.machine_fingerprint())
