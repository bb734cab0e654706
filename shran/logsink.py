# shran/logsink.py
"""Stage output sinks keyed by (target, stage, stream). The engine writes, never reads back."""

from __future__ import annotations

import re
import threading
from pathlib import Path
from typing import List, Optional, Tuple, Union

_SAFE = re.compile(r"[^A-Za-z0-9._+-]")


def _safe_name(name: str) -> str:
    return _SAFE.sub("_", name) or "_"


class FileLogSink:
    """Appends captured output to <root>/<target>/<stage>.<stream>.log."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._lock = threading.Lock()

    def path_for(self, target: str, stage: str, stream: str) -> Path:
        return self.root / _safe_name(target) / f"{_safe_name(stage)}.{_safe_name(stream)}.log"

    def write(self, target: str, stage: str, stream: str, data: Union[bytes, str]) -> str:
        if isinstance(data, str):
            data = data.encode("utf-8", errors="replace")
        path = self.path_for(target, stage, stream)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "ab") as fh:
                fh.write(data)
        return str(path)


class MemoryLogSink:
    """In-memory sink; keeps every write as a tuple."""

    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[Tuple[str, str, str, bytes]] = []

    def write(self, target: str, stage: str, stream: str, data: Union[bytes, str]) -> str:
        if isinstance(data, str):
            data = data.encode("utf-8", errors="replace")
        with self._lock:
            self.records.append((target, stage, stream, data))
        return f"memory://{target}/{stage}.{stream}"

    def output(self, target: str, stage: str, stream: str = "stdout") -> Optional[bytes]:
        with self._lock:
            chunks = [d for (t, s, st, d) in self.records if (t, s, st) == (target, stage, stream)]
        return b"".join(chunks) if chunks else None
