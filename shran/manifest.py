# shran/manifest.py
"""
manifest.py - download manifest for fetched node sources

The manifest is a YAML mapping keyed by a blockchain description
(e.g. "Bitcoin core v25.0"):

    Bitcoin core v25.0:
      version: v25.0
      published_date: "2023-05-26T10:00:00Z"
      installation_location: /home/user/.cache/shran/v25.0.tar.gz

Every change is persisted immediately.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import yaml

from shran.config import config_dir, get_config
from shran.errors import ManifestEntryError
from shran.logging import get_logger

logger = get_logger("manifest")


@dataclass(frozen=True)
class ManifestEntry:
    version: str
    published_date: str
    installation_location: str


def description_for(ref: str, chain: str = "Bitcoin core") -> str:
    return f"{chain} {ref}"


class ManifestManager:
    def __init__(self, path: Union[str, Path, None] = None):
        if path is None:
            path = get_config().get("manifest.path") or (config_dir() / "manifest.yaml")
        self.path = Path(path)
        self._lock = threading.RLock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()
        self._entries: Dict[str, ManifestEntry] = self._read()

    def _read(self) -> Dict[str, ManifestEntry]:
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ManifestEntryError(f"{self.path} is not a mapping")
        return {
            str(k): ManifestEntry(
                version=str(v.get("version", "")),
                published_date=str(v.get("published_date", "")),
                installation_location=str(v.get("installation_location", "")),
            )
            for k, v in data.items()
            if isinstance(v, dict)
        }

    def _write(self) -> None:
        data = {k: asdict(v) for k, v in self._entries.items()}
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            yaml.safe_dump(data, fh, default_flow_style=False, sort_keys=True)
        tmp.replace(self.path)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def entries(self) -> Dict[str, ManifestEntry]:
        with self._lock:
            return dict(self._entries)

    def add_entry(self, key: str, entry: ManifestEntry) -> None:
        with self._lock:
            if key in self._entries:
                raise ManifestEntryError(f"{key} already exists in manifest file")
            self._entries[key] = entry
            self._write()
        logger.info("manifest: added %s", key)

    def remove_entry(self, key: str) -> ManifestEntry:
        with self._lock:
            if key not in self._entries:
                raise ManifestEntryError(f"{key} does not exist in manifest file")
            entry = self._entries.pop(key)
            self._write()
        logger.info("manifest: removed %s", key)
        return entry

    def get_entry(self, key: str) -> ManifestEntry:
        with self._lock:
            if key not in self._entries:
                raise ManifestEntryError(f"{key} does not exist in manifest file")
            return self._entries[key]

    def find(self, key: str) -> Optional[ManifestEntry]:
        with self._lock:
            return self._entries.get(key)
