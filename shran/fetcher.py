# shran/fetcher.py
"""
fetcher.py - download/cache/verify layer for shran

Features:
- Protocol support: http(s) via urllib with timeout and retries, file:// and local paths (copy)
- Cache layout: <cache_dir>/<name>/<version>/<file>
- Verification: sha256 checksum ("sha256:<hex>" or bare hex)
- Library override artifacts: fetch into the run workspace, verify checksum and version constraint
- Safe tar extraction (rejects absolute paths and parent-directory escapes)
"""

from __future__ import annotations

import os
import time
import shutil
import hashlib
import tarfile
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from shran.config import get_build_config, get_fetcher_config
from shran.errors import FetchError
from shran.logging import get_logger
from shran.specloader import LibraryOverride
from shran.versions import version_from_artifact, version_satisfies

logger = get_logger("fetcher")

# -----------------------------------------------------------------------
# Utility helpers
# -----------------------------------------------------------------------
def _ensure_dir(path: Union[str, Path]):
    os.makedirs(path, exist_ok=True)

def _sha256_of_file(path: Union[str, Path]) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()

# canonicalize checksum field: accepts "sha256:hex" or bare hex
def _normalize_checksum(checksum: Optional[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not checksum:
        return out
    s = str(checksum).strip()
    if ":" in s:
        alg, val = s.split(":", 1)
        out[alg.lower().strip()] = val.lower().strip()
    else:
        out["sha256"] = s.lower()
    return out

def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))

def _filename_for(url: str) -> str:
    return os.path.basename(url.split("?", 1)[0].rstrip("/")) or f"download_{int(time.time())}"

def _fetch_http(url: str, out_path: Path, timeout: int = 60, headers: Optional[Dict[str, str]] = None) -> Tuple[bool, Optional[str]]:
    """Download url to out_path; returns (ok, error)."""
    tmp = out_path.with_name(out_path.name + ".part")
    try:
        _ensure_dir(out_path.parent)
        req = urllib.request.Request(url, headers=headers or {})
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            with open(tmp, "wb") as f:
                while True:
                    chunk = resp.read(8192)
                    if not chunk:
                        break
                    f.write(chunk)
        os.replace(tmp, out_path)
        return True, None
    except (urllib.error.URLError, OSError, ValueError) as e:
        logger.debug("HTTP fetch failed for %s: %s", url, e)
        if tmp.exists():
            tmp.unlink()
        return False, str(e)

def _fetch_local(path: str, dest_dir: Path) -> Tuple[bool, Optional[Path]]:
    if not os.path.exists(path):
        logger.warning("Local fetch path not found: %s", path)
        return False, None
    out_path = dest_dir / os.path.basename(os.path.normpath(path))
    if os.path.abspath(path) == os.path.abspath(out_path):
        return True, out_path
    try:
        _ensure_dir(dest_dir)
        if os.path.isdir(path):
            shutil.copytree(path, out_path, dirs_exist_ok=True)
        else:
            shutil.copy2(path, out_path)
    except (OSError, shutil.Error) as e:
        raise FetchError(f"cannot copy {path} to {dest_dir}: {e}")
    return True, out_path

def _within(root: Path, path: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False

def _safe_members(tar: tarfile.TarFile, dest: Path):
    root = dest.resolve()
    for member in tar.getmembers():
        if os.path.isabs(member.name) or ".." in Path(member.name).parts:
            raise FetchError(f"unsafe path in archive: {member.name}")
        if member.issym():
            link = (root / Path(member.name).parent / member.linkname).resolve()
            if os.path.isabs(member.linkname) or not _within(root, link):
                raise FetchError(f"unsafe link in archive: {member.name} -> {member.linkname}")
        elif member.islnk():
            if not _within(root, (root / member.linkname).resolve()):
                raise FetchError(f"unsafe link in archive: {member.name} -> {member.linkname}")
        elif member.isdev():
            continue
        yield member

# -----------------------------------------------------------------------
# Fetcher
# -----------------------------------------------------------------------
class Fetcher:
    def __init__(self, cache_dir: Optional[str] = None, http_timeout: Optional[int] = None,
                 retries: Optional[int] = None, headers: Optional[Dict[str, str]] = None):
        cfg = get_fetcher_config()
        self.cache_dir = Path(cache_dir or get_build_config().get("cache_dir") or "~/.cache/shran").expanduser()
        self.http_timeout = int(http_timeout if http_timeout is not None else cfg.get("http_timeout", 60))
        self.retries = max(1, int(retries if retries is not None else cfg.get("retries", 3)))
        self.headers = dict(headers or {})

    # -------------------------
    # cache
    # -------------------------
    def cache_path_for(self, name: str, version: Optional[str], fname: str) -> Path:
        safe_version = (version or "any").replace("/", "_").replace(",", "_").replace("<", "lt").replace(">", "gt").replace("=", "eq")
        return self.cache_dir / name / safe_version / fname

    # -------------------------
    # verification
    # -------------------------
    def verify(self, file_path: Union[str, Path], checksum: Optional[str]) -> bool:
        expected = _normalize_checksum(checksum)
        if not expected:
            return True
        if not os.path.isfile(file_path):
            return False
        for alg, val in expected.items():
            if alg != "sha256":
                raise FetchError(f"unsupported checksum algorithm: {alg}")
            got = _sha256_of_file(file_path)
            if got != val:
                logger.warning("Checksum mismatch alg=%s expected=%s got=%s", alg, val, got)
                return False
        return True

    # -------------------------
    # core fetch flow
    # -------------------------
    def download(self, url: str, out_path: Union[str, Path]) -> Path:
        out_path = Path(out_path)
        last_err = None
        for attempt in range(1, self.retries + 1):
            ok, err = _fetch_http(url, out_path, timeout=self.http_timeout, headers=self.headers)
            if ok:
                logger.info("downloaded %s -> %s", url, out_path)
                return out_path
            last_err = err
            logger.warning("download attempt %d/%d failed for %s: %s", attempt, self.retries, url, err)
            if attempt < self.retries:
                time.sleep(min(2 ** (attempt - 1), 10))
        raise FetchError(f"failed to download {url}: {last_err}")

    def fetch(self, source: str, dest_dir: Union[str, Path], name: Optional[str] = None,
              version: Optional[str] = None, checksum: Optional[str] = None, force: bool = False) -> Path:
        """Fetch a URL or local path. Remote files go through the cache and are then copied to dest_dir."""
        dest_dir = Path(dest_dir)
        if _is_url(source):
            fname = _filename_for(source)
            cached = self.cache_path_for(name or fname, version, fname)
            if force or not cached.exists() or not self.verify(cached, checksum):
                self.download(source, cached)
            else:
                logger.debug("cache hit for %s: %s", source, cached)
            path = cached
        else:
            local = source[len("file://"):] if source.startswith("file://") else source
            ok, path = _fetch_local(os.path.expanduser(local), dest_dir)
            if not ok:
                raise FetchError(f"source not found: {source}")
        if checksum and not self.verify(path, checksum):
            raise FetchError(f"checksum mismatch for {source}")
        if path.parent != dest_dir and _is_url(source):
            ok, path = _fetch_local(str(path), dest_dir)
        return path

    def resolve_artifact(self, library: LibraryOverride, dest_dir: Union[str, Path],
                         base_dir: Optional[str] = None) -> Path:
        """Bring a library override artifact into dest_dir and check checksum + version."""
        source = library.source
        if not _is_url(source):
            local = source[len("file://"):] if source.startswith("file://") else os.path.expanduser(source)
            if not os.path.isabs(local) and base_dir:
                local = os.path.normpath(os.path.join(base_dir, local))
            source = local
        path = self.fetch(source, dest_dir, name=library.name, version=library.version, checksum=library.checksum)

        if library.version:
            found = version_from_artifact(library.source)
            if found is None:
                logger.debug("%s: no version in artifact name, constraint %s not checked", library.name, library.version)
            elif not version_satisfies(found, library.version):
                raise FetchError(f"{library.name}: artifact version {found} does not satisfy {library.version}")
        return path

    # -------------------------
    # archives
    # -------------------------
    def unpack(self, archive: Union[str, Path], dest_dir: Union[str, Path]) -> List[str]:
        """Extract a tar archive into dest_dir; return its top-level entry names."""
        dest = Path(dest_dir)
        _ensure_dir(dest)
        try:
            with tarfile.open(archive, "r:*") as tar:
                members = list(_safe_members(tar, dest))
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(dest, members=members, filter="data")
                else:
                    tar.extractall(dest, members=members)
        except tarfile.TarError as e:
            raise FetchError(f"cannot extract {archive}: {e}")
        top: List[str] = []
        for m in members:
            parts = Path(m.name).parts
            if parts and parts[0] not in top:
                top.append(parts[0])
        logger.info("unpacked %s into %s", archive, dest)
        return top

