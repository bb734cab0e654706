# shran/workspace.py
"""
workspace.py - per-run build workspace and node source preparation

Layout under <work_root>/<target>-<source_ref>/:
  src/            extracted node sources (node workdir)
  artifacts/      library override artifacts (read-only inside containers)
  overrides/lib/  staged override libraries the node links against
  dist/           package DESTDIR
  deploy/         deploy destination
  logs/           captured stage output
"""

from __future__ import annotations

import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from shran.config import get_build_config
from shran.errors import FetchError
from shran.fetcher import Fetcher
from shran.github import GitHubClient
from shran.logging import get_logger
from shran.manifest import ManifestEntry, ManifestManager, description_for
from shran.specloader import BuildSpec

logger = get_logger("workspace")

_UNSAFE = re.compile(r"[^A-Za-z0-9._+-]")


class Workspace:
    def __init__(self, root: Union[str, Path], source_dir: Union[str, Path, None] = None):
        self.root = Path(root).expanduser().resolve()
        self.external_source = source_dir is not None
        self.src_dir = Path(source_dir).expanduser().resolve() if source_dir else self.root / "src"
        self.artifacts_dir = self.root / "artifacts"
        self.overrides_dir = self.root / "overrides"
        self.overrides_lib = self.overrides_dir / "lib"
        self.dist_dir = self.root / "dist"
        self.deploy_dir = self.root / "deploy"
        self.logs_dir = self.root / "logs"

    @classmethod
    def for_spec(cls, spec: BuildSpec, work_root: Union[str, Path, None] = None,
                 source_dir: Union[str, Path, None] = None) -> "Workspace":
        base = Path(work_root or get_build_config().get("work_root") or "~/.cache/shran/work").expanduser()
        name = _UNSAFE.sub("_", f"{spec.target}-{spec.source_ref}")
        return cls(base / name, source_dir=source_dir)

    def create(self) -> "Workspace":
        for d in (self.root, self.artifacts_dir, self.overrides_lib, self.dist_dir, self.deploy_dir, self.logs_dir):
            d.mkdir(parents=True, exist_ok=True)
        return self

    def __repr__(self) -> str:
        return f"Workspace({str(self.root)!r})"


@dataclass(frozen=True)
class PreparedSource:
    path: Path
    ref: str
    sha: Optional[str] = None
    archive: Optional[Path] = None


def _unpack_into(fetcher: Fetcher, archive: Path, workspace: Workspace) -> None:
    staging = workspace.root / ".unpack"
    if staging.exists():
        shutil.rmtree(staging)
    top = fetcher.unpack(archive, staging)
    if workspace.src_dir.exists():
        shutil.rmtree(workspace.src_dir)
    if len(top) == 1 and (staging / top[0]).is_dir():
        shutil.move(str(staging / top[0]), str(workspace.src_dir))
        shutil.rmtree(staging)
    else:
        shutil.move(str(staging), str(workspace.src_dir))


def prepare_source(spec: BuildSpec, workspace: Workspace, github: Optional[GitHubClient] = None,
                   fetcher: Optional[Fetcher] = None, manifest: Optional[ManifestManager] = None) -> PreparedSource:
    """
    Make node sources available in workspace.src_dir before configure.
    An explicit source directory is used as-is; otherwise source_ref is resolved on GitHub,
    the archive is downloaded (or reused from the manifest) and unpacked.
    """
    if workspace.external_source:
        if not workspace.src_dir.is_dir():
            raise FetchError(f"source directory not found: {workspace.src_dir}")
        logger.info("using local sources at %s", workspace.src_dir)
        return PreparedSource(path=workspace.src_dir, ref=spec.source_ref)

    github = github or GitHubClient()
    fetcher = fetcher or Fetcher(headers={"User-Agent": "shran"})
    manifest = manifest or ManifestManager()

    if workspace.src_dir.is_dir() and any(workspace.src_dir.iterdir()):
        logger.info("reusing extracted sources at %s", workspace.src_dir)
        return PreparedSource(path=workspace.src_dir, ref=spec.source_ref)

    resolved = github.resolve_ref(spec.source_ref)
    key = description_for(spec.source_ref)
    entry = manifest.find(key)
    if entry and Path(entry.installation_location).is_file():
        archive = Path(entry.installation_location)
        logger.info("using cached archive %s", archive)
    else:
        archive = fetcher.cache_dir / f"{_UNSAFE.sub('_', spec.source_ref)}.tar.gz"
        fetcher.download(resolved.archive_url, archive)
        if entry:
            manifest.remove_entry(key)
        manifest.add_entry(key, ManifestEntry(
            version=spec.source_ref,
            published_date=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            installation_location=str(archive),
        ))

    _unpack_into(fetcher, archive, workspace)
    logger.info("sources for %s (%s) ready at %s", spec.source_ref, resolved.sha[:12], workspace.src_dir)
    return PreparedSource(path=workspace.src_dir, ref=spec.source_ref, sha=resolved.sha, archive=archive)
