# shran/github.py
"""
github.py - GitHub releases client for shran

Features:
- resolve_ref(): source_ref (tag/branch/commit) -> concrete commit SHA + archive URL
- latest_release(): latest published release of the node repository
- list_tags(): every tag, following Link rel="next" pagination
- Token store: gh.yaml ({token: ...}) in the shran config dir, sent as a bearer token
"""

from __future__ import annotations

import json
import re
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from shran.config import config_dir, get_github_config
from shran.errors import GitHubError, SourceRefNotFoundError, TokenNotFoundError
from shran.logging import get_logger

logger = get_logger("github")

_LINK_NEXT = re.compile(r'<([^>]+)>\s*;\s*rel="next"')
_SHA_RE = re.compile(r"^[0-9a-f]{40}$")

# ----------------------------
# Token store
# ----------------------------
def token_path() -> Path:
    configured = get_github_config().get("token_file")
    return Path(configured) if configured else config_dir() / "gh.yaml"


def write_token(token: str, path: Union[str, Path, None] = None) -> Path:
    if not token or not token.strip():
        raise GitHubError("refusing to store an empty token")
    p = Path(path) if path else token_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as fh:
        yaml.safe_dump({"token": token.strip()}, fh, default_flow_style=False)
    p.chmod(0o600)
    logger.info("github token stored in %s", p)
    return p


def read_token(path: Union[str, Path, None] = None, required: bool = False) -> Optional[str]:
    p = Path(path) if path else token_path()
    token = None
    if p.exists():
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        if isinstance(data, dict) and data.get("token"):
            token = str(data["token"])
    if token is None and required:
        raise TokenNotFoundError(f"no GitHub token stored in {p}; run `shran auth --token <TOKEN>`")
    return token

# ----------------------------
# Data types
# ----------------------------
@dataclass(frozen=True)
class ResolvedRef:
    ref: str
    sha: str
    archive_url: str


@dataclass(frozen=True)
class GitRelease:
    tag_name: str
    author: str
    release_branch: str
    published_at: Optional[str]

# ----------------------------
# Client
# ----------------------------
class GitHubClient:
    def __init__(self, token: Optional[str] = None, owner: Optional[str] = None,
                 repo: Optional[str] = None, api_url: Optional[str] = None,
                 archive_url: Optional[str] = None, timeout: Optional[int] = None):
        cfg = get_github_config()
        self.token = token if token is not None else read_token()
        self.owner = owner or cfg.get("owner", "bitcoin")
        self.repo = repo or cfg.get("repo", "bitcoin")
        self.api_url = (api_url or cfg.get("api_url") or "https://api.github.com").rstrip("/")
        self.archive_url = (archive_url or cfg.get("archive_url")
                            or f"https://github.com/{self.owner}/{self.repo}/archive/refs/tags").rstrip("/")
        self.timeout = int(timeout or cfg.get("timeout", 30))

    def headers(self) -> Dict[str, str]:
        h = {"Accept": "application/vnd.github+json", "User-Agent": "shran"}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    def _repo_url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}/{path.lstrip('/')}"

    def _get(self, url: str) -> Tuple[Any, Dict[str, str]]:
        req = urllib.request.Request(url, headers=self.headers())
        logger.debug("GET %s", url)
        with urllib.request.urlopen(req, timeout=self.timeout) as resp:
            body = resp.read()
            headers = {k.lower(): v for k, v in resp.headers.items()}
        return json.loads(body.decode("utf-8") or "null"), headers

    # ----------------------------
    # Queries
    # ----------------------------
    def tag_archive_url(self, tag: str) -> str:
        return f"{self.archive_url}/{tag}.tar.gz"

    def commit_archive_url(self, sha: str) -> str:
        return f"https://github.com/{self.owner}/{self.repo}/archive/{sha}.tar.gz"

    def resolve_ref(self, ref: str) -> ResolvedRef:
        """Resolve a tag, branch or commit to its commit SHA. Pure lookup."""
        url = self._repo_url(f"commits/{urllib.parse.quote(ref, safe='')}")
        try:
            data, _ = self._get(url)
        except urllib.error.HTTPError as e:
            if e.code in (404, 422):
                raise SourceRefNotFoundError(ref)
            raise GitHubError(f"GitHub lookup of {ref} failed: HTTP {e.code}")
        except (urllib.error.URLError, OSError) as e:
            raise GitHubError(f"GitHub lookup of {ref} failed: {e}")
        sha = (data or {}).get("sha")
        if not sha:
            raise SourceRefNotFoundError(ref)
        archive = self.commit_archive_url(sha) if _SHA_RE.match(ref.lower()) else self.tag_archive_url(ref)
        logger.info("resolved %s -> %s", ref, sha)
        return ResolvedRef(ref=ref, sha=sha, archive_url=archive)

    def latest_release(self) -> GitRelease:
        try:
            data, _ = self._get(self._repo_url("releases/latest"))
        except urllib.error.HTTPError as e:
            raise GitHubError(f"cannot fetch latest release: HTTP {e.code}")
        except (urllib.error.URLError, OSError) as e:
            raise GitHubError(f"cannot fetch latest release: {e}")
        return GitRelease(
            tag_name=data["tag_name"],
            author=(data.get("author") or {}).get("login", ""),
            release_branch=data.get("target_commitish", ""),
            published_at=data.get("published_at"),
        )

    def list_tags(self, per_page: int = 100) -> List[str]:
        url: Optional[str] = self._repo_url(f"tags?per_page={per_page}")
        tags: List[str] = []
        while url:
            try:
                data, headers = self._get(url)
            except urllib.error.HTTPError as e:
                raise GitHubError(f"cannot list tags: HTTP {e.code}")
            except (urllib.error.URLError, OSError) as e:
                raise GitHubError(f"cannot list tags: {e}")
            tags.extend(t["name"] for t in data or [])
            m = _LINK_NEXT.search(headers.get("link", ""))
            url = m.group(1) if m else None
        return tags
