"""Tests for the GitHub client with a patched urlopen."""

import io
import json
import stat
import urllib.error
import urllib.request

import pytest

from shran.errors import GitHubError, SourceRefNotFoundError, TokenNotFoundError
from shran.github import GitHubClient, read_token, write_token

SHA = "e9035f867a36a430998e3811385958229ac79cf5"


class FakeResponse(io.BytesIO):
    def __init__(self, payload, headers=None):
        super().__init__(json.dumps(payload).encode())
        self.headers = headers or {}


def _patch(monkeypatch, routes):
    """routes: url -> payload | (payload, headers) | int (HTTP error code)."""
    seen = []

    def fake_urlopen(req, timeout=None):
        seen.append(req)
        route = routes[req.full_url]
        if isinstance(route, int):
            raise urllib.error.HTTPError(req.full_url, route, "error", {}, None)
        if isinstance(route, tuple):
            return FakeResponse(*route)
        return FakeResponse(route)

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    return seen


API = "https://api.github.com/repos/bitcoin/bitcoin"


class TestToken:
    """Test the token store."""

    def test_write_and_read(self, tmp_path):
        path = write_token("ghp_secret")
        assert path == tmp_path / "xdg" / "shran" / "gh.yaml"
        assert read_token() == "ghp_secret"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_missing_token(self):
        assert read_token() is None
        with pytest.raises(TokenNotFoundError):
            read_token(required=True)

    def test_empty_token_rejected(self):
        with pytest.raises(GitHubError):
            write_token("  ")


class TestClient:
    """Test release and tag queries."""

    def test_resolve_tag(self, monkeypatch):
        seen = _patch(monkeypatch, {f"{API}/commits/v25.0": {"sha": SHA}})
        resolved = GitHubClient(token="t0k").resolve_ref("v25.0")
        assert resolved.sha == SHA
        assert resolved.archive_url == "https://github.com/bitcoin/bitcoin/archive/refs/tags/v25.0.tar.gz"
        assert seen[0].get_header("Authorization") == "Bearer t0k"

    def test_resolve_commit_uses_commit_archive(self, monkeypatch):
        _patch(monkeypatch, {f"{API}/commits/{SHA}": {"sha": SHA}})
        resolved = GitHubClient(token="").resolve_ref(SHA)
        assert resolved.archive_url == f"https://github.com/bitcoin/bitcoin/archive/{SHA}.tar.gz"

    def test_resolve_unknown_ref(self, monkeypatch):
        _patch(monkeypatch, {f"{API}/commits/v0.0.0-nope": 404})
        with pytest.raises(SourceRefNotFoundError) as exc:
            GitHubClient(token="").resolve_ref("v0.0.0-nope")
        assert exc.value.ref == "v0.0.0-nope"

    def test_server_error(self, monkeypatch):
        _patch(monkeypatch, {f"{API}/commits/v25.0": 500})
        with pytest.raises(GitHubError, match="HTTP 500"):
            GitHubClient(token="").resolve_ref("v25.0")

    def test_latest_release(self, monkeypatch):
        _patch(monkeypatch, {f"{API}/releases/latest": {
            "tag_name": "v26.0",
            "author": {"login": "fanquake"},
            "target_commitish": "26.x",
            "published_at": "2023-12-04T12:00:00Z",
        }})
        release = GitHubClient(token="").latest_release()
        assert release.tag_name == "v26.0"
        assert release.author == "fanquake"
        assert release.release_branch == "26.x"

    def test_list_tags_follows_pagination(self, monkeypatch):
        page2 = f"{API}/tags?per_page=2&page=2"
        _patch(monkeypatch, {
            f"{API}/tags?per_page=2": ([{"name": "v26.0"}, {"name": "v25.1"}],
                                       {"Link": f'<{page2}>; rel="next", <{page2}>; rel="last"'}),
            page2: [{"name": "v25.0"}],
        })
        assert GitHubClient(token="").list_tags(per_page=2) == ["v26.0", "v25.1", "v25.0"]
