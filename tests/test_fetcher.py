"""Tests for the download/cache/verify layer."""

import hashlib
import io
import shutil
import tarfile
import urllib.error
import urllib.request

import pytest

from shran.errors import FetchError
from shran.fetcher import Fetcher, _normalize_checksum
from shran.specloader import LibraryOverride


def _sha(data):
    return hashlib.sha256(data).hexdigest()


def _make_tar(path, members):
    with tarfile.open(path, "w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


class TestChecksum:
    """Test checksum handling."""

    def test_normalize(self):
        assert _normalize_checksum("SHA256:ABC") == {"sha256": "abc"}
        assert _normalize_checksum("abc") == {"sha256": "abc"}
        assert _normalize_checksum(None) == {}

    def test_verify(self, tmp_path):
        f = tmp_path / "a.bin"
        f.write_bytes(b"payload")
        fetcher = Fetcher()
        assert fetcher.verify(f, _sha(b"payload"))
        assert fetcher.verify(f, "sha256:" + _sha(b"payload"))
        assert not fetcher.verify(f, _sha(b"other"))
        assert fetcher.verify(f, None)

    def test_unsupported_algorithm(self, tmp_path):
        f = tmp_path / "a.bin"
        f.write_bytes(b"payload")
        with pytest.raises(FetchError):
            Fetcher().verify(f, "md5:abc")


class TestLocalFetch:
    """Test fetching local artifacts."""

    def test_copy_into_dest(self, tmp_path, artifact):
        dest = tmp_path / "dest"
        path = Fetcher().fetch(str(artifact), dest)
        assert path == dest / artifact.name
        assert path.read_bytes() == artifact.read_bytes()

    def test_file_url(self, tmp_path, artifact):
        path = Fetcher().fetch("file://" + str(artifact), tmp_path / "dest")
        assert path.exists()

    def test_checksum_mismatch(self, tmp_path, artifact):
        with pytest.raises(FetchError, match="checksum"):
            Fetcher().fetch(str(artifact), tmp_path / "dest", checksum=_sha(b"nope"))

    def test_missing_source(self, tmp_path):
        with pytest.raises(FetchError, match="not found"):
            Fetcher().fetch(str(tmp_path / "missing.so"), tmp_path / "dest")

    def test_copy_error_is_fetch_error(self, tmp_path, artifact, monkeypatch):
        def denied(src, dst, *a, **kw):
            raise PermissionError(13, "Permission denied", str(dst))

        monkeypatch.setattr(shutil, "copy2", denied)
        with pytest.raises(FetchError, match="cannot copy"):
            Fetcher().fetch(str(artifact), tmp_path / "dest")

    def test_resolve_artifact_checks_version(self, tmp_path, artifact):
        ok = LibraryOverride(name="libssl", source=str(artifact), version=">=3.0,<4")
        assert Fetcher().resolve_artifact(ok, tmp_path / "dest").exists()
        bad = LibraryOverride(name="libssl", source=str(artifact), version="<3")
        with pytest.raises(FetchError, match="does not satisfy"):
            Fetcher().resolve_artifact(bad, tmp_path / "dest2")


class TestHttpFetch:
    """Test HTTP downloads with a patched urlopen."""

    def test_download_and_cache(self, tmp_path, monkeypatch):
        calls = []

        def fake_urlopen(req, timeout=None):
            calls.append(req.full_url)
            return io.BytesIO(b"archive-bytes")

        monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
        fetcher = Fetcher(cache_dir=str(tmp_path / "cache"))
        url = "https://example.org/dl/zlib-1.3.tar.gz"
        path = fetcher.fetch(url, tmp_path / "dest", name="zlib", version="1.3", checksum=_sha(b"archive-bytes"))
        assert path.read_bytes() == b"archive-bytes"
        assert path == tmp_path / "dest" / "zlib-1.3.tar.gz"
        assert fetcher.cache_path_for("zlib", "1.3", "zlib-1.3.tar.gz").exists()
        fetcher.fetch(url, tmp_path / "dest", name="zlib", version="1.3", checksum=_sha(b"archive-bytes"))
        assert len(calls) == 1

    def test_download_failure(self, tmp_path, monkeypatch):
        def fake_urlopen(req, timeout=None):
            raise urllib.error.URLError("network down")

        monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
        out = tmp_path / "x.tar.gz"
        with pytest.raises(FetchError, match="network down"):
            Fetcher(retries=1).download("https://example.org/x.tar.gz", out)
        assert not out.exists()
        assert not (tmp_path / "x.tar.gz.part").exists()


class TestUnpack:
    """Test archive extraction."""

    def test_unpack_returns_top_level(self, tmp_path):
        archive = _make_tar(tmp_path / "src.tar.gz", {
            "bitcoin-25.0/configure.ac": b"AC_INIT",
            "bitcoin-25.0/src/init.cpp": b"int main;",
        })
        top = Fetcher().unpack(archive, tmp_path / "out")
        assert top == ["bitcoin-25.0"]
        assert (tmp_path / "out" / "bitcoin-25.0" / "src" / "init.cpp").read_bytes() == b"int main;"

    def test_rejects_parent_escape(self, tmp_path):
        archive = _make_tar(tmp_path / "evil.tar.gz", {"../evil.sh": b"rm -rf"})
        with pytest.raises(FetchError, match="unsafe"):
            Fetcher().unpack(archive, tmp_path / "out")
        assert not (tmp_path / "evil.sh").exists()

    def test_rejects_absolute_path(self, tmp_path):
        archive = _make_tar(tmp_path / "evil.tar.gz", {"/tmp/shran-evil": b"x"})
        with pytest.raises(FetchError, match="unsafe"):
            Fetcher().unpack(archive, tmp_path / "out")

    def test_not_an_archive(self, tmp_path):
        bogus = tmp_path / "bogus.tar.gz"
        bogus.write_bytes(b"not a tarball")
        with pytest.raises(FetchError):
            Fetcher().unpack(bogus, tmp_path / "out")
