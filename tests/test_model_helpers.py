import pytest
import requests

from utils import model_helpers
from utils.model_helpers import download_model, ensure_model_exists, is_url, resolve_model


class _FakeResponse:
    def __init__(self, chunks, status=200):
        self.chunks = chunks
        self.status = status
        self.headers = {"content-length": str(sum(len(c) for c in chunks))}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.exceptions.HTTPError(f"{self.status}")

    def iter_content(self, chunk_size):
        yield from self.chunks


class _FakeSession:
    def __init__(self, response):
        self.response = response
        self.urls = []

    def get(self, url, stream, timeout):
        self.urls.append(url)
        return self.response


def test_is_url():
    assert is_url("https://example.com/m.gguf")
    assert not is_url("models/m.gguf")
    assert not is_url("HuggingFaceTB/SmolLM2-135M")


def test_resolve_local_path_and_hub_id(tmp_path):
    local = tmp_path / "m.gguf"
    local.touch()
    assert resolve_model(str(local)) == str(local)
    assert resolve_model("org/some-model") == "org/some-model"


def test_resolve_url_uses_existing_download(tmp_path, monkeypatch):
    (tmp_path / "m.gguf").write_bytes(b"weights")
    monkeypatch.setattr(model_helpers, "download_model",
                        lambda *a, **k: pytest.fail("should not download"))
    path = resolve_model("https://example.com/files/m.gguf", tmp_path, show_progress=False)
    assert path == str(tmp_path / "m.gguf")


def test_download_writes_file(tmp_path, monkeypatch):
    session = _FakeSession(_FakeResponse([b"abc", b"", b"def"]))
    monkeypatch.setattr(model_helpers, "_build_session", lambda: session)

    dest = ensure_model_exists("https://example.com/m.gguf", tmp_path / "models" / "m.gguf",
                               show_progress=False)
    assert dest.read_bytes() == b"abcdef"
    assert not (tmp_path / "models" / "m.gguf.part").exists()
    assert session.urls == ["https://example.com/m.gguf"]


def test_failed_download_leaves_nothing_behind(tmp_path, monkeypatch):
    monkeypatch.setattr(model_helpers, "_build_session",
                        lambda: _FakeSession(_FakeResponse([], status=404)))
    dest = tmp_path / "m.gguf"
    with pytest.raises(requests.exceptions.HTTPError):
        download_model("https://example.com/m.gguf", dest, show_progress=False)
    assert not dest.exists()
    assert not (tmp_path / "m.gguf.part").exists()
