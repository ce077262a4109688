import logging

import pytest
import torch

import main
from conftest import FakeTokenizer, ScriptedEngine


class _FakeHandle:
    def __init__(self):
        self.tokenizer = FakeTokenizer()
        self.engines = []
        self.logits_fn = None

    def create_engine(self, capacity):
        engine = ScriptedEngine(logits_fn=self.logits_fn)
        self.engines.append(engine)
        return engine


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    (tmp_path / "prompt.txt").write_text("ab", encoding="utf-8")
    (tmp_path / "config.yaml").write_text(
        "generation_params:\n"
        "  context_size: 100\n"
        "  temperature: 0\n"
        "  seed: 1\n"
        "penalties:\n"
        "  repeat_penalty: 1.0\n"
        "  presence_penalty: 0\n"
        "  frequency_penalty: 0\n"
        "loop_guard:\n"
        "  enabled: false\n",
        encoding="utf-8",
    )
    handle = _FakeHandle()
    monkeypatch.setattr(main, "resolve_model", lambda model, model_dir, show_progress: model)
    monkeypatch.setattr(main.ModelHandle, "load", classmethod(lambda cls, ref, threads=None: handle))
    monkeypatch.chdir(tmp_path)

    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield handle
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def test_max_tokens_run_exits_cleanly(workspace, capsys):
    code = main.main_cli(["--max-tokens", "5", "--disable-anchors", "--quiet"])
    assert code == 0
    assert capsys.readouterr().out == "aaaaa"


def test_context_exhaustion_exit_code(workspace, capsys):
    code = main.main_cli(["--disable-anchors", "--quiet"])
    assert code == 101
    captured = capsys.readouterr()
    # BOS + "ab\n\n" take five positions
    assert captured.out == "a" * 90
    assert "Context window exhausted" in captured.err


def test_output_is_mirrored_to_file(workspace, tmp_path, capsys):
    code = main.main_cli(["--max-tokens", "3", "--disable-anchors", "--quiet",
                          "--output-file", "out/gen.txt"])
    assert code == 0
    assert (tmp_path / "out" / "gen.txt").read_text(encoding="utf-8") == "aaa"


def test_metadata_banner_unless_quiet(workspace, capsys):
    main.main_cli(["--max-tokens", "2", "--disable-anchors"])
    out = capsys.readouterr().out
    assert "=== Beginning Generation ===" in out
    assert "max_tokens_reached" in out


def test_bad_configuration_exit_code(workspace):
    assert main.main_cli(["--top-p", "1.5"]) == 2
    assert workspace.engines == []


def test_missing_prompt_file_exit_code(workspace):
    assert main.main_cli(["-p", "nowhere.txt"]) == 2


def test_prompt_too_long_exit_code(workspace):
    assert main.main_cli(["-c", "2", "--disable-anchors", "--quiet"]) == 2


def test_non_finite_logits_exit_code(workspace, capsys):
    workspace.logits_fn = lambda n_past, call: torch.full((32,), float("nan"))
    code = main.main_cli(["--disable-anchors", "--quiet"])
    assert code == 103
    assert "non-finite logits" in capsys.readouterr().err
