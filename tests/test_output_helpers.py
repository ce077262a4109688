import io

from utils.output_helpers import FileOutput, OutputTarget, TerminalOutput, has_display_device


def test_terminal_output_writes_to_stream():
    buf = io.StringIO()
    TerminalOutput(buf).write("hello")
    assert buf.getvalue() == "hello"


def test_file_output_truncates_and_creates_dirs(tmp_path):
    path = tmp_path / "out" / "gen.txt"
    path.parent.mkdir()
    path.write_text("stale", encoding="utf-8")

    sink = FileOutput(path)
    sink.write("a")
    sink.write("b")
    # flushed after every fragment
    assert path.read_text(encoding="utf-8") == "ab"
    sink.close()
    sink.close()


def test_target_fans_out_to_terminal_and_mirror(tmp_path):
    buf = io.StringIO()
    mirror = tmp_path / "nested" / "mirror.txt"
    with OutputTarget.autodetect(mirror_file=mirror, stream=buf) as target:
        assert len(target.sinks) == 2
        target.write("one ")
        target.write("two")
    assert buf.getvalue() == "one two"
    assert mirror.read_text(encoding="utf-8") == "one two"


def test_target_without_mirror_is_terminal_only():
    target = OutputTarget.autodetect(stream=io.StringIO())
    assert [type(s) for s in target.sinks] == [TerminalOutput]


def test_has_display_device(tmp_path):
    missing = tmp_path / "spidev0.0"
    assert not has_display_device([missing])
    missing.touch()
    assert has_display_device([missing])
