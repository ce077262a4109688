import pytest

from utils.prompt_helpers import ChatTemplateFormatter, build_prompt, read_prompt_file


def test_build_prompt_plain():
    assert build_prompt("You are here.\n\n\n") == "You are here.\n\n"
    assert build_prompt("Sys", "User  ") == "Sys\n\nUser\n\n"


def test_read_prompt_file(tmp_path):
    path = tmp_path / "prompt.txt"
    path.write_text("hi", encoding="utf-8")
    assert read_prompt_file(path) == "hi"
    with pytest.raises(FileNotFoundError, match="Prompt file not found"):
        read_prompt_file(tmp_path / "missing.txt")


class _TemplateTokenizer:
    chat_template = "{{ messages }}"

    def __init__(self):
        self.seen = None

    def apply_chat_template(self, messages, tokenize, add_generation_prompt):
        self.seen = (messages, tokenize, add_generation_prompt)
        return "|".join(f"{m['role']}:{m['content']}" for m in messages) + "|assistant:"


def test_chat_template_formatter():
    tok = _TemplateTokenizer()
    prompt = ChatTemplateFormatter(tok, "  Be brief. ").build_prompt()
    assert prompt == "system:Be brief.|user:Begin.|assistant:"
    assert tok.seen[1] is False and tok.seen[2] is True

    prompt = ChatTemplateFormatter(tok, "").build_prompt("Go on")
    assert prompt == "user:Go on|assistant:"


def test_chat_template_required():
    class NoTemplate:
        chat_template = None

    with pytest.raises(ValueError):
        ChatTemplateFormatter(NoTemplate(), "sys")
