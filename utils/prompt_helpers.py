# utils/prompt_helpers.py
"""
Prompt assembly.  By default the system prompt is used as pure context
followed by a blank line; with a chat template the system prompt goes in
as the system message and generation starts at the assistant turn.
"""
import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


def read_prompt_file(path: Union[str, Path]) -> str:
    p = Path(path)
    try:
        return p.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise FileNotFoundError(f"Prompt file not found: {p}") from None


def build_prompt(system_prompt: str, user_prompt: Optional[str] = None) -> str:
    prompt = f"{system_prompt.rstrip()}\n\n"
    if user_prompt:
        prompt += f"{user_prompt.rstrip()}\n\n"
    return prompt


class ChatTemplateFormatter:
    def __init__(self, hf_tokenizer, system_prompt: str = "") -> None:
        if not getattr(hf_tokenizer, "chat_template", None):
            raise ValueError("tokenizer has no chat template")
        self.tokenizer = hf_tokenizer
        self.system_prompt = system_prompt or ""

    def build_prompt(self, user_prompt: Optional[str] = None) -> str:
        messages = []
        if self.system_prompt.strip():
            messages.append({"role": "system", "content": self.system_prompt.strip()})
        # templates generally refuse an assistant turn with no user turn before it
        messages.append({"role": "user", "content": (user_prompt or "Begin.").strip()})

        return self.tokenizer.apply_chat_template(
            messages,
            tokenize=False,
            add_generation_prompt=True,
        )
