# utils/helpers.py
import argparse
import copy
import logging
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)  # Logger for this module

DEFAULT_MODEL_URL = (
    "https://huggingface.co/bartowski/SmolLM2-135M-Instruct-GGUF/resolve/main/"
    "SmolLM2-135M-Instruct-Q4_K_M.gguf"
)


# --------------------------------------------------------------------- #
#  Built-in fallback                                                   #
# --------------------------------------------------------------------- #
_BUILTIN_DEFAULT: Dict[str, Any] = {
    "logging_level": "INFO",
    "model": DEFAULT_MODEL_URL,
    "model_dir": "models",
    "prompt_file": "prompt.txt",
    "user_prompt": None,
    "use_chat_template": False,
    "output_file": None,
    "threads": None,
    "quiet": False,
    "generation_params": {
        "context_size":      1024,
        "overflow_fraction": 0.95,
        "max_tokens":        None,
        "temperature":       0.22,
        "top_p":             0.5,
        "top_k":             20,
        "seed":              None,
    },
    "penalties": {
        "repeat_penalty":    2.15,
        "repeat_last_n":     -1,
        "presence_penalty":  1.35,
        "frequency_penalty": 1.05,
    },
    "mirostat": {
        "enabled": False,
        "tau":     5.0,
        "eta":     0.1,
    },
    "anchors": {
        "enabled":  True,
        "interval": 80,
        # no text here: SessionConfig supplies the default anchor sentence
        "echo":     True,
    },
    "loop_guard": {
        "enabled": True,
        "window":  64,
        "ngram":   4,
        "repeats": 3,
        "mode":    "consecutive",
    },
}


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """b ← a  (a wins only where b lacks the key).  Non-dict leaves are copied."""
    out: Dict[str, Any] = copy.deepcopy(b)
    for k, v in a.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(v, out[k])
        elif k not in out:
            out[k] = copy.deepcopy(v)
    return out


def _str2bool(s) -> bool:
    if isinstance(s, bool):
        return s
    # YAML hands over 0/1 as ints and quoted values as strings
    v = str(s).strip().lower()
    if v in {"true", "1", "yes", "y"}:
        return True
    if v in {"false", "0", "no", "n"}:
        return False
    raise argparse.ArgumentTypeError("expected true/false")


# --------------------------------------------------------------------- #
#  Public loader                                                        #
# --------------------------------------------------------------------- #
def load_config(path: str = "config.yaml") -> Dict[str, Any]:
    user_cfg: Dict[str, Any] = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            user_cfg = yaml.safe_load(f) or {}
        logger.debug(f"Configuration loaded from {path}")
    except FileNotFoundError:
        logger.warning(f"Config file '{path}' not found – using built-in defaults.")
    except yaml.YAMLError as e:
        logger.error(f"YAML parse error in '{path}': {e} – using built-in defaults.")

    if not isinstance(user_cfg, dict):
        logger.error(f"Config file '{path}' must contain a mapping – using built-in defaults.")
        user_cfg = {}

    # Merge (built-in ← user) so user values override defaults.
    return _deep_merge(_BUILTIN_DEFAULT, user_cfg)


def add_generation_cli_args(parser: argparse.ArgumentParser) -> None:
    """
    Adds model, sampling, penalty, anchor and loop-guard flags.  Every
    default is None so that only flags the user actually passed override
    config.yaml in `merge_configs`.
    """
    run_group = parser.add_argument_group('Run Options')
    run_group.add_argument("-m", "--model", type=str, help="Hugging Face model URL, hub id, or local model path.")
    run_group.add_argument("-d", "--model-dir", type=str, help="Directory to store downloaded models.")
    run_group.add_argument("-p", "--prompt-file", type=str, help="Path to the system prompt file.")
    run_group.add_argument("--user-prompt", type=str, help="User prompt that follows the system prompt (advanced).")
    run_group.add_argument("--use-chat-template", type=_str2bool, metavar="true/false",
                           help="Wrap the prompt in the tokenizer's chat template.")
    run_group.add_argument("--output-file", type=str, help="Mirror generated text into this file (in addition to the terminal).")
    run_group.add_argument("--threads", type=int, help="Number of CPU threads for the forward pass.")
    run_group.add_argument("--quiet", action="store_true", default=None,
                           help="Silence run metadata and only stream the model output.")
    run_group.add_argument("--logging-level",
                           choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                           help="Logging level for the script's operations.")

    gen_group = parser.add_argument_group('Generation Parameters (override config.yaml)')
    gen_group.add_argument("-c", "--context-size", type=int, help="Context window size in tokens.")
    gen_group.add_argument("--overflow-fraction", type=float, help="Fraction of the context at which generation is cut off.")
    gen_group.add_argument("--max-tokens", type=int, help="Optional cap on generated tokens.")
    gen_group.add_argument("--temperature", type=float, help="Sampling temperature (0 = greedy).")
    gen_group.add_argument("--top-p", type=float, help="Nucleus sampling probability mass (1.0 disables).")
    gen_group.add_argument("--top-k", type=int, help="Top-k sampling cap (0 disables).")
    gen_group.add_argument("--seed", type=int, help="Random seed (omit for a time-based seed).")

    pen_group = parser.add_argument_group('Penalties (override config.yaml)')
    pen_group.add_argument("--repeat-penalty", type=float, help="Penalize recent repeats (1.0 disables).")
    pen_group.add_argument("--repeat-last-n", type=int, help="Tokens considered for penalties (-1 = whole context).")
    pen_group.add_argument("--presence-penalty", type=float, help="Presence penalty.")
    pen_group.add_argument("--frequency-penalty", type=float, help="Frequency penalty.")

    miro_group = parser.add_argument_group('Mirostat (override config.yaml)')
    miro_group.add_argument("--mirostat", action="store_true", default=None,
                            help="Use mirostat-v2 instead of the temperature/top-k/top-p chain.")
    miro_group.add_argument("--mirostat-tau", type=float, help="Target surprise (tau).")
    miro_group.add_argument("--mirostat-eta", type=float, help="Learning rate (eta).")

    anchor_group = parser.add_argument_group('Anchors (override config.yaml)')
    anchor_group.add_argument("--anchor-interval", type=int, help="Generated tokens between anchor injections (0 disables).")
    anchor_group.add_argument("--anchor-text", type=str, help="Anchor text to inject.")
    anchor_group.add_argument("--disable-anchors", action="store_true", default=None,
                              help="Disable anchor injection entirely.")

    guard_group = parser.add_argument_group('Loop Guard (override config.yaml)')
    guard_group.add_argument("--disable-loop-guard", action="store_true", default=None,
                             help="Disable loop detection.")
    guard_group.add_argument("--loop-guard-window", type=int, help="Generated tokens scanned for loops.")
    guard_group.add_argument("--loop-guard-ngram", type=int, help="N-gram length that counts as a loop unit.")
    guard_group.add_argument("--loop-guard-repeats", type=int, help="Repeats of the n-gram that trigger a stop.")
    guard_group.add_argument("--loop-guard-mode", choices=["consecutive", "window"],
                             help="consecutive: back-to-back repeats; window: repeats anywhere in the window.")


def merge_configs(base_cfg: Dict[str, Any], cli_args: argparse.Namespace) -> Dict[str, Any]:
    cfg = copy.deepcopy(base_cfg)
    args_dict = vars(cli_args)

    def _set(section: str, key: str, arg_name: str) -> None:
        value = args_dict.get(arg_name)
        if value is None:
            return
        if section:
            cfg.setdefault(section, {})[key] = value
        else:
            cfg[key] = value

    # Direct overrides for top-level simple settings
    for key in ["model", "model_dir", "prompt_file", "user_prompt", "use_chat_template",
                "output_file", "threads", "quiet", "logging_level"]:
        _set("", key, key)

    _set("generation_params", "context_size", "context_size")
    _set("generation_params", "overflow_fraction", "overflow_fraction")
    _set("generation_params", "max_tokens", "max_tokens")
    _set("generation_params", "temperature", "temperature")
    _set("generation_params", "top_p", "top_p")
    _set("generation_params", "top_k", "top_k")
    _set("generation_params", "seed", "seed")

    for key in ["repeat_penalty", "repeat_last_n", "presence_penalty", "frequency_penalty"]:
        _set("penalties", key, key)

    _set("mirostat", "enabled", "mirostat")
    _set("mirostat", "tau", "mirostat_tau")
    _set("mirostat", "eta", "mirostat_eta")

    _set("anchors", "interval", "anchor_interval")
    _set("anchors", "text", "anchor_text")
    if args_dict.get("disable_anchors"):
        cfg.setdefault("anchors", {})["enabled"] = False

    if args_dict.get("disable_loop_guard"):
        cfg.setdefault("loop_guard", {})["enabled"] = False
    _set("loop_guard", "window", "loop_guard_window")
    _set("loop_guard", "ngram", "loop_guard_ngram")
    _set("loop_guard", "repeats", "loop_guard_repeats")
    _set("loop_guard", "mode", "loop_guard_mode")

    return cfg
