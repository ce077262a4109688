# main.py
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict

from core.errors import ConfigurationError
from core.models import SessionResult
from core.session import GenerationSession
from core.session_config import SessionConfig
from engine.hf_engine import ModelHandle
from utils.helpers import add_generation_cli_args, load_config, merge_configs
from utils.model_helpers import resolve_model
from utils.output_helpers import OutputTarget
from utils.prompt_helpers import ChatTemplateFormatter, build_prompt, read_prompt_file

# Base logging config - this is just an initial setup, will be fully configured in main_cli
logging.basicConfig(
    level=logging.CRITICAL,
    format="%(asctime)s [%(levelname)-5.5s] [%(name)-20.20s]: %(message)s",
)

NOISY_LIBRARIES = ["transformers", "huggingface_hub", "urllib3", "requests", "filelock", "torch", "nltk"]

DIAGNOSTIC_BANNERS = {
    "context_exhausted": "WARNING: Context window exhausted!",
    "loop_detected": "FATAL: Generation fell into a loop.",
    "engine_failure": "FATAL: Inference engine failure.",
}


def _configure_logging(level_name: str) -> logging.Logger:
    level = getattr(logging, level_name.upper(), logging.INFO)

    app_logger = logging.getLogger()
    # Clear existing handlers from the root logger to prevent duplicate outputs
    for handler in app_logger.handlers[:]:
        app_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)-5.5s] [%(name)-20.20s]: %(message)s")
    )
    app_logger.addHandler(stream_handler)
    app_logger.setLevel(level)

    if level > logging.DEBUG:
        for lib_logger_name in NOISY_LIBRARIES:
            logging.getLogger(lib_logger_name).setLevel(logging.WARNING)
    return app_logger


def _print_metadata(cfg: Dict[str, Any], session_cfg: SessionConfig, session: GenerationSession,
                    system_prompt: str) -> None:
    print("=== Out of Context ===")
    print("An LLM that generates until context exhaustion\n")
    print("=== System Prompt ===")
    print(system_prompt.strip())
    print(f"\nModel: {cfg.get('model')}")
    print(f"Context capacity: {session_cfg.capacity} (cut-off at {session.budget.threshold})")
    print(f"Strategy: {session.strategy.name}, seed: {session.seed}")
    print("=== Beginning Generation ===\n")


def _report(result: SessionResult, quiet: bool) -> None:
    if result.is_fatal:
        print("\n", file=sys.stderr)
        print(DIAGNOSTIC_BANNERS.get(result.terminal_state.value, "FATAL"), file=sys.stderr)
        print(result.message, file=sys.stderr)
    elif not quiet:
        print(f"\n\n--- {result.terminal_state.value}: {result.generated_tokens} tokens generated, "
              f"{result.positions_used}/{result.capacity} positions used (seed {result.seed}) ---")


def main_cli(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Out of Context: stream tokens from a local LLM until the context window runs out.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to base YAML config.")
    add_generation_cli_args(parser)
    args = parser.parse_args(argv)

    cfg = merge_configs(load_config(str(args.config)), args)
    app_logger = _configure_logging(str(cfg.get("logging_level", "INFO")))
    quiet = bool(cfg.get("quiet"))

    try:
        session_cfg = SessionConfig.from_dict(cfg)
        system_prompt = read_prompt_file(cfg.get("prompt_file", "prompt.txt"))
    except (ConfigurationError, FileNotFoundError) as e:
        app_logger.critical(str(e))
        return 2

    try:
        model_ref = resolve_model(str(cfg["model"]), cfg.get("model_dir", "models"), show_progress=not quiet)
        handle = ModelHandle.load(model_ref, threads=cfg.get("threads"))
    except Exception as e:
        app_logger.critical(f"Could not prepare model: {e}", exc_info=app_logger.isEnabledFor(logging.DEBUG))
        return 1

    if cfg.get("use_chat_template"):
        try:
            prompt = ChatTemplateFormatter(handle.tokenizer.hf_tokenizer, system_prompt) \
                .build_prompt(cfg.get("user_prompt"))
        except ValueError as e:
            app_logger.warning(f"Chat template unavailable ({e}); using the plain prompt.")
            prompt = build_prompt(system_prompt, cfg.get("user_prompt"))
    else:
        prompt = build_prompt(system_prompt, cfg.get("user_prompt"))

    try:
        session = GenerationSession(
            engine=handle.create_engine(session_cfg.capacity),
            tokenizer=handle.tokenizer,
            config=session_cfg,
        )
    except ConfigurationError as e:
        app_logger.critical(str(e))
        return 2

    if not quiet:
        _print_metadata(cfg, session_cfg, session, system_prompt)

    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: session.request_stop())
    try:
        with OutputTarget.autodetect(cfg.get("output_file")) as output:
            result = session.run(prompt, sink=output)
    except ConfigurationError as e:
        app_logger.critical(str(e))
        return 2
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    _report(result, quiet)
    return result.exit_code


def main() -> None:
    sys.exit(main_cli())


if __name__ == "__main__":
    main()
