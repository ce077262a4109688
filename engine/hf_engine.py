# engine/hf_engine.py
"""
transformers-backed engine
==========================

``ModelHandle`` is the long-lived resource (weights + tokenizer).  Each
generation session gets its own ``TransformersEngine`` from
``ModelHandle.create_engine``; the engine holds the KV cache and only
*references* the model, so many short sessions can share one load.
"""
import logging
from pathlib import Path
from typing import List, Optional, Union

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, DynamicCache

from core.errors import EngineFailure
from .base_engine import BaseInferenceEngine, BaseTokenizer

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
#  Tokenizer                                                                  #
# --------------------------------------------------------------------------- #
class TransformersTokenizer(BaseTokenizer):
    """
    Wraps a Hugging Face tokenizer.  `decode_token` is incremental: a token
    that ends in the middle of a UTF-8 sequence is held back until the
    sequence completes, so streamed output never shows U+FFFD halves.
    """

    _MAX_HELD = 4

    def __init__(self, hf_tokenizer) -> None:
        self._tok = hf_tokenizer
        self._held: List[int] = []

    @property
    def hf_tokenizer(self):
        return self._tok

    def encode(self, text: str, add_bos: bool = False) -> List[int]:
        ids = self._tok.encode(text, add_special_tokens=False)
        bos = self._tok.bos_token_id
        if add_bos and bos is not None and (not ids or ids[0] != bos):
            ids = [bos] + ids
        return ids

    def decode(self, tokens: List[int]) -> str:
        return self._tok.decode(tokens, skip_special_tokens=True,
                                clean_up_tokenization_spaces=False)

    def decode_token(self, token: int) -> str:
        self._held.append(int(token))
        text = self.decode(self._held)
        if text.endswith("�") and len(self._held) < self._MAX_HELD:
            return ""

        # sentencepiece drops the word-boundary marker on a lone piece
        first_piece = self._tok.convert_ids_to_tokens(self._held[0])
        if isinstance(first_piece, str) and first_piece.startswith("▁") and not text.startswith(" "):
            text = " " + text
        self._held = []
        return text

    def flush(self) -> str:
        if not self._held:
            return ""
        text = self.decode(self._held)
        self._held = []
        return text


# --------------------------------------------------------------------------- #
#  Engine (one per session)                                                   #
# --------------------------------------------------------------------------- #
class TransformersEngine(BaseInferenceEngine):
    def __init__(self, handle: "ModelHandle", capacity: int) -> None:
        super().__init__()
        self._handle = handle
        self.capacity = capacity
        self._cache: Optional[DynamicCache] = None

    @property
    def vocab_size(self) -> int:
        return self._handle.vocab_size

    def _forward(self, tokens: List[int], start_position: int) -> torch.Tensor:
        end = start_position + len(tokens)
        if end > self.capacity:
            raise EngineFailure(
                f"evaluate would write position {end - 1} past capacity {self.capacity}",
                end - 1,
            )

        if self._cache is None:
            self._cache = DynamicCache()

        input_ids = torch.tensor([tokens], dtype=torch.long, device=self._handle.device)
        position_ids = torch.arange(start_position, end, dtype=torch.long,
                                    device=self._handle.device).unsqueeze(0)
        try:
            with torch.inference_mode():
                out = self._handle.model(
                    input_ids=input_ids,
                    position_ids=position_ids,
                    past_key_values=self._cache,
                    use_cache=True,
                )
        except Exception as e:
            raise EngineFailure(f"forward pass failed at positions {start_position}..{end - 1}: {e}",
                                start_position) from e

        self._cache = out.past_key_values
        return out.logits[0, -1].float().cpu()

    def reset(self) -> None:
        super().reset()
        self._cache = None


# --------------------------------------------------------------------------- #
#  Model resource (outlives sessions)                                         #
# --------------------------------------------------------------------------- #
class ModelHandle:
    def __init__(self, model, hf_tokenizer, device: str = "cpu") -> None:
        self.model = model
        self.tokenizer = TransformersTokenizer(hf_tokenizer)
        self.device = device

    @classmethod
    def load(cls, model_ref: Union[str, Path], threads: Optional[int] = None,
             device: str = "cpu") -> "ModelHandle":
        """
        Load weights and tokenizer from a local directory, a hub id, or a
        single local GGUF file.
        """
        if threads:
            torch.set_num_threads(int(threads))

        ref = Path(model_ref)
        load_kwargs = {}
        if ref.is_file() and ref.suffix == ".gguf":
            source = str(ref.parent)
            load_kwargs["gguf_file"] = ref.name
        else:
            source = str(model_ref)

        logger.info(f"Loading model from: {model_ref}")
        try:
            hf_tokenizer = AutoTokenizer.from_pretrained(source, **load_kwargs)
            model = AutoModelForCausalLM.from_pretrained(source, **load_kwargs)
        except Exception as e:
            raise EngineFailure(f"failed to load model '{model_ref}': {e}") from e

        model.to(device)
        model.eval()
        logger.info(
            f"Model loaded: {model.config.model_type}, vocab={model.config.vocab_size}, "
            f"threads={torch.get_num_threads()}"
        )
        return cls(model, hf_tokenizer, device=device)

    @property
    def vocab_size(self) -> int:
        return int(self.model.config.vocab_size)

    @property
    def max_positions(self) -> Optional[int]:
        return getattr(self.model.config, "max_position_embeddings", None)

    def create_engine(self, capacity: int) -> TransformersEngine:
        limit = self.max_positions
        if limit is not None and capacity > limit:
            logger.warning(
                f"Requested context {capacity} exceeds the model's trained window ({limit}); "
                f"quality will degrade past position {limit}."
            )
        logger.info(f"Creating engine context with {capacity} positions.")
        return TransformersEngine(self, capacity)
