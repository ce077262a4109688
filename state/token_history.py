import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional

from core.models import HistoryEntry, TokenSource

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
#  TokenHistory                                                               #
# --------------------------------------------------------------------------- #
class TokenHistory:
    """
    Append-only record of every token that occupies a slot in the engine's
    context, in evaluation order.

    Positions are handed out here and nowhere else: an entry's position is
    always the number of entries that came before it, so the sequence stays
    contiguous no matter who appends (prompt ingest, sampler, anchors).

    Key bookkeeping
    ---------------
    • `cached_upto`:      entries [0, cached_upto) have been fed to the engine
    • `_generated_idx`:   history indices of `generated` entries, in order
    """

    # ....................................................................... #
    #  Construction                                                           #
    # ....................................................................... #
    def __init__(self) -> None:
        self.entries: List[HistoryEntry] = []
        self.cached_upto: int = 0

        self._generated_idx: List[int] = []
        self._source_counts: Dict[TokenSource, int] = Counter()

    # ....................................................................... #
    #  Appending                                                              #
    # ....................................................................... #
    def append(self, token: int, source: TokenSource, text: str = "") -> HistoryEntry:
        entry = HistoryEntry(
            token=int(token),
            position=len(self.entries),
            source=source,
            text=text,
        )
        self.entries.append(entry)
        self._source_counts[source] += 1

        if source is TokenSource.GENERATED:
            self._generated_idx.append(entry.position)
        return entry

    def extend(self, tokens: Iterable[int], source: TokenSource,
               texts: Optional[Iterable[str]] = None) -> List[HistoryEntry]:
        tokens = list(tokens)
        texts = list(texts) if texts is not None else [""] * len(tokens)
        if len(texts) != len(tokens):
            raise ValueError("extend: tokens and texts differ in length")
        return [self.append(t, source, s) for t, s in zip(tokens, texts)]

    # ....................................................................... #
    #  Engine cache alignment                                                 #
    # ....................................................................... #
    def pending(self) -> List[HistoryEntry]:
        """Entries the engine has not evaluated yet (contiguous suffix)."""
        return self.entries[self.cached_upto:]

    def mark_cached(self) -> None:
        self.cached_upto = len(self.entries)

    # ....................................................................... #
    #  Views                                                                  #
    # ....................................................................... #
    @property
    def next_position(self) -> int:
        return len(self.entries)

    def tokens(self) -> List[int]:
        return [e.token for e in self.entries]

    def generated_window(self, last_n: int) -> List[int]:
        """Token ids of the trailing `last_n` *generated* entries only."""
        idx = self._generated_idx[-last_n:] if last_n > 0 else []
        return [self.entries[i].token for i in idx]

    def generated_text_for(self, tokens_from_end: int) -> str:
        """Decoded text of the trailing generated entries (for diagnostics)."""
        idx = self._generated_idx[-tokens_from_end:] if tokens_from_end > 0 else []
        return "".join(self.entries[i].text for i in idx)

    def count(self, source: TokenSource) -> int:
        return self._source_counts[source]

    def get_generated_length(self) -> int:
        return len(self._generated_idx)
