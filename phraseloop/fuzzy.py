from dataclasses import dataclass

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein


@dataclass(frozen=True)
class FuzzyEntry:
    phrase: str
    action: str
    command_id: str


@dataclass(frozen=True)
class FuzzyHit:
    entry: FuzzyEntry
    score: float


class FuzzyIndex:
    """Read-only approximate index over normalized phrases.

    Scores are normalized Levenshtein distances: 0.0 is identical, 1.0 shares
    nothing. The index is built once and never edited; the dictionary builds
    a new one after every mutation.
    """

    def __init__(self, entries: list[FuzzyEntry] | None = None):
        self._entries = tuple(entries or ())
        self._choices = [e.phrase for e in self._entries]

    def __len__(self):
        return len(self._entries)

    @property
    def entries(self) -> tuple[FuzzyEntry, ...]:
        return self._entries

    def search(self, normalized: str, max_score: float = 0.3) -> FuzzyHit | None:
        """Best entry strictly below max_score, or None."""
        if not self._entries or not normalized:
            return None
        best = process.extractOne(
            normalized,
            self._choices,
            scorer=Levenshtein.normalized_distance,
            score_cutoff=max_score,
        )
        if best is None:
            return None
        _, score, idx = best
        score = float(score)
        if score >= max_score:
            return None
        return FuzzyHit(entry=self._entries[idx], score=score)

    def top(self, normalized: str, limit: int = 3) -> list[FuzzyHit]:
        if not self._entries or not normalized:
            return []
        hits = process.extract(
            normalized,
            self._choices,
            scorer=Levenshtein.normalized_distance,
            limit=limit,
        )
        return [FuzzyHit(entry=self._entries[idx], score=float(score)) for _, score, idx in hits]
