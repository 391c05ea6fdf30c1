import re
from dataclasses import dataclass

from .config import (
    AFFIRMATIVE_PHRASES,
    NEGATIVE_PHRASES,
    CORRECTION_PATTERNS,
    UNDO_PHRASES,
    TRAINING_EXIT_PHRASES,
    TRAINING_DONE_PHRASES,
    TRAINING_TRIGGER_PHRASES,
)
from .models import normalize


REPLY_AFFIRMATIVE = "AFFIRMATIVE"
REPLY_NEGATIVE = "NEGATIVE"
REPLY_NEGATIVE_WITH_CONTENT = "NEGATIVE_WITH_CONTENT"
REPLY_NEITHER = "NEITHER"


@dataclass(frozen=True)
class Reply:
    kind: str
    content: str | None = None

    @property
    def is_correction(self) -> bool:
        return self.kind in (REPLY_NEGATIVE, REPLY_NEGATIVE_WITH_CONTENT)


class ReplyClassifier:
    """Table-driven yes/no/correction classifier.

    The tables are plain sets and regex strings so callers can extend them
    without touching the state machines that consume the result.
    """

    def __init__(
        self,
        affirmative: set[str] | None = None,
        negative: set[str] | None = None,
        correction_patterns: list[str] | None = None,
        undo: set[str] | None = None,
    ):
        self.affirmative = {normalize(p) for p in (affirmative or AFFIRMATIVE_PHRASES)}
        self.negative = {normalize(p) for p in (negative or NEGATIVE_PHRASES)}
        self.undo = {normalize(p) for p in (undo or UNDO_PHRASES)}
        self.correction_patterns = [
            re.compile(p, re.IGNORECASE) for p in (correction_patterns or CORRECTION_PATTERNS)
        ]

    def classify(self, text: str) -> Reply:
        raw = " ".join((text or "").strip().lower().split())
        if not raw:
            return Reply(REPLY_NEITHER)

        # Content patterns first: "no, I meant X" must not read as a bare "no".
        for pattern in self.correction_patterns:
            m = pattern.match(raw)
            if m:
                content = m.group(1).strip().strip(".!?,").strip()
                if content:
                    return Reply(REPLY_NEGATIVE_WITH_CONTENT, content)

        t = normalize(raw)
        if t in self.negative:
            return Reply(REPLY_NEGATIVE)
        if t in self.affirmative:
            return Reply(REPLY_AFFIRMATIVE)
        return Reply(REPLY_NEITHER)

    def is_affirmative(self, text: str) -> bool:
        return normalize(text) in self.affirmative

    def is_negative(self, text: str) -> bool:
        return normalize(text) in self.negative

    def is_undo(self, text: str) -> bool:
        return normalize(text) in self.undo

    def looks_like_correction(self, text: str) -> bool:
        return self.classify(text).is_correction


def is_training_exit(text: str) -> bool:
    return normalize(text) in {normalize(p) for p in TRAINING_EXIT_PHRASES}


def is_training_done(text: str) -> bool:
    return normalize(text) in {normalize(p) for p in TRAINING_DONE_PHRASES}


def is_training_trigger(text: str) -> bool:
    return normalize(text) in {normalize(p) for p in TRAINING_TRIGGER_PHRASES}
