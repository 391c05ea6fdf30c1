import time
from collections import deque
from dataclasses import dataclass
from typing import Callable


KIND_SPEECH = "speech"
KIND_ACTION = "action"
KIND_FEEDBACK = "feedback"
KIND_CONFIRMATION = "confirmation"
KIND_CORRECTION = "correction"

FEEDBACK_POSITIVE = "positive"
FEEDBACK_NEGATIVE = "negative"


@dataclass(frozen=True)
class SpeechEntry:
    text: str
    timestamp: float
    kind: str = KIND_SPEECH


@dataclass(frozen=True)
class ActionEntry:
    action: str
    confidence: float
    tier: int | None
    timestamp: float
    kind: str = KIND_ACTION


@dataclass(frozen=True)
class FeedbackEntry:
    feedback_type: str
    action: str | None
    timestamp: float
    kind: str = KIND_FEEDBACK


@dataclass(frozen=True)
class ConfirmationEntry:
    action: str
    confirmed: bool
    timestamp: float
    kind: str = KIND_CONFIRMATION

    @property
    def feedback_type(self) -> str:
        return FEEDBACK_POSITIVE if self.confirmed else FEEDBACK_NEGATIVE


@dataclass(frozen=True)
class CorrectionEntry:
    original_phrase: str
    action: str | None
    intended: str
    timestamp: float
    kind: str = KIND_CORRECTION


ContextEntry = SpeechEntry | ActionEntry | FeedbackEntry | ConfirmationEntry | CorrectionEntry


class ContextWindow:
    def __init__(self, window_size: int = 10, clock: Callable[[], float] | None = None):
        self.window_size = max(1, int(window_size))
        self.clock = clock or time.time
        self._entries: deque = deque(maxlen=self.window_size)

    def __len__(self):
        return len(self._entries)

    def add(self, entry: ContextEntry):
        self._entries.append(entry)

    def add_speech(self, text: str):
        self.add(SpeechEntry(text=text, timestamp=self.clock()))

    def add_action(self, action: str, confidence: float, tier: int | None = None):
        self.add(ActionEntry(action=action, confidence=float(confidence), tier=tier, timestamp=self.clock()))

    def add_feedback(self, feedback_type: str, action: str | None = None):
        self.add(FeedbackEntry(feedback_type=feedback_type, action=action, timestamp=self.clock()))

    def add_confirmation(self, action: str, confirmed: bool):
        self.add(ConfirmationEntry(action=action, confirmed=bool(confirmed), timestamp=self.clock()))

    def add_correction(self, original_phrase: str, wrong_action: str | None, intended: str):
        self.add(
            CorrectionEntry(
                original_phrase=original_phrase,
                action=wrong_action,
                intended=intended,
                timestamp=self.clock(),
            )
        )

    def last_of(self, kind: str) -> ContextEntry | None:
        for entry in reversed(self._entries):
            if entry.kind == kind:
                return entry
        return None

    def last_action(self) -> ActionEntry | None:
        return self.last_of(KIND_ACTION)

    def last_speech(self) -> SpeechEntry | None:
        return self.last_of(KIND_SPEECH)

    def recent(self, seconds: float = 5.0) -> list[ContextEntry]:
        cutoff = self.clock() - seconds
        return [e for e in self._entries if e.timestamp > cutoff]

    def recent_actions(self, limit: int = 5) -> list[str]:
        actions = [e.action for e in self._entries if e.kind == KIND_ACTION]
        return actions[-limit:] if limit > 0 else []

    def has_recent_action(self, seconds: float = 5.0) -> bool:
        return any(e.kind == KIND_ACTION for e in self.recent(seconds))

    def has_recent_negative_feedback(self, seconds: float = 3.0) -> bool:
        return any(
            e.kind in (KIND_FEEDBACK, KIND_CONFIRMATION) and e.feedback_type == FEEDBACK_NEGATIVE
            for e in self.recent(seconds)
        )

    def speech_before_last_action(self) -> str | None:
        found_action = False
        for entry in reversed(self._entries):
            if entry.kind == KIND_ACTION:
                found_action = True
                continue
            if found_action and entry.kind == KIND_SPEECH:
                return entry.text
        return None

    def all(self) -> list[ContextEntry]:
        return list(self._entries)

    def clear(self):
        self._entries.clear()

    def stats(self) -> dict:
        entries = list(self._entries)
        actions = sum(1 for e in entries if e.kind == KIND_ACTION)
        corrections = sum(1 for e in entries if e.kind == KIND_CORRECTION)
        negative = sum(
            1
            for e in entries
            if e.kind in (KIND_FEEDBACK, KIND_CONFIRMATION) and e.feedback_type == FEEDBACK_NEGATIVE
        )
        return {
            "total_entries": len(entries),
            "actions": actions,
            "corrections": corrections,
            "negative_feedback": negative,
            "error_rate": round(corrections / actions, 2) if actions else 0.0,
        }
