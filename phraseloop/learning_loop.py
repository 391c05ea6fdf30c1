"""Confidence learning from implicit and explicit feedback.

After an executed action the loop watches the next few seconds. Silence is
taken as approval, an undo or a correction as disapproval. Mid-confidence
matches go through a spoken yes/no round trip instead. Every confidence
change goes through PhraseDictionary.adjust_confidence.
"""

import time
from dataclasses import dataclass, field

from .config import Adjustments, Thresholds, Timings, VOICE_RESPONSES
from .context_window import ContextWindow, FEEDBACK_NEGATIVE, FEEDBACK_POSITIVE
from .dictionary import PhraseDictionary
from .events import EventBus
from .logui import debug, info
from .models import Command, SOURCE_CONFIRMED, SOURCE_LEARNED, parse_iso
from .policy import DECISION_CONFIRM, DECISION_EXECUTE, decide
from .replies import (
    REPLY_AFFIRMATIVE,
    REPLY_NEGATIVE,
    REPLY_NEGATIVE_WITH_CONTENT,
    ReplyClassifier,
)
from .scheduler import TaskScheduler, TimerToken

TAG = "LearningLoop"
COMPONENT = "learning"

STATE_IDLE = "idle"
STATE_OBSERVING = "observing"
STATE_AWAITING_CONFIRMATION = "awaiting_confirmation"
STATE_AWAITING_CORRECTION = "awaiting_correction"

DAY = 24 * 3600


@dataclass
class Pending:
    phrase: str
    action: str
    confidence: float = 0.0
    tier: int | None = None
    command_id: str | None = None
    matched_phrase: str | None = None
    description: str | None = None
    params: dict = field(default_factory=dict)


class LearningLoop:
    def __init__(
        self,
        dictionary: PhraseDictionary,
        context_window: ContextWindow,
        bus: EventBus,
        scheduler: TaskScheduler,
        replies: ReplyClassifier | None = None,
        thresholds: Thresholds | None = None,
        adjustments: Adjustments | None = None,
        timings: Timings | None = None,
    ):
        self.dictionary = dictionary
        self.context_window = context_window
        self.bus = bus
        self.scheduler = scheduler
        self.replies = replies or ReplyClassifier()
        self.thresholds = thresholds or Thresholds()
        self.adjustments = adjustments or Adjustments()
        self.timings = timings or Timings()

        self.state = STATE_IDLE
        self.generation = 0
        self.pending: Pending | None = None
        self._timer: TimerToken | None = None

    # -- state --------------------------------------------------------------

    def _set_state(self, new_state: str):
        old = self.state
        self.generation += 1
        self._cancel_timer()
        self.state = new_state
        if new_state == STATE_IDLE:
            self.pending = None
        if old != new_state:
            debug(f"{old} -> {new_state}", tag=TAG)
            self.bus.state_changed(COMPONENT, new_state, old)

    def _cancel_timer(self):
        if self._timer is not None:
            self.scheduler.cancel(self._timer)
            self._timer = None

    def _start_timer(self, seconds: float, callback, name: str):
        generation = self.generation

        def fire():
            if generation != self.generation:
                debug(f"Stale {name} timer dropped", tag=TAG)
                return
            self._timer = None
            callback()

        self._timer = self.scheduler.schedule(fire, seconds, name=name, owner=TAG, generation=generation)

    def reset(self):
        self._set_state(STATE_IDLE)

    @property
    def is_idle(self) -> bool:
        return self.state == STATE_IDLE

    @property
    def wants_reply(self) -> bool:
        return self.state in (STATE_AWAITING_CONFIRMATION, STATE_AWAITING_CORRECTION)

    # -- observation --------------------------------------------------------

    def observe_action(
        self,
        phrase: str,
        action: str,
        confidence: float,
        tier: int | None = None,
        command_id: str | None = None,
        matched_phrase: str | None = None,
    ):
        self.context_window.add_speech(phrase)
        self.context_window.add_action(action, confidence, tier)
        self._set_state(STATE_OBSERVING)
        self.pending = Pending(
            phrase=phrase,
            action=action,
            confidence=confidence,
            tier=tier,
            command_id=command_id,
            matched_phrase=matched_phrase,
        )
        self._start_timer(self.timings.observation, self._on_observation_elapsed, "observation")

    def _on_observation_elapsed(self):
        if self.state != STATE_OBSERVING or self.pending is None:
            return
        self.record_implicit_positive(self.pending)
        self._set_state(STATE_IDLE)

    def _target_command(self, pending: Pending) -> Command | None:
        # Context rules carry no confidence of their own.
        if pending.tier == 0:
            return None
        cmd = self.dictionary.get_command(pending.command_id)
        if cmd is not None and cmd.action == pending.action:
            return cmd
        owner = self.dictionary.command_for_phrase(pending.matched_phrase or pending.phrase)
        if owner is not None and owner.action == pending.action:
            return owner
        return self.dictionary.command_for_action(pending.action)

    def record_implicit_positive(self, pending: Pending):
        cmd = self._target_command(pending)
        if cmd is not None:
            conf = self.dictionary.adjust_confidence(cmd.id, self.adjustments.implicit_positive)
            self.dictionary.record_usage(cmd.id, persist=True)
            info(f'Implicit positive: "{pending.phrase}" -> {pending.action} (conf: {conf:.2f})', tag=TAG)
        self.context_window.add_feedback(FEEDBACK_POSITIVE, pending.action)

    def record_implicit_negative(self, pending: Pending):
        cmd = self._target_command(pending)
        if cmd is not None:
            conf = self.dictionary.adjust_confidence(
                cmd.id,
                self.adjustments.immediate_undo,
                floor=self.adjustments.confidence_floor,
            )
            info(f'Implicit negative: "{pending.phrase}" -> {pending.action} (conf: {conf:.2f})', tag=TAG)
            if cmd.source == SOURCE_LEARNED and conf is not None and conf < self.adjustments.remove_learned_below:
                phrase = pending.matched_phrase or pending.phrase
                if self.dictionary.command_for_phrase(phrase) is cmd and self.dictionary.forget(phrase):
                    info(f'Removed low-confidence learned phrase: "{phrase}"', tag=TAG)
        self.context_window.add_feedback(FEEDBACK_NEGATIVE, pending.action)

    # -- incoming speech ----------------------------------------------------

    def handle_speech(self, text: str) -> dict:
        if self.state == STATE_AWAITING_CONFIRMATION:
            return self._handle_confirmation_reply(text)
        if self.state == STATE_AWAITING_CORRECTION:
            return self._handle_correction_details(text)
        if self.state == STATE_OBSERVING:
            if self.replies.is_undo(text):
                self._handle_undo()
                return {"handled": True, "is_correction": True}
            reply = self.replies.classify(text)
            if reply.is_correction:
                return self._handle_correction(reply.content)
        return {"handled": False, "is_correction": False}

    def _handle_undo(self):
        pending = self.pending
        self._cancel_timer()
        if pending is not None:
            self.record_implicit_negative(pending)
            info(f'Immediate undo for: "{pending.phrase}" -> {pending.action}', tag=TAG)
        self._set_state(STATE_IDLE)

    def _handle_correction(self, intended: str | None) -> dict:
        pending = self.pending
        self._cancel_timer()
        if pending is None:
            self._set_state(STATE_IDLE)
            return {"handled": False, "is_correction": True}

        self.record_implicit_negative(pending)
        if intended:
            self._record_correction(pending, intended)
            return {"handled": True, "is_correction": True, "intended": intended}

        self._ask_what_they_meant(pending)
        return {"handled": True, "is_correction": True}

    def _ask_what_they_meant(self, pending: Pending):
        self._set_state(STATE_AWAITING_CORRECTION)
        self.pending = pending
        self.bus.speak(VOICE_RESPONSES["what_did_you_mean"])
        self._start_timer(self.timings.correction, self._on_correction_timeout, "correction")

    def _on_correction_timeout(self):
        if self.state == STATE_AWAITING_CORRECTION:
            debug("Correction timeout", tag=TAG)
            self._set_state(STATE_IDLE)

    def _record_correction(self, pending: Pending, intended: str):
        self.context_window.add_correction(pending.phrase, pending.action, intended)
        info(f'Correction: "{pending.phrase}" was {pending.action}, user meant "{intended}"', tag=TAG)
        self.bus.correction(pending.phrase, pending.action, intended)
        self.bus.speak(VOICE_RESPONSES["remember"])
        self._set_state(STATE_IDLE)

    def _handle_correction_details(self, text: str) -> dict:
        pending = self.pending
        if pending is None:
            self._set_state(STATE_IDLE)
            return {"handled": False, "is_correction": False}
        reply = self.replies.classify(text)
        intended = reply.content if reply.kind == REPLY_NEGATIVE_WITH_CONTENT else text.strip()
        self._record_correction(pending, intended)
        return {"handled": True, "is_correction": True, "intended": intended}

    # -- confirmation dialogue ----------------------------------------------

    def ask_for_confirmation(
        self,
        phrase: str,
        action: str,
        confidence: float,
        description: str | None = None,
        params: dict | None = None,
    ):
        self._set_state(STATE_AWAITING_CONFIRMATION)
        self.pending = Pending(
            phrase=phrase,
            action=action,
            confidence=confidence,
            description=description,
            params=dict(params or {}),
        )
        label = description or action.replace("_", " ")
        self.bus.speak(f"Did you mean {label}?")
        self._start_timer(self.timings.confirmation, self._on_confirmation_timeout, "confirmation")

    def _on_confirmation_timeout(self):
        if self.state == STATE_AWAITING_CONFIRMATION:
            info("Confirmation timeout", tag=TAG)
            self._set_state(STATE_IDLE)

    def _handle_confirmation_reply(self, text: str) -> dict:
        pending = self.pending
        if pending is None:
            self._set_state(STATE_IDLE)
            return {"handled": False, "is_correction": False}
        self._cancel_timer()

        reply = self.replies.classify(text)
        if reply.kind == REPLY_AFFIRMATIVE:
            self.bus.execute(pending.action, pending.params)
            self.dictionary.learn(pending.phrase, pending.action, SOURCE_CONFIRMED)
            cmd = self.dictionary.command_for_phrase(pending.phrase) or self.dictionary.command_for_action(pending.action)
            if cmd is not None:
                self.dictionary.adjust_confidence(cmd.id, self.adjustments.explicit_positive)
            self.context_window.add_confirmation(pending.action, True)
            self.bus.speak(VOICE_RESPONSES["got_it"])
            self._set_state(STATE_IDLE)
            return {"handled": True, "is_correction": False, "executed": pending.action}

        if reply.kind == REPLY_NEGATIVE:
            self.context_window.add_confirmation(pending.action, False)
            cmd = self.dictionary.command_for_action(pending.action)
            if cmd is not None:
                self.dictionary.adjust_confidence(
                    cmd.id,
                    self.adjustments.explicit_negative,
                    floor=self.adjustments.confidence_floor,
                )
            self._ask_what_they_meant(pending)
            return {"handled": True, "is_correction": True}

        # Anything else is taken as what they meant instead.
        self.context_window.add_confirmation(pending.action, False)
        intended = reply.content if reply.kind == REPLY_NEGATIVE_WITH_CONTENT else text.strip()
        self._record_correction(pending, intended)
        return {"handled": True, "is_correction": True, "intended": intended}

    # -- maintenance --------------------------------------------------------

    def decay_unused(self, now: float | None = None) -> dict:
        now = time.time() if now is None else now
        cutoff = now - self.adjustments.unused_days * DAY
        decayed, removed = 0, 0
        for cmd in self.dictionary.get_all_commands():
            if cmd.source != SOURCE_LEARNED:
                continue
            last = parse_iso(cmd.last_used) or parse_iso(cmd.created_at)
            if last is None or last > cutoff:
                continue
            conf = self.dictionary.adjust_confidence(cmd.id, self.adjustments.unused_decay)
            decayed += 1
            if conf is not None and conf < self.adjustments.confidence_floor:
                self.dictionary.remove_command(cmd.id)
                removed += 1
                info(f"Removed unused learned command {cmd.action} ({conf:.2f})", tag=TAG)
        self.dictionary.mark_cleanup()
        if decayed:
            info(f"Decay: {decayed} decayed, {removed} removed", tag=TAG)
        return {"decayed": decayed, "removed": removed}

    # -- predicates ---------------------------------------------------------

    def should_execute_immediately(self, confidence: float) -> bool:
        return decide(confidence, self.thresholds) == DECISION_EXECUTE

    def should_ask_confirmation(self, confidence: float) -> bool:
        return decide(confidence, self.thresholds) == DECISION_CONFIRM

    def looks_like_correction(self, text: str) -> bool:
        return self.replies.looks_like_correction(text)

    def is_affirmative(self, text: str) -> bool:
        return self.replies.is_affirmative(text)

    def is_negative(self, text: str) -> bool:
        return self.replies.is_negative(text)

    def get_stats(self) -> dict:
        return {
            "state": self.state,
            "generation": self.generation,
            "pending_action": self.pending.action if self.pending else None,
            "context": self.context_window.stats(),
        }
