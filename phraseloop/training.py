"""Conversational training mode.

A session starts with "computer learn" and walks through
listening -> collecting -> confirming -> saving. Every step is snapshotted to
a draft file so an interrupted session can be offered back on next start.
"""

import re
from dataclasses import dataclass, field, asdict

from .config import (
    CORE_ACTIONS,
    TRAINING_CONFIRM_NO,
    Timings,
    VOICE_RESPONSES,
    WORKFLOW_KEYWORDS,
)
from .dictionary import PhraseDictionary
from .drafts import DraftStore
from .events import EventBus
from .logui import debug, info, warn
from .models import ContextRule, SOURCE_TRAINED, WorkflowStep, new_id, normalize, now_iso
from .replies import REPLY_AFFIRMATIVE, REPLY_NEGATIVE, ReplyClassifier, is_training_done, is_training_exit
from .scheduler import TaskScheduler, TimerToken

TAG = "Training"
COMPONENT = "training"

STATE_IDLE = "idle"
STATE_RESUME_OFFERED = "resume_offered"
STATE_LISTENING = "listening"
STATE_COLLECTING_VARIATIONS = "collecting_variations"
STATE_COLLECTING_STEPS = "collecting_steps"
STATE_CONFIRMING = "confirming"
STATE_SAVING = "saving"

RESUMABLE_STATES = (STATE_LISTENING, STATE_COLLECTING_VARIATIONS, STATE_COLLECTING_STEPS, STATE_CONFIRMING)

TYPE_SIMPLE_COMMAND = "simple_command"
TYPE_WORKFLOW = "workflow"
TYPE_CONTEXT_RULE = "context_rule"

CUE_ENTER = "enter_training"
CUE_UNDERSTOOD = "understood"
CUE_CLARIFY = "need_clarification"
CUE_ADDED = "added_variation"
CUE_CONFIRMING = "confirming"
CUE_SAVED = "saved"
CUE_CANCELLED = "cancelled"
CUE_EXIT = "exit_training"
CUE_WARNING = "timeout_warning"

# Double quotes, curly quotes, or single quotes that are not apostrophes.
QUOTED_RE = re.compile(r"\"([^\"]+)\"|“([^”]+)”|(?<!\w)'([^']+)'(?!\w)")
DESCRIPTION_RE = re.compile(r"^\s*,\s*(.+)$")
CONTEXT_RE = re.compile(r"\bin\s+([a-z0-9][a-z0-9_.-]*)", re.IGNORECASE)
ALSO_RE = re.compile(r"^also\s+", re.IGNORECASE)
IF_RE = re.compile(r"(^|\s)if\s", re.IGNORECASE)


def find_quoted(text: str):
    m = QUOTED_RE.search(text or "")
    if not m:
        return None
    phrase = next(g for g in m.groups() if g is not None).strip()
    return (phrase, m.start(), m.end()) if phrase else None


def map_action(description: str | None, known_actions, fallback: str = "") -> str:
    """Turn a spoken action description into an action name.

    Exact action name first, then the most specific known action whose words
    all appear in the description, then a custom slug.
    """
    slug = normalize(description).replace(" ", "_")
    known = sorted(a for a in set(known_actions) if a and a != "run_workflow")
    if slug in known:
        return slug
    words = set(normalize(description).split())
    best = None
    for action in known:
        parts = action.split("_")
        if words and all(p in words for p in parts):
            if best is None or len(parts) > len(best.split("_")):
                best = action
    if best:
        return best
    base = slug or normalize(fallback).replace(" ", "_") or "action"
    return f"custom_{base[:40]}"


@dataclass
class TrainingSession:
    id: str
    started_at: str
    type: str | None = None
    trigger_phrases: list[str] = field(default_factory=list)
    action_description: str | None = None
    action: str | None = None
    name: str | None = None
    steps: list[dict] = field(default_factory=list)
    context_match: dict | None = None
    history: list[dict] = field(default_factory=list)
    state: str = STATE_LISTENING

    @classmethod
    def new(cls) -> "TrainingSession":
        return cls(id=new_id("train"), started_at=now_iso())

    @property
    def has_content(self) -> bool:
        return bool(self.trigger_phrases or self.steps)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TrainingSession":
        return cls(
            id=str(data.get("id") or new_id("train")),
            started_at=data.get("started_at") or now_iso(),
            type=data.get("type"),
            trigger_phrases=[str(p) for p in (data.get("trigger_phrases") or [])],
            action_description=data.get("action_description"),
            action=data.get("action"),
            name=data.get("name"),
            steps=[dict(s) for s in (data.get("steps") or []) if isinstance(s, dict)],
            context_match=data.get("context_match"),
            history=[dict(h) for h in (data.get("history") or []) if isinstance(h, dict)],
            state=data.get("state") or STATE_LISTENING,
        )


class TrainingMode:
    def __init__(
        self,
        dictionary: PhraseDictionary,
        bus: EventBus,
        scheduler: TaskScheduler,
        drafts: DraftStore | None = None,
        replies: ReplyClassifier | None = None,
        timings: Timings | None = None,
    ):
        self.dictionary = dictionary
        self.bus = bus
        self.scheduler = scheduler
        self.drafts = drafts or DraftStore(None)
        self.replies = replies or ReplyClassifier()
        self.timings = timings or Timings()

        self.state = STATE_IDLE
        self.session: TrainingSession | None = None
        self.generation = 0
        self._timers: list[TimerToken] = []
        self.last_result: dict | None = None
        self._resume_state = STATE_LISTENING

    # -- state --------------------------------------------------------------

    def is_active(self) -> bool:
        return self.state != STATE_IDLE

    def _set_state(self, new_state: str):
        old = self.state
        self.state = new_state
        self.generation += 1
        if self.session is not None:
            self.session.state = new_state
        if old != new_state:
            debug(f"State: {old} -> {new_state}", tag=TAG)
            self.bus.state_changed(COMPONENT, new_state, old)

    def _say(self, text: str, cue: str | None = None):
        if self.session is not None:
            self._add_history("assistant", text)
        self.bus.speak(text, cue)

    def _add_history(self, role: str, content: str):
        if self.session is not None:
            self.session.history.append({"role": role, "content": content, "timestamp": now_iso()})

    def _snapshot(self):
        if self.session is not None:
            self.drafts.save(self.session.to_dict())

    # -- timers -------------------------------------------------------------

    def _clear_timeouts(self):
        for token in self._timers:
            self.scheduler.cancel(token)
        self._timers = []

    def _start_timeout(self, duration: float):
        self._clear_timeouts()
        generation = self.generation
        warn_before = self.timings.training_warning_before

        def warning():
            if generation == self.generation and self.is_active():
                self._say(VOICE_RESPONSES["timeout_warning"], CUE_WARNING)

        def expire():
            if generation != self.generation:
                debug("Stale training timeout dropped", tag=TAG)
                return
            self._on_timeout()

        if duration > warn_before:
            token = self.scheduler.schedule(warning, duration - warn_before, name="warning", owner=TAG, generation=generation)
            if token:
                self._timers.append(token)
        token = self.scheduler.schedule(expire, duration, name="timeout", owner=TAG, generation=generation)
        if token:
            self._timers.append(token)

    def _on_timeout(self):
        info(f"Timeout in {self.state}", tag=TAG)
        if self.state == STATE_CONFIRMING or self.state == STATE_RESUME_OFFERED:
            self.exit(save=False)
        elif self.session is not None and self.session.has_content:
            self._confirm()
        else:
            self.exit(save=False)

    # -- lifecycle ----------------------------------------------------------

    def enter(self) -> bool:
        if self.is_active():
            debug("Already in training mode", tag=TAG)
            return False
        self.session = TrainingSession.new()
        self.last_result = None
        self._set_state(STATE_LISTENING)
        self._say(VOICE_RESPONSES["enter_training"], CUE_ENTER)
        self._snapshot()
        self._start_timeout(self.timings.training_listening)
        return True

    def exit(self, save: bool = False) -> bool:
        if not self.is_active():
            return False
        self._clear_timeouts()
        if save and self.session is not None:
            self.last_result = self.save()
            self._say(self._saved_message(self.last_result), CUE_SAVED)
            self.bus.speak(VOICE_RESPONSES["exit_training"], CUE_EXIT)
        else:
            self.bus.speak(VOICE_RESPONSES["cancelled"], CUE_CANCELLED)
        self.drafts.clear()
        self.session = None
        self._set_state(STATE_IDLE)
        return True

    def _saved_message(self, result: dict) -> str:
        taken = result.get("rejected") or []
        if not taken:
            return VOICE_RESPONSES["saved"]
        quoted = ", ".join(f'"{p}"' for p in taken)
        return f"{VOICE_RESPONSES['saved']} {quoted} already had a meaning, so I skipped it."

    def check_for_draft(self) -> bool:
        if self.is_active():
            return False
        data = self.drafts.load()
        if not data:
            return False
        self.session = TrainingSession.from_dict(data)
        self._resume_state = self.session.state
        info(f"Found training draft {self.session.id}", tag=TAG)
        self._set_state(STATE_RESUME_OFFERED)
        self._say(VOICE_RESPONSES["resume_offer"], CUE_CONFIRMING)
        self._start_timeout(self.timings.training_confirming)
        return True

    def _handle_resume_reply(self, text: str):
        if self.replies.classify(text).kind == REPLY_AFFIRMATIVE:
            resume_state = self._resume_state if self._resume_state in RESUMABLE_STATES else STATE_LISTENING
            info(f"Resuming training session in {resume_state}", tag=TAG)
            if resume_state == STATE_CONFIRMING:
                self._confirm()
                return
            self._set_state(resume_state)
            self._say(self._resume_prompt(resume_state), CUE_UNDERSTOOD)
            self._snapshot()
            self._start_timeout(self._timeout_for(resume_state))
        else:
            self.exit(save=False)

    def _resume_prompt(self, state: str) -> str:
        if state == STATE_COLLECTING_STEPS:
            return f"Resuming with {len(self.session.steps)} steps. Next step?"
        if state == STATE_COLLECTING_VARIATIONS:
            return "Resuming. Any other ways to say this?"
        return VOICE_RESPONSES["enter_training"]

    def _timeout_for(self, state: str) -> float:
        if state == STATE_LISTENING:
            return self.timings.training_listening
        if state == STATE_CONFIRMING:
            return self.timings.training_confirming
        return self.timings.training_collecting

    # -- speech -------------------------------------------------------------

    def handle_speech(self, text: str) -> bool:
        if not self.is_active():
            return False
        self._clear_timeouts()
        self._add_history("user", text)

        if self.state == STATE_RESUME_OFFERED:
            self._handle_resume_reply(text)
        elif is_training_exit(text):
            self._handle_exit()
        elif self.state == STATE_LISTENING:
            self._handle_request(text)
        elif self.state == STATE_COLLECTING_VARIATIONS:
            self._handle_variation(text)
        elif self.state == STATE_COLLECTING_STEPS:
            self._handle_step(text)
        elif self.state == STATE_CONFIRMING:
            self._handle_confirmation(text)
        else:
            warn(f"Unexpected state: {self.state}", tag=TAG)
        return True

    def _handle_exit(self):
        if self.state == STATE_CONFIRMING or self.session is None or not self.session.has_content:
            self.exit(save=False)
        else:
            self._confirm()

    def _handle_request(self, text: str):
        quoted = find_quoted(text)
        if quoted is None:
            self._say(VOICE_RESPONSES["need_clarification"], CUE_CLARIFY)
            self._start_timeout(self.timings.training_listening)
            return

        phrase, start, end = quoted
        s = self.session
        s.trigger_phrases.append(phrase)
        desc = DESCRIPTION_RE.match(text[end:])
        s.action_description = desc.group(1).strip().rstrip(".!") if desc else None

        lowered = normalize(text)
        if any(re.search(rf"\b{re.escape(k)}\b", lowered) for k in WORKFLOW_KEYWORDS):
            s.type = TYPE_WORKFLOW
            s.name = phrase
            self._set_state(STATE_COLLECTING_STEPS)
            self._say(f'Okay, routine "{phrase}". What is the first step?', CUE_UNDERSTOOD)
        else:
            ctx = CONTEXT_RE.search(text[:start])
            if ctx:
                s.type = TYPE_CONTEXT_RULE
                s.context_match = {"app": ctx.group(1).lower()}
            else:
                s.type = TYPE_SIMPLE_COMMAND
            where = f" in {s.context_match['app']}" if s.context_match else ""
            will = s.action_description or "perform that action"
            self._set_state(STATE_COLLECTING_VARIATIONS)
            self._say(f'Got it. "{phrase}"{where} will {will}. Want to add other ways to say this?', CUE_UNDERSTOOD)
        self._snapshot()
        self._start_timeout(self.timings.training_collecting)

    def _handle_variation(self, text: str):
        if is_training_done(text):
            self._confirm()
            return
        quoted = find_quoted(text)
        phrase = quoted[0] if quoted else ALSO_RE.sub("", text.strip()).strip()
        if not normalize(phrase):
            self._say("Say another way to trigger it, or say done.", CUE_CLARIFY)
        elif normalize(phrase) in {normalize(p) for p in self.session.trigger_phrases}:
            self._say("I already have that one. Anything else?", CUE_ADDED)
        else:
            self.session.trigger_phrases.append(phrase)
            self._say("Added. Anything else?", CUE_ADDED)
            self._snapshot()
        self._start_timeout(self.timings.training_collecting)

    def _handle_step(self, text: str):
        if is_training_done(text):
            self._confirm()
            return
        description = text.strip()
        action = map_action(description, self._known_actions())
        self.session.steps.append(
            {
                "description": description,
                "conditional": bool(IF_RE.search(description)),
                "condition": description if IF_RE.search(description) else None,
                "action": None if action.startswith("custom_") else action,
            }
        )
        n = len(self.session.steps)
        self._say(f'Step {n}: {description}. Next step? Say "done" when finished.', CUE_UNDERSTOOD)
        self._snapshot()
        self._start_timeout(self.timings.training_collecting)

    def _confirm(self):
        self._clear_timeouts()
        s = self.session
        self._set_state(STATE_CONFIRMING)
        if s.type == TYPE_WORKFLOW:
            steps = ", ".join(f"{i + 1}. {st['description']}" for i, st in enumerate(s.steps))
            summary = f"Workflow with {len(s.steps)} steps: {steps}. Confirm to save?"
        else:
            phrases = " or ".join(f'"{p}"' for p in s.trigger_phrases)
            where = f" in {s.context_match['app']}" if s.context_match else ""
            summary = f"{phrases}{where} will {s.action_description or 'perform that action'}. {VOICE_RESPONSES['confirm_prompt']}"
        self._say(summary, CUE_CONFIRMING)
        self._snapshot()
        self._start_timeout(self.timings.training_confirming)

    def _handle_confirmation(self, text: str):
        reply = self.replies.classify(text)
        if reply.kind == REPLY_AFFIRMATIVE:
            self.exit(save=True)
        elif reply.kind == REPLY_NEGATIVE or normalize(text) in TRAINING_CONFIRM_NO:
            self.exit(save=False)
        else:
            self._say(VOICE_RESPONSES["confirm_prompt"], CUE_CLARIFY)
            self._start_timeout(self.timings.training_confirming)

    # -- saving -------------------------------------------------------------

    def _known_actions(self) -> list[str]:
        return sorted(set(CORE_ACTIONS) | set(self.dictionary.known_actions()))

    def save(self) -> dict:
        s = self.session
        self._set_state(STATE_SAVING)
        result = {"type": s.type, "saved": [], "rejected": [], "action": None, "workflow_id": None}

        if s.type == TYPE_WORKFLOW:
            steps = [
                WorkflowStep(
                    description=st.get("description") or "",
                    conditional=bool(st.get("conditional")),
                    condition=st.get("condition"),
                    action=st.get("action"),
                )
                for st in s.steps
            ]
            wf = self.dictionary.add_workflow(s.name or "unnamed workflow", s.trigger_phrases, steps)
            if wf is None:
                result["rejected"] = list(s.trigger_phrases)
            else:
                result["saved"] = list(wf.phrases)
                result["workflow_id"] = wf.id
            info(f"Saved workflow: {s.name}", tag=TAG)
            return result

        action = s.action or map_action(s.action_description, self._known_actions(), fallback=s.trigger_phrases[0] if s.trigger_phrases else "")
        s.action = action
        result["action"] = action

        for phrase in s.trigger_phrases:
            if s.type == TYPE_CONTEXT_RULE:
                cmd = self.dictionary.command_for_phrase(phrase)
                if cmd is None:
                    self.dictionary.learn(phrase, action, SOURCE_TRAINED)
                    cmd = self.dictionary.command_for_phrase(phrase)
                if cmd is not None and self.dictionary.add_context_rule(
                    cmd.id, ContextRule(match=dict(s.context_match or {}), action=action, priority=1)
                ):
                    result["saved"].append(phrase)
                else:
                    result["rejected"].append(phrase)
            elif self.dictionary.learn(phrase, action, SOURCE_TRAINED):
                result["saved"].append(phrase)
            else:
                result["rejected"].append(phrase)

        info(f"Saved {len(result['saved'])} phrase(s) -> {action}", tag=TAG)
        return result

    def get_session(self) -> TrainingSession | None:
        return self.session
