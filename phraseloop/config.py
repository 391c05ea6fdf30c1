import json
import os
from dataclasses import dataclass, field, fields, asdict


CLASSIFIER_URL = "http://127.0.0.1:8008/classify"

DEFAULT_HOME = os.path.join(os.path.expanduser("~"), ".config", "phraseloop")
COMMANDS_FILENAME = "personal_commands.json"
DRAFT_FILENAME = "training_draft.json"

# Reply tables. Every entry is matched against the normalized utterance.
AFFIRMATIVE_PHRASES = {
    "yes",
    "yeah",
    "yep",
    "yup",
    "correct",
    "right",
    "affirmative",
    "confirm",
    "thats right",
    "exactly",
    "sure",
    "do it",
    "save",
    "save it",
}

NEGATIVE_PHRASES = {
    "no",
    "nope",
    "nah",
    "wrong",
    "thats wrong",
    "not that",
    "no thats wrong",
}

# Patterns are applied to the lowercased, trimmed utterance. Group 1 is the
# intended phrase.
CORRECTION_PATTERNS = [
    r"^no[,.]?\s+(?:i\s+)?(?:meant?|want(?:ed)?)\s+(.+)$",
    r"^(?:that'?s\s+)?wrong[,.]?\s+(?:i\s+)?(?:meant?|want(?:ed)?)\s+(.+)$",
    r"^not\s+that[,.]?\s+(.+)$",
    r"^i\s+said\s+(.+)$",
    r"^(?:actually|instead)[,.]?\s+(.+)$",
]

UNDO_PHRASES = {
    "undo",
    "undo that",
    "undo it",
    "undo last",
    "retract",
    "oops",
    "computer undo",
    "computer retract",
    "take that back",
}

TRAINING_EXIT_PHRASES = {"cancel", "nevermind", "never mind", "exit", "stop"}

TRAINING_DONE_PHRASES = {"done", "no", "nope", "thats it", "thats all", "finished"}

TRAINING_CONFIRM_NO = {"no", "nope", "cancel", "nevermind", "never mind", "discard"}

TRAINING_TRIGGER_PHRASES = {
    "computer learn",
    "learn this",
    "learn something",
    "training mode",
    "start training",
    "teach you something",
    "let me teach you",
}

WORKFLOW_KEYWORDS = {"routine", "workflow", "sequence", "steps", "multi step", "multistep"}

# Classifier answers that never count as an intent.
NON_ACTIONS = {"", "none", "unknown"}

DEFAULT_COMMANDS = [
    {"action": "enter", "phrases": ["send it", "submit", "go ahead"]},
    {"action": "undo", "phrases": ["take it back", "scratch that"]},
    {"action": "clear_all", "phrases": ["start over", "clear everything"]},
    {"action": "copy", "phrases": ["copy that"]},
    {"action": "paste", "phrases": ["paste it"]},
    {"action": "select_all", "phrases": ["select everything"]},
    {"action": "volume_up", "phrases": ["turn it up"]},
    {"action": "volume_down", "phrases": ["turn it down"]},
    {"action": "stop_listening", "phrases": ["stop listening"]},
]

CORE_ACTIONS = sorted(
    {c["action"] for c in DEFAULT_COMMANDS}
    | {
        "cut",
        "scroll_up",
        "scroll_down",
        "page_up",
        "page_down",
        "focus_app",
        "new_tab",
        "close_tab",
        "mute",
        "start_listening",
        "delete_selection",
        "run_workflow",
    }
)

VOICE_RESPONSES = {
    "enter_training": "Training mode. What should I learn?",
    "need_clarification": "I need you to say: when I say 'phrase', do something. For example: when I say 'ship it', run the deploy workflow.",
    "confirm_prompt": "Say confirm to save or cancel to discard.",
    "saved": "Learned!",
    "cancelled": "Cancelled.",
    "exit_training": "Training off.",
    "timeout_warning": "Still there?",
    "what_did_you_mean": "What did you mean?",
    "remember": "I'll remember that.",
    "got_it": "Got it.",
    "resume_offer": "I found an unfinished training session. Resume it?",
}


class ConfigError(ValueError):
    pass


@dataclass
class Thresholds:
    """Confidence policy cut-offs, highest first.

    execute_immediate: at or above, execute with no observation window.
    execute_observe: at or above, execute and watch for a correction.
    ask_confirmation: at or above, ask before executing; below, reject.
    """

    execute_immediate: float = 0.9
    execute_observe: float = 0.7
    ask_confirmation: float = 0.5
    fuzzy_max_score: float = 0.3
    fuzzy_accept: float = 0.7

    def validate(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, (int, float)) or not (0.0 <= float(value) <= 1.0):
                raise ConfigError(f"{f.name} must be a number in [0, 1], got {value!r}")
        if not (self.ask_confirmation <= self.execute_observe <= self.execute_immediate):
            raise ConfigError("thresholds must satisfy ask_confirmation <= execute_observe <= execute_immediate")


@dataclass
class Adjustments:
    implicit_positive: float = 0.02
    explicit_positive: float = 0.1
    explicit_negative: float = -0.15
    immediate_undo: float = -0.1
    unused_decay: float = -0.05
    remove_learned_below: float = 0.5
    confidence_floor: float = 0.3
    unused_days: int = 30

    def validate(self):
        if self.implicit_positive < 0 or self.explicit_positive < 0:
            raise ConfigError("positive adjustments must not be negative")
        if self.explicit_negative > 0 or self.immediate_undo > 0 or self.unused_decay > 0:
            raise ConfigError("negative adjustments must not be positive")
        if not (0.0 <= self.confidence_floor <= 1.0):
            raise ConfigError("confidence_floor must be in [0, 1]")
        if self.unused_days <= 0:
            raise ConfigError("unused_days must be positive")


@dataclass
class Timings:
    """Seconds."""

    observation: float = 5.0
    confirmation: float = 10.0
    correction: float = 10.0
    training_listening: float = 25.0
    training_collecting: float = 15.0
    training_confirming: float = 20.0
    training_warning_before: float = 10.0
    classifier_timeout: float = 3.0
    classifier_cache_ttl: float = 300.0
    maintenance_interval: float = 6 * 3600.0

    def validate(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, (int, float)) or value < 0:
                raise ConfigError(f"{f.name} must be a non-negative number, got {value!r}")


@dataclass
class Settings:
    home: str = DEFAULT_HOME
    classifier_url: str | None = CLASSIFIER_URL
    classifier_max_tokens: int = 100
    classifier_cache_size: int = 100
    context_window_size: int = 10
    recent_actions_in_summary: int = 5
    start_local_api: bool = True
    thresholds: Thresholds = field(default_factory=Thresholds)
    adjustments: Adjustments = field(default_factory=Adjustments)
    timings: Timings = field(default_factory=Timings)

    @property
    def commands_path(self) -> str:
        return os.path.join(self.home, COMMANDS_FILENAME)

    @property
    def draft_path(self) -> str:
        return os.path.join(self.home, DRAFT_FILENAME)

    def validate(self) -> "Settings":
        self.thresholds.validate()
        self.adjustments.validate()
        self.timings.validate()
        if not (1 <= int(self.context_window_size) <= 1000):
            raise ConfigError("context_window_size must be between 1 and 1000")
        if self.classifier_max_tokens <= 0:
            raise ConfigError("classifier_max_tokens must be positive")
        if self.classifier_cache_size < 0:
            raise ConfigError("classifier_cache_size must not be negative")
        return self

    @classmethod
    def from_dict(cls, data: dict | None) -> "Settings":
        data = dict(data or {})
        nested = {
            "thresholds": Thresholds,
            "adjustments": Adjustments,
            "timings": Timings,
        }
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                raise ConfigError(f"Unknown setting: {key}")
            if key in nested:
                sub_cls = nested[key]
                sub_known = {f.name for f in fields(sub_cls)}
                unknown = set(value or {}) - sub_known
                if unknown:
                    raise ConfigError(f"Unknown {key} setting(s): {sorted(unknown)}")
                kwargs[key] = sub_cls(**(value or {}))
            else:
                kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return asdict(self)


def load_settings(path: str | None = None, environ: dict | None = None) -> Settings:
    env = os.environ if environ is None else environ
    data = {}
    if path and os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read settings file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {path} must contain a JSON object")

    settings = Settings.from_dict(data)
    home = env.get("PHRASELOOP_HOME")
    if home:
        settings.home = home
    url = env.get("PHRASELOOP_CLASSIFIER_URL")
    if url is not None:
        settings.classifier_url = url or None
    return settings.validate()
