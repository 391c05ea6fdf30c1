import re
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone


SOURCE_DEFAULT = "default"
SOURCE_TRAINED = "trained"
SOURCE_LEARNED = "learned"
SOURCE_CONFIRMED = "confirmed"
SOURCE_CORRECTED = "corrected"

SOURCES = {SOURCE_DEFAULT, SOURCE_TRAINED, SOURCE_LEARNED, SOURCE_CONFIRMED, SOURCE_CORRECTED}

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalize(phrase: str | None) -> str:
    t = (phrase or "").lower()
    t = _PUNCT_RE.sub("", t)
    t = _SPACE_RE.sub(" ", t)
    return t.strip()


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str | None) -> float | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass
class Context:
    focused_app_id: str | None = None
    category: str | None = None
    mode: str | None = None
    recent_actions: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> "Context":
        data = data or {}
        return cls(
            focused_app_id=data.get("focused_app_id") or data.get("focusedAppId"),
            category=data.get("category"),
            mode=data.get("mode"),
            recent_actions=list(data.get("recent_actions") or data.get("recentActions") or []),
        )

    def key(self) -> str:
        return "|".join([self.focused_app_id or "", self.category or "", self.mode or ""])


RULE_MATCH_KEYS = ("app", "category", "mode", "recent_action")


@dataclass
class ContextRule:
    match: dict
    action: str
    priority: int = 0
    params: dict = field(default_factory=dict)

    def matches(self, ctx: Context | None) -> bool:
        if ctx is None:
            return False
        conditions = {k: v for k, v in (self.match or {}).items() if k in RULE_MATCH_KEYS and v}
        if not conditions:
            return False
        for key, expected in conditions.items():
            want = str(expected).strip().lower()
            if key == "app":
                if (ctx.focused_app_id or "").strip().lower() != want:
                    return False
            elif key == "category":
                if (ctx.category or "").strip().lower() != want:
                    return False
            elif key == "mode":
                if (ctx.mode or "").strip().lower() != want:
                    return False
            elif key == "recent_action":
                if want not in {(a or "").strip().lower() for a in ctx.recent_actions}:
                    return False
        return True

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ContextRule":
        return cls(
            match=dict(data.get("match") or {}),
            action=str(data.get("action") or ""),
            priority=int(data.get("priority") or 0),
            params=dict(data.get("params") or {}),
        )


@dataclass
class Command:
    id: str
    action: str
    phrases: list[str] = field(default_factory=list)
    source: str = SOURCE_LEARNED
    confidence: float = 0.8
    use_count: int = 0
    last_used: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str | None = None
    context_rules: list[ContextRule] = field(default_factory=list)
    params: dict = field(default_factory=dict)

    def best_rule(self, ctx: Context | None) -> ContextRule | None:
        best = None
        for rule in self.context_rules:
            if not rule.matches(ctx):
                continue
            # Strictly greater keeps the first declared rule on ties.
            if best is None or rule.priority > best.priority:
                best = rule
        return best

    def to_dict(self) -> dict:
        d = asdict(self)
        d["confidence"] = clamp(self.confidence)
        d["context_rules"] = [r.to_dict() for r in self.context_rules]
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Command":
        source = data.get("source") or SOURCE_LEARNED
        if source not in SOURCES:
            source = SOURCE_LEARNED
        try:
            confidence = clamp(data.get("confidence", 0.8))
        except (TypeError, ValueError):
            confidence = 0.8
        return cls(
            id=str(data.get("id") or new_id("cmd")),
            action=str(data["action"]),
            phrases=[str(p) for p in (data.get("phrases") or []) if str(p).strip()],
            source=source,
            confidence=confidence,
            use_count=int(data.get("use_count") or 0),
            last_used=data.get("last_used"),
            created_at=data.get("created_at") or now_iso(),
            updated_at=data.get("updated_at"),
            context_rules=[ContextRule.from_dict(r) for r in (data.get("context_rules") or []) if isinstance(r, dict)],
            params=dict(data.get("params") or {}),
        )


@dataclass
class WorkflowStep:
    description: str
    conditional: bool = False
    condition: str | None = None
    action: str | None = None


@dataclass
class Workflow:
    id: str
    name: str
    phrases: list[str] = field(default_factory=list)
    steps: list[WorkflowStep] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Workflow":
        return cls(
            id=str(data.get("id") or new_id("wf")),
            name=str(data.get("name") or "unnamed workflow"),
            phrases=[str(p) for p in (data.get("phrases") or [])],
            steps=[
                WorkflowStep(
                    description=str(s.get("description") or ""),
                    conditional=bool(s.get("conditional")),
                    condition=s.get("condition"),
                    action=s.get("action"),
                )
                for s in (data.get("steps") or []) if isinstance(s, dict)
            ],
            created_at=data.get("created_at") or now_iso(),
        )


@dataclass
class Match:
    action: str
    confidence: float
    tier: int
    source: str
    command_id: str | None = None
    matched_phrase: str | None = None
    params: dict = field(default_factory=dict)
