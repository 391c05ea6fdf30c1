"""Personal phrase dictionary.

Owns every Command and Workflow and is the only writer of the backing JSON
document. Lookups go through two derived indexes: an exact map from
normalized phrase to command, and a FuzzyIndex rebuilt after every mutation.
"""

import json
import os
import tempfile
import threading
import time

from .fuzzy import FuzzyEntry, FuzzyIndex
from .logui import debug, info, warn, error
from .models import (
    Command,
    ContextRule,
    Match,
    Workflow,
    WorkflowStep,
    SOURCE_CONFIRMED,
    SOURCE_DEFAULT,
    SOURCE_LEARNED,
    SOURCE_TRAINED,
    SOURCES,
    clamp,
    new_id,
    normalize,
    now_iso,
)

DOCUMENT_VERSION = "1.0.0"
TAG = "Commands"


def _as_list(value, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        warn(f"Ignoring malformed {name}: expected a list, got {type(value).__name__}", tag=TAG)
        return []
    return value


def empty_document() -> dict:
    return {
        "version": DOCUMENT_VERSION,
        "created_at": now_iso(),
        "updated_at": None,
        "commands": [],
        "workflows": [],
        "stats": {
            "tier1_hits": 0,
            "tier2_hits": 0,
            "tier3_hits": 0,
            "last_cleanup": None,
        },
    }


class PhraseDictionary:
    def __init__(self, path: str | None, fuzzy_max_score: float = 0.3, fuzzy_accept: float = 0.7, autosave: bool = True):
        self.path = path
        self.fuzzy_max_score = fuzzy_max_score
        self.fuzzy_accept = fuzzy_accept
        self.autosave = autosave and bool(path)
        self._lock = threading.RLock()
        self.version = DOCUMENT_VERSION
        self.created_at = now_iso()
        self.updated_at = None
        self.commands: list[Command] = []
        self.workflows: list[Workflow] = []
        self.stats = dict(empty_document()["stats"])
        self.persist_failures = 0
        self.last_persist_error: str | None = None
        self._phrase_index: dict[str, Command] = {}
        self._workflow_index: dict[str, Workflow] = {}
        self._fuzzy = FuzzyIndex()

    # -- persistence -------------------------------------------------------

    def load(self) -> "PhraseDictionary":
        with self._lock:
            doc = None
            if self.path and os.path.exists(self.path):
                try:
                    with open(self.path, "r", encoding="utf-8") as f:
                        doc = json.load(f)
                    if not isinstance(doc, dict):
                        raise ValueError("document root is not an object")
                except (OSError, ValueError) as e:
                    self._persist_failed(f"read {self.path}: {e}")
                    warn("Falling back to an empty dictionary", tag=TAG)
                    doc = None
            self._apply_document(doc or empty_document())
            if doc is None and self.path and not os.path.exists(self.path):
                self.save()
            info(f"Loaded {len(self.commands)} commands, {len(self._phrase_index)} phrases", tag=TAG)
            return self

    def _apply_document(self, doc: dict):
        commands, workflows = [], []
        for raw in _as_list(doc.get("commands"), "commands"):
            if not isinstance(raw, dict):
                warn(f"Skipping malformed command {raw!r}", tag=TAG)
                continue
            try:
                commands.append(Command.from_dict(raw))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                warn(f"Skipping malformed command {raw!r}: {e}", tag=TAG)
        for raw in _as_list(doc.get("workflows"), "workflows"):
            if not isinstance(raw, dict):
                warn(f"Skipping malformed workflow {raw!r}", tag=TAG)
                continue
            try:
                workflows.append(Workflow.from_dict(raw))
            except (AttributeError, TypeError, ValueError) as e:
                warn(f"Skipping malformed workflow {raw!r}: {e}", tag=TAG)
        stats = dict(empty_document()["stats"])
        raw_stats = doc.get("stats")
        if not isinstance(raw_stats, dict):
            raw_stats = {}
        for key in ("tier1_hits", "tier2_hits", "tier3_hits"):
            try:
                stats[key] = max(0, int(raw_stats.get(key) or 0))
            except (TypeError, ValueError):
                warn(f"Resetting malformed stat {key}={raw_stats.get(key)!r}", tag=TAG)
        if isinstance(raw_stats.get("last_cleanup"), str):
            stats["last_cleanup"] = raw_stats["last_cleanup"]
        self.version = str(doc.get("version") or DOCUMENT_VERSION)
        self.created_at = doc.get("created_at") or now_iso()
        self.updated_at = doc.get("updated_at")
        self.commands = commands
        self.workflows = workflows
        self.stats = stats
        self.build_indexes()

    def to_document(self) -> dict:
        with self._lock:
            return {
                "version": self.version,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
                "commands": [c.to_dict() for c in self.commands],
                "workflows": [w.to_dict() for w in self.workflows],
                "stats": dict(self.stats),
            }

    def save(self) -> bool:
        if not self.path:
            return True
        with self._lock:
            doc = self.to_document()
            directory = os.path.dirname(os.path.abspath(self.path))
            tmp_path = None
            try:
                os.makedirs(directory, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(prefix=".commands-", suffix=".json", dir=directory)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(doc, f, indent=2)
                os.replace(tmp_path, self.path)
                return True
            except (OSError, TypeError, ValueError) as e:
                if tmp_path and os.path.exists(tmp_path):
                    try:
                        os.remove(tmp_path)
                    except OSError:
                        pass
                self._persist_failed(f"write {self.path}: {e}")
                return False

    def _persist_failed(self, message: str):
        self.persist_failures += 1
        self.last_persist_error = message
        error(f"Persistence failure ({self.persist_failures}): {message}", tag=TAG)

    def _commit(self, rebuild: bool = True):
        self.updated_at = now_iso()
        if rebuild:
            self.build_indexes()
        if self.autosave:
            self.save()

    # -- indexes ------------------------------------------------------------

    def build_indexes(self):
        with self._lock:
            phrase_index: dict[str, Command] = {}
            entries = []
            for cmd in self.commands:
                for phrase in cmd.phrases:
                    key = normalize(phrase)
                    if not key or key in phrase_index:
                        continue
                    phrase_index[key] = cmd
                    entries.append(FuzzyEntry(phrase=key, action=cmd.action, command_id=cmd.id))
            workflow_index: dict[str, Workflow] = {}
            for wf in self.workflows:
                for phrase in wf.phrases:
                    key = normalize(phrase)
                    if key and key not in phrase_index and key not in workflow_index:
                        workflow_index[key] = wf
            self._phrase_index = phrase_index
            self._workflow_index = workflow_index
            self._fuzzy = FuzzyIndex(entries)

    def is_owned(self, phrase: str) -> bool:
        key = normalize(phrase)
        return key in self._phrase_index or key in self._workflow_index

    # -- lookups ------------------------------------------------------------

    def lookup_exact(self, phrase: str) -> Match | None:
        key = normalize(phrase)
        cmd = self._phrase_index.get(key)
        if cmd is None:
            return None
        self.stats["tier1_hits"] = int(self.stats.get("tier1_hits") or 0) + 1
        self.record_usage(cmd.id)
        return Match(
            action=cmd.action,
            confidence=1.0,
            tier=1,
            source="exact",
            command_id=cmd.id,
            matched_phrase=key,
            params=dict(cmd.params),
        )

    def lookup_fuzzy(self, phrase: str, min_confidence: float | None = None) -> Match | None:
        hit = self._fuzzy.search(normalize(phrase), max_score=self.fuzzy_max_score)
        if hit is None:
            return None
        confidence = clamp(1.0 - hit.score)
        if min_confidence is not None and confidence <= min_confidence:
            return None
        self.stats["tier2_hits"] = int(self.stats.get("tier2_hits") or 0) + 1
        self.record_usage(hit.entry.command_id)
        cmd = self.get_command(hit.entry.command_id)
        return Match(
            action=hit.entry.action,
            confidence=confidence,
            tier=2,
            source="fuzzy",
            command_id=hit.entry.command_id,
            matched_phrase=hit.entry.phrase,
            params=dict(cmd.params) if cmd else {},
        )

    def lookup(self, phrase: str) -> Match | None:
        """Exact match, else a fuzzy match whose confidence exceeds fuzzy_accept."""
        return self.lookup_exact(phrase) or self.lookup_fuzzy(phrase, min_confidence=self.fuzzy_accept)

    def lookup_workflow(self, phrase: str) -> Workflow | None:
        return self._workflow_index.get(normalize(phrase))

    def command_for_phrase(self, phrase: str) -> Command | None:
        return self._phrase_index.get(normalize(phrase))

    def command_for_action(self, action: str) -> Command | None:
        for cmd in self.commands:
            if cmd.action == action:
                return cmd
        return None

    def get_command(self, command_id: str | None) -> Command | None:
        if not command_id:
            return None
        for cmd in self.commands:
            if cmd.id == command_id:
                return cmd
        return None

    def get_all_commands(self) -> list[Command]:
        return list(self.commands)

    def get_workflows(self) -> list[Workflow]:
        return list(self.workflows)

    def known_actions(self) -> list[str]:
        return sorted({c.action for c in self.commands})

    def is_empty(self) -> bool:
        return not self.commands

    # -- mutations ----------------------------------------------------------

    def learn(self, phrase: str, action: str, source: str = SOURCE_LEARNED) -> bool:
        key = normalize(phrase)
        if not key or not action:
            return False
        if source not in SOURCES:
            source = SOURCE_LEARNED
        with self._lock:
            if self.is_owned(key):
                debug(f'Phrase already known: "{phrase}"', tag=TAG)
                return False
            cmd = self.command_for_action(action)
            if cmd:
                cmd.phrases.append(phrase.strip())
                cmd.updated_at = now_iso()
            else:
                cmd = Command(
                    id=new_id("cmd"),
                    action=action,
                    phrases=[phrase.strip()],
                    source=source,
                    confidence=1.0 if source in (SOURCE_TRAINED, SOURCE_CONFIRMED) else 0.8,
                    use_count=0,
                )
                self.commands.append(cmd)
            self._commit()
        info(f'Learned: "{phrase}" -> {action} ({source})', tag=TAG)
        return True

    def forget(self, phrase: str) -> bool:
        key = normalize(phrase)
        with self._lock:
            cmd = self._phrase_index.get(key)
            if cmd is None:
                return False
            cmd.phrases = [p for p in cmd.phrases if normalize(p) != key]
            cmd.updated_at = now_iso()
            if not cmd.phrases:
                self.commands = [c for c in self.commands if c.id != cmd.id]
            self._commit()
        info(f'Forgot: "{phrase}"', tag=TAG)
        return True

    def remove_command(self, command_id: str) -> bool:
        with self._lock:
            before = len(self.commands)
            self.commands = [c for c in self.commands if c.id != command_id]
            if len(self.commands) == before:
                return False
            self._commit()
        return True

    def record_usage(self, command_id: str | None, persist: bool = False):
        with self._lock:
            cmd = self.get_command(command_id)
            if cmd is None:
                return
            cmd.use_count += 1
            cmd.last_used = now_iso()
            if persist:
                self._commit(rebuild=False)

    def record_tier3_hit(self):
        self.stats["tier3_hits"] = int(self.stats.get("tier3_hits") or 0) + 1

    def adjust_confidence(self, command_id: str | None, delta: float, floor: float = 0.0) -> float | None:
        with self._lock:
            cmd = self.get_command(command_id)
            if cmd is None:
                return None
            cmd.confidence = clamp(cmd.confidence + delta, low=clamp(floor), high=1.0)
            cmd.updated_at = now_iso()
            self._commit(rebuild=False)
            return cmd.confidence

    def add_context_rule(self, command_id: str, rule: ContextRule) -> bool:
        if not rule.action or not rule.match:
            return False
        with self._lock:
            cmd = self.get_command(command_id)
            if cmd is None:
                return False
            cmd.context_rules.append(rule)
            cmd.updated_at = now_iso()
            self._commit(rebuild=False)
        info(f"Context rule added to {cmd.action}: {rule.match} -> {rule.action}", tag=TAG)
        return True

    def add_workflow(self, name: str, phrases: list[str], steps: list[WorkflowStep]) -> Workflow | None:
        keys = [normalize(p) for p in phrases]
        if not steps or not any(keys):
            return None
        with self._lock:
            for key in keys:
                if key and self.is_owned(key):
                    debug(f'Workflow trigger already known: "{key}"', tag=TAG)
                    return None
            wf = Workflow(
                id=new_id("wf"),
                name=name or "unnamed workflow",
                phrases=[p.strip() for p, k in zip(phrases, keys) if k],
                steps=list(steps),
            )
            self.workflows.append(wf)
            self._commit()
        info(f'Saved workflow "{wf.name}" with {len(wf.steps)} steps', tag=TAG)
        return wf

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._lock:
            before = len(self.workflows)
            self.workflows = [w for w in self.workflows if w.id != workflow_id]
            if len(self.workflows) == before:
                return False
            self._commit()
        return True

    def migrate_defaults(self, defaults: list[dict]) -> int:
        with self._lock:
            if self.commands:
                return 0
            for item in defaults:
                phrases = [p for p in item.get("phrases", []) if normalize(p) and not self.is_owned(p)]
                if not phrases:
                    continue
                self.commands.append(
                    Command(
                        id=f"cmd_default_{item['action']}",
                        action=item["action"],
                        phrases=list(phrases),
                        source=SOURCE_DEFAULT,
                        confidence=1.0,
                    )
                )
                self.build_indexes()
            self._commit()
        info(f"Migrated {len(self.commands)} default commands", tag=TAG)
        return len(self.commands)

    def mark_cleanup(self):
        self.stats["last_cleanup"] = now_iso()

    # -- observability ------------------------------------------------------

    def get_stats(self) -> dict:
        t1 = int(self.stats.get("tier1_hits") or 0)
        t2 = int(self.stats.get("tier2_hits") or 0)
        t3 = int(self.stats.get("tier3_hits") or 0)
        total = t1 + t2 + t3

        def rate(n):
            return round(n / total, 2) if total else 0.0

        return {
            "tier1_hits": t1,
            "tier2_hits": t2,
            "tier3_hits": t3,
            "total_lookups": total,
            "tier1_rate": rate(t1),
            "tier2_rate": rate(t2),
            "tier3_rate": rate(t3),
            "total_commands": len(self.commands),
            "total_phrases": len(self._phrase_index),
            "total_workflows": len(self.workflows),
            "last_cleanup": self.stats.get("last_cleanup"),
            "persist_failures": self.persist_failures,
            "last_persist_error": self.last_persist_error,
            "checked_at": time.time(),
        }
