"""Tiered phrase resolution.

Tier 0 is a context override on the command that owns the phrase, tier 1 an
exact phrase or workflow trigger, tier 2 a fuzzy phrase, tier 3 the external
classifier. The first tier that answers wins; later tiers are never asked.
"""

from .config import CORE_ACTIONS
from .context_window import ContextWindow
from .dictionary import PhraseDictionary
from .intent_api import IntentAPI
from .logui import debug, info
from .models import Context, Match, normalize

TAG = "Resolver"

SOURCE_CONTEXT = "context"
SOURCE_WORKFLOW = "workflow"
SOURCE_CLASSIFIER = "classifier"

RUN_WORKFLOW = "run_workflow"


class ResolutionPipeline:
    def __init__(
        self,
        dictionary: PhraseDictionary,
        context_window: ContextWindow | None = None,
        classifier: IntentAPI | None = None,
        recent_actions_in_summary: int = 5,
    ):
        self.dictionary = dictionary
        self.context_window = context_window
        self.classifier = classifier
        self.recent_actions_in_summary = recent_actions_in_summary

    def resolve(self, phrase: str, context: Context | dict | None = None) -> Match | None:
        ctx = context if isinstance(context, Context) else Context.from_dict(context)
        key = normalize(phrase)
        if not key:
            return None

        match = (
            self._tier0(key, ctx)
            or self._workflow(key)
            or self.dictionary.lookup(key)
            or self._tier3(phrase, ctx)
        )
        if match is None:
            debug(f'Unresolved: "{phrase}"', tag=TAG)
            return None
        info(f'"{phrase}" -> {match.action} (tier {match.tier}, {match.confidence:.2f})', tag=TAG)
        return match

    def _tier0(self, key: str, ctx: Context) -> Match | None:
        cmd = self.dictionary.command_for_phrase(key)
        if cmd is None:
            return None
        rule = cmd.best_rule(ctx)
        if rule is None:
            return None
        self.dictionary.record_usage(cmd.id)
        return Match(
            action=rule.action,
            confidence=1.0,
            tier=0,
            source=SOURCE_CONTEXT,
            command_id=cmd.id,
            matched_phrase=key,
            params=dict(rule.params),
        )

    def _workflow(self, key: str) -> Match | None:
        # Workflow triggers never collide with command phrases.
        wf = self.dictionary.lookup_workflow(key)
        if wf is None:
            return None
        return Match(
            action=RUN_WORKFLOW,
            confidence=1.0,
            tier=1,
            source=SOURCE_WORKFLOW,
            matched_phrase=key,
            params={"workflow_id": wf.id, "workflow_name": wf.name},
        )

    def _tier3(self, phrase: str, ctx: Context) -> Match | None:
        if self.classifier is None or not self.classifier.enabled:
            return None
        result = self.classifier.classify(
            phrase,
            context_summary=self.context_summary(ctx),
            known_actions=self.known_actions(),
        )
        if result.get("action") == "unknown" or not result.get("confidence"):
            return None
        self.dictionary.record_tier3_hit()
        return Match(
            action=result["action"],
            confidence=float(result["confidence"]),
            tier=3,
            source=SOURCE_CLASSIFIER,
            params=dict(result.get("params") or {}),
        )

    def known_actions(self) -> list[str]:
        return sorted(set(CORE_ACTIONS) | set(self.dictionary.known_actions()))

    def context_summary(self, ctx: Context) -> dict:
        recent = []
        if self.context_window is not None:
            recent = self.context_window.recent_actions(self.recent_actions_in_summary)
        if not recent:
            recent = list(ctx.recent_actions)[-self.recent_actions_in_summary:]
        return {
            "focused_app_id": ctx.focused_app_id,
            "category": ctx.category,
            "mode": ctx.mode,
            "recent_actions": recent,
        }
