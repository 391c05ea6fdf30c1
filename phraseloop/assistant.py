import os
import queue

from .config import DEFAULT_COMMANDS, Settings
from .context_window import ContextWindow
from .dictionary import PhraseDictionary
from .drafts import DraftStore
from .events import EVENT_EXECUTE, EVENT_SPEAK, EventBus
from .intent_api import IntentAPI, start_local_intent_api
from .learning_loop import LearningLoop
from .logui import LOG_LEVEL, UI_MODE, debug, error, info, ui_command, ui_state, warn
from .models import Context
from .policy import DECISION_CONFIRM, DECISION_REJECT, decide
from .replies import ReplyClassifier, is_training_trigger
from .resolver import ResolutionPipeline
from .scheduler import TaskScheduler
from .training import TrainingMode

TAG = "Assistant"

KIND_EMPTY = "empty"
KIND_TRAINING = "training"
KIND_LEARNING = "learning"
KIND_EXECUTED = "executed"
KIND_CONFIRMING = "confirming"
KIND_UNRESOLVED = "unresolved"


class Assistant:
    """Routes each utterance through training, learning loop, resolver and policy.

    Everything runs on the caller's thread. Timers only fire from tick(), so
    the caller decides when time passes.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        base_dir: str | None = None,
        bus: EventBus | None = None,
        scheduler: TaskScheduler | None = None,
        classifier: IntentAPI | None = None,
        clock=None,
    ):
        self.settings = (settings or Settings()).validate()
        self.base_dir = os.path.abspath(base_dir) if base_dir else os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        s = self.settings

        self.bus = bus or EventBus()
        self.scheduler = scheduler or TaskScheduler(clock=clock)
        self.replies = ReplyClassifier()

        self.dictionary = PhraseDictionary(
            s.commands_path,
            fuzzy_max_score=s.thresholds.fuzzy_max_score,
            fuzzy_accept=s.thresholds.fuzzy_accept,
        ).load()
        self.dictionary.migrate_defaults(DEFAULT_COMMANDS)

        self.context_window = ContextWindow(s.context_window_size, clock=self.scheduler.now)
        if classifier is None and s.classifier_url:
            classifier = IntentAPI(
                s.classifier_url,
                timeout=s.timings.classifier_timeout,
                cache_ttl=s.timings.classifier_cache_ttl,
                cache_size=s.classifier_cache_size,
                max_tokens=s.classifier_max_tokens,
            )
        self.classifier = classifier
        self.resolver = ResolutionPipeline(
            self.dictionary,
            context_window=self.context_window,
            classifier=self.classifier,
            recent_actions_in_summary=s.recent_actions_in_summary,
        )
        self.learning = LearningLoop(
            self.dictionary,
            self.context_window,
            self.bus,
            self.scheduler,
            replies=self.replies,
            thresholds=s.thresholds,
            adjustments=s.adjustments,
            timings=s.timings,
        )
        self.training = TrainingMode(
            self.dictionary,
            self.bus,
            self.scheduler,
            drafts=DraftStore(s.draft_path),
            replies=self.replies,
            timings=s.timings,
        )
        self._maintenance_token = None
        self.bus.subscribe(EVENT_EXECUTE, self._log_execute)

    def _log_execute(self, event):
        action = event.payload.get("action")
        ui_command(action)
        info(f"EXECUTE {action} {event.payload.get('params') or ''}".rstrip(), tag=TAG)

    # -- lifecycle ----------------------------------------------------------

    def start(self):
        if self.settings.classifier_url and self.settings.start_local_api and self.classifier is not None:
            if not start_local_intent_api(self.base_dir, self.settings.classifier_url):
                warn("Local Intent API not started. Tier 3 will answer unresolved until it is up.", tag=TAG)
        self.schedule_maintenance()
        self.training.check_for_draft()

    def schedule_maintenance(self):
        interval = self.settings.timings.maintenance_interval
        if interval <= 0:
            return
        self.scheduler.cancel(self._maintenance_token)
        self._maintenance_token = self.scheduler.schedule(self._run_maintenance, interval, name="decay", owner=TAG)

    def _run_maintenance(self):
        self._maintenance_token = None
        self.learning.decay_unused()
        self.schedule_maintenance()

    def tick(self):
        return self.scheduler.tick()

    # -- processing ---------------------------------------------------------

    def process(self, text: str, context: Context | dict | None = None) -> dict:
        text = (text or "").strip()
        if not text:
            return {"kind": KIND_EMPTY, "handled": False}
        debug(f'Heard: "{text}"', tag=TAG)

        if self.training.is_active():
            self.training.handle_speech(text)
            return {"kind": KIND_TRAINING, "handled": True, "state": self.training.state}

        outcome = self.learning.handle_speech(text)
        if outcome.get("handled"):
            return {"kind": KIND_LEARNING, **outcome}

        if is_training_trigger(text):
            self.learning.reset()
            self.training.enter()
            return {"kind": KIND_TRAINING, "handled": True, "state": self.training.state}

        ctx = context if isinstance(context, Context) else Context.from_dict(context)
        match = self.resolver.resolve(text, ctx)
        if match is None:
            return {"kind": KIND_UNRESOLVED, "handled": False}

        decision = decide(match.confidence, self.settings.thresholds)
        if decision == DECISION_REJECT:
            debug(f"Rejected {match.action} at {match.confidence:.2f}", tag=TAG)
            return {"kind": KIND_UNRESOLVED, "handled": False, "match": match, "decision": decision}

        if decision == DECISION_CONFIRM:
            self.learning.ask_for_confirmation(
                text,
                match.action,
                match.confidence,
                description=match.action.replace("_", " "),
                params=match.params,
            )
            return {"kind": KIND_CONFIRMING, "handled": True, "match": match, "decision": decision}

        self.bus.execute(match.action, match.params)
        self.learning.observe_action(
            text,
            match.action,
            match.confidence,
            match.tier,
            command_id=match.command_id,
            matched_phrase=match.matched_phrase,
        )
        return {"kind": KIND_EXECUTED, "handled": True, "match": match, "decision": decision}

    def safe_process(self, text: str, context: Context | dict | None = None) -> dict:
        try:
            return self.process(text, context)
        except Exception as e:
            ui_state("ERROR")
            error(f"Command failed: {e}", tag=TAG)
            self.learning.reset()
            return {"kind": KIND_UNRESOLVED, "handled": False, "error": str(e)}

    def get_stats(self) -> dict:
        stats = {
            "dictionary": self.dictionary.get_stats(),
            "learning": self.learning.get_stats(),
            "training_state": self.training.state,
            "timers": self.scheduler.count(),
        }
        if self.classifier is not None:
            stats["classifier"] = self.classifier.get_stats()
        return stats

    def run(self, lines: "queue.Queue[str | None]", context: Context | None = None, poll_seconds: float = 0.1):
        """Process queued lines until a None sentinel arrives, ticking timers in between."""
        info("phraseloop start", tag=TAG)
        info(f"Mode: {'UI bridge' if UI_MODE else 'Console'} | log={LOG_LEVEL}", tag=TAG)
        info(f"Classifier: {self.settings.classifier_url or 'disabled'}", tag=TAG)
        info(f"Commands: {self.dictionary.get_stats()['total_phrases']} phrases", tag=TAG)
        ui_state("LISTENING")
        try:
            while True:
                self.tick()
                try:
                    line = lines.get(timeout=poll_seconds)
                except queue.Empty:
                    continue
                if line is None:
                    break
                self.safe_process(line, context)
        except KeyboardInterrupt:
            info("Shutdown: Ctrl+C", tag=TAG)
        finally:
            self.scheduler.clear_all()
            ui_state("IDLE")
            info("phraseloop stopped", tag=TAG)

    def speak_handler(self, handler):
        self.bus.subscribe(EVENT_SPEAK, handler)
