from dataclasses import dataclass, field
from typing import Callable

from .logui import error, ui_state


EVENT_SPEAK = "speak"
EVENT_EXECUTE = "execute"
EVENT_STATE_CHANGE = "state_change"
EVENT_CORRECTION = "correction"

EVENT_KINDS = (EVENT_SPEAK, EVENT_EXECUTE, EVENT_STATE_CHANGE, EVENT_CORRECTION)


@dataclass(frozen=True)
class Event:
    kind: str
    payload: dict = field(default_factory=dict)


def speak_event(text: str, cue: str | None = None) -> Event:
    return Event(EVENT_SPEAK, {"text": text, "cue": cue})


def execute_event(action: str, params: dict | None = None) -> Event:
    return Event(EVENT_EXECUTE, {"action": action, "params": dict(params or {})})


def state_change_event(component: str, new_state: str, old_state: str) -> Event:
    return Event(EVENT_STATE_CHANGE, {"component": component, "new": new_state, "old": old_state})


def correction_event(phrase: str, wrong_action: str | None, intended: str) -> Event:
    return Event(EVENT_CORRECTION, {"phrase": phrase, "wrong_action": wrong_action, "intended": intended})


class EventBus:
    """Routes events to handlers registered per kind.

    Collaborators (speaker, executor, UI) register here instead of the
    controllers holding loose callbacks. Handler failures stay on this side of
    the boundary: they are logged and the controller carries on.
    """

    def __init__(self, record: bool = False):
        self._handlers: dict[str, list[Callable[[Event], None]]] = {k: [] for k in EVENT_KINDS}
        self.record = record
        self.history: list[Event] = []

    def subscribe(self, kind: str, handler: Callable[[Event], None]):
        if kind not in self._handlers:
            raise ValueError(f"Unknown event kind: {kind}")
        self._handlers[kind].append(handler)

    def dispatch(self, event: Event):
        if event.kind not in self._handlers:
            raise ValueError(f"Unknown event kind: {event.kind}")
        if self.record:
            self.history.append(event)
        if event.kind == EVENT_STATE_CHANGE:
            ui_state(event.payload.get("new", ""), event.payload.get("component"))
        for handler in list(self._handlers[event.kind]):
            try:
                handler(event)
            except Exception as e:
                error(f"{event.kind} handler failed: {e}", tag="Events")

    def speak(self, text: str, cue: str | None = None):
        self.dispatch(speak_event(text, cue))

    def execute(self, action: str, params: dict | None = None):
        self.dispatch(execute_event(action, params))

    def state_changed(self, component: str, new_state: str, old_state: str):
        self.dispatch(state_change_event(component, new_state, old_state))

    def correction(self, phrase: str, wrong_action: str | None, intended: str):
        self.dispatch(correction_event(phrase, wrong_action, intended))

    def recorded(self, kind: str) -> list[Event]:
        return [e for e in self.history if e.kind == kind]
