from .config import Thresholds


DECISION_EXECUTE = "execute"
DECISION_EXECUTE_OBSERVE = "execute_observe"
DECISION_CONFIRM = "confirm"
DECISION_REJECT = "reject"

EXECUTING_DECISIONS = (DECISION_EXECUTE, DECISION_EXECUTE_OBSERVE)


def decide(confidence: float | None, thresholds: Thresholds | None = None) -> str:
    t = thresholds or Thresholds()
    if confidence is None:
        return DECISION_REJECT
    c = float(confidence)
    if c >= t.execute_immediate:
        return DECISION_EXECUTE
    if c >= t.execute_observe:
        return DECISION_EXECUTE_OBSERVE
    if c >= t.ask_confirmation:
        return DECISION_CONFIRM
    return DECISION_REJECT


def should_execute(confidence: float | None, thresholds: Thresholds | None = None) -> bool:
    return decide(confidence, thresholds) in EXECUTING_DECISIONS
