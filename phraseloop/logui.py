import os
import sys
from datetime import datetime

UI_MODE = "--ui" in sys.argv


def ui_state(name: str, component: str | None = None):
    if UI_MODE:
        label = f"{component}:{name}" if component else name
        print(f"STATE:{label}", flush=True)


def ui_command(text: str):
    if UI_MODE:
        print(f"COMMAND:{text}", flush=True)


LOG_LEVEL = os.environ.get("PHRASELOOP_LOG", "INFO").upper()
LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}


def _ts():
    return datetime.now().strftime("%H:%M:%S")


def log(level: str, msg: str, tag: str | None = None):
    if LEVELS.get(level, 20) < LEVELS.get(LOG_LEVEL, 20):
        return
    prefix = f"[{tag}] " if tag else ""
    print(f"{_ts()} [{level:<5}] {prefix}{msg}", flush=True)


def debug(msg, tag=None):
    log("DEBUG", msg, tag)


def info(msg, tag=None):
    log("INFO", msg, tag)


def warn(msg, tag=None):
    log("WARN", msg, tag)


def error(msg, tag=None):
    log("ERROR", msg, tag)
