import os
import sys
import socket
import time
import subprocess
from collections import OrderedDict
from urllib.parse import urlparse

import requests

from .config import NON_ACTIONS
from .logui import debug, warn, error
from .models import clamp, normalize

TAG = "IntentAPI"

UNRESOLVED = {"action": "unknown", "confidence": 0.0}


def is_port_open(host: str, port: int, timeout=0.25) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def start_local_intent_api(base_dir: str, url: str):
    parsed = urlparse(url)
    host, port = parsed.hostname or "127.0.0.1", parsed.port or 8008
    if host not in ("127.0.0.1", "localhost"):
        return is_port_open(host, port)
    if is_port_open(host, port):
        return True

    api_dir = os.path.join(base_dir, "Api")
    app_py = os.path.join(api_dir, "app.py")
    if not os.path.exists(app_py):
        warn(f"Local API not found: {app_py}", tag=TAG)
        return False

    py = sys.executable

    try:
        subprocess.Popen(
            [py, "-m", "uvicorn", "app:app", "--host", host, "--port", str(port)],
            cwd=api_dir,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
    except OSError as e:
        warn(f"Failed to start local API: {e}", tag=TAG)
        return False

    for _ in range(30):
        if is_port_open(host, port):
            return True
        time.sleep(0.1)

    warn(f"Local API did not open port {port}", tag=TAG)
    return False


def parse_classification(data, known_actions: list[str] | None = None) -> dict:
    """Validate a classifier reply; anything off-contract is unresolved."""
    if not isinstance(data, dict):
        return dict(UNRESOLVED)
    action = data.get("action")
    if not isinstance(action, str) or action.strip().lower() in NON_ACTIONS:
        return dict(UNRESOLVED)
    try:
        confidence = float(data.get("confidence"))
    except (TypeError, ValueError):
        return dict(UNRESOLVED)
    if not (0.0 <= confidence <= 1.0):
        return dict(UNRESOLVED)
    action = action.strip()
    if known_actions and action not in known_actions:
        debug(f"Classifier proposed unknown action {action!r}", tag=TAG)
        return dict(UNRESOLVED)
    out = {"action": action, "confidence": clamp(confidence)}
    if isinstance(data.get("params"), dict):
        out["params"] = dict(data["params"])
    return out


class IntentAPI:
    def __init__(
        self,
        url: str | None,
        timeout: float = 3.0,
        cache_ttl: float = 300.0,
        cache_size: int = 100,
        max_tokens: int = 100,
        session=None,
        clock=None,
    ):
        self.url = url
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.cache_size = cache_size
        self.max_tokens = max_tokens
        self.session = session or requests.Session()
        self.clock = clock or time.time
        self._cache: OrderedDict[str, tuple[float, dict]] = OrderedDict()
        self.calls = 0
        self.cache_hits = 0
        self.errors = 0
        self.total_latency = 0.0

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _cache_key(self, text: str, context_summary: dict | None) -> str:
        ctx = context_summary or {}
        return "|".join(
            [
                normalize(text),
                str(ctx.get("focused_app_id") or ""),
                str(ctx.get("category") or ""),
                str(ctx.get("mode") or ""),
            ]
        )

    def _cache_get(self, key: str):
        item = self._cache.get(key)
        if item is None:
            return None
        stored_at, value = item
        if self.clock() - stored_at > self.cache_ttl:
            self._cache.pop(key, None)
            return None
        self._cache.move_to_end(key)
        return dict(value)

    def _cache_put(self, key: str, value: dict):
        if self.cache_size <= 0:
            return
        self._cache[key] = (self.clock(), dict(value))
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def clear_cache(self):
        self._cache.clear()

    def classify(self, text: str, context_summary: dict | None = None, known_actions: list[str] | None = None) -> dict:
        if not self.enabled or not normalize(text):
            return dict(UNRESOLVED)

        key = self._cache_key(text, context_summary)
        cached = self._cache_get(key)
        if cached is not None:
            self.cache_hits += 1
            return cached

        payload = {
            "utterance": text,
            "context_summary": context_summary or {},
            "known_actions": list(known_actions or []),
            "max_tokens": self.max_tokens,
        }
        self.calls += 1
        started = time.monotonic()
        try:
            r = self.session.post(self.url, json=payload, timeout=self.timeout)
            if r.status_code != 200:
                self.errors += 1
                error(f"API error: HTTP {r.status_code}", tag=TAG)
                return dict(UNRESOLVED)
            data = r.json()
        except requests.exceptions.RequestException as e:
            self.errors += 1
            error(f"API connection error: {e}", tag=TAG)
            return dict(UNRESOLVED)
        except ValueError as e:
            self.errors += 1
            error(f"API returned malformed JSON: {e}", tag=TAG)
            return dict(UNRESOLVED)
        finally:
            self.total_latency += time.monotonic() - started

        result = parse_classification(data, known_actions)
        if result["action"] == UNRESOLVED["action"] and data != UNRESOLVED:
            debug(f"Unresolved classifier reply for {text!r}: {data!r}", tag=TAG)
        self._cache_put(key, result)
        return result

    def get_stats(self) -> dict:
        return {
            "calls": self.calls,
            "cache_hits": self.cache_hits,
            "cache_size": len(self._cache),
            "errors": self.errors,
            "avg_latency_ms": round(self.total_latency / self.calls * 1000, 1) if self.calls else 0.0,
        }
