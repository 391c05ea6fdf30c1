import unittest
import os
import sys

import requests

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from phraseloop.intent_api import IntentAPI, parse_classification


class FakeResponse:
    def __init__(self, status_code=200, data=None, bad_json=False):
        self.status_code = status_code
        self._data = data
        self._bad_json = bad_json

    def json(self):
        if self._bad_json:
            raise ValueError("Expecting value")
        return self._data


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class ManualClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self):
        return self.t


class TestParseClassification(unittest.TestCase):
    def test_valid(self):
        self.assertEqual(
            parse_classification({"action": "paste", "confidence": 0.8}),
            {"action": "paste", "confidence": 0.8},
        )

    def test_params_kept(self):
        out = parse_classification({"action": "focus_app", "confidence": 0.9, "params": {"app": "slack"}})
        self.assertEqual(out["params"], {"app": "slack"})

    def test_unresolved_shapes(self):
        for data in [
            None,
            [],
            {"action": None, "confidence": 0.9},
            {"action": "none", "confidence": 0.9},
            {"action": "Unknown", "confidence": 0.9},
            {"action": "paste", "confidence": 1.5},
            {"action": "paste", "confidence": -0.1},
            {"action": "paste", "confidence": "high"},
            {"action": "paste"},
        ]:
            self.assertEqual(parse_classification(data), {"action": "unknown", "confidence": 0.0}, data)

    def test_restricted_to_known_actions(self):
        out = parse_classification({"action": "format_disk", "confidence": 0.9}, ["paste", "copy"])
        self.assertEqual(out["action"], "unknown")


class TestIntentAPI(unittest.TestCase):
    def test_request_contract(self):
        session = FakeSession([FakeResponse(data={"action": "paste", "confidence": 0.6})])
        api = IntentAPI("http://x/classify", timeout=2.0, max_tokens=50, session=session)
        result = api.classify("stick it in", {"focused_app_id": "slack"}, ["paste", "copy"])
        self.assertEqual(result, {"action": "paste", "confidence": 0.6})
        call = session.calls[0]
        self.assertEqual(call["timeout"], 2.0)
        self.assertEqual(
            call["json"],
            {
                "utterance": "stick it in",
                "context_summary": {"focused_app_id": "slack"},
                "known_actions": ["paste", "copy"],
                "max_tokens": 50,
            },
        )

    def test_cache_by_phrase_and_context(self):
        clock = ManualClock()
        session = FakeSession([FakeResponse(data={"action": "paste", "confidence": 0.6})] * 3)
        api = IntentAPI("http://x/classify", cache_ttl=300, session=session, clock=clock)
        api.classify("Stick it in", {"focused_app_id": "slack"})
        api.classify("stick it in!", {"focused_app_id": "slack"})
        self.assertEqual(len(session.calls), 1)
        self.assertEqual(api.get_stats()["cache_hits"], 1)
        api.classify("stick it in", {"focused_app_id": "mail"})
        self.assertEqual(len(session.calls), 2)
        clock.t += 301
        api.classify("stick it in", {"focused_app_id": "slack"})
        self.assertEqual(len(session.calls), 3)

    def test_cache_is_bounded(self):
        session = FakeSession([FakeResponse(data={"action": "paste", "confidence": 0.6})] * 4)
        api = IntentAPI("http://x/classify", cache_size=2, session=session, clock=ManualClock())
        for text in ["a", "b", "c"]:
            api.classify(text)
        self.assertEqual(api.get_stats()["cache_size"], 2)
        api.classify("a")
        self.assertEqual(len(session.calls), 4)

    def test_failures_resolve_to_unknown(self):
        session = FakeSession(
            [
                FakeResponse(status_code=500),
                requests.exceptions.Timeout("slow"),
                requests.exceptions.ConnectionError("down"),
                FakeResponse(bad_json=True),
            ]
        )
        api = IntentAPI("http://x/classify", session=session, clock=ManualClock())
        for text in ["one", "two", "three", "four"]:
            self.assertEqual(api.classify(text), {"action": "unknown", "confidence": 0.0})
        self.assertEqual(api.get_stats()["errors"], 4)
        self.assertEqual(api.get_stats()["cache_size"], 0)

    def test_disabled_client_never_calls(self):
        session = FakeSession([])
        api = IntentAPI(None, session=session)
        self.assertFalse(api.enabled)
        self.assertEqual(api.classify("anything")["action"], "unknown")
        self.assertEqual(session.calls, [])


if __name__ == "__main__":
    unittest.main()
