import unittest
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from phraseloop.context_window import ContextWindow
from phraseloop.dictionary import PhraseDictionary
from phraseloop.models import Context, ContextRule, WorkflowStep
from phraseloop.resolver import ResolutionPipeline


class FakeClassifier:
    enabled = True

    def __init__(self, result=None):
        self.result = result or {"action": "unknown", "confidence": 0.0}
        self.calls = []

    def classify(self, text, context_summary=None, known_actions=None):
        self.calls.append({"text": text, "context_summary": context_summary, "known_actions": known_actions})
        return dict(self.result)


class TestResolutionPipeline(unittest.TestCase):
    def setUp(self):
        self.d = PhraseDictionary(None)
        self.window = ContextWindow(10)
        self.classifier = FakeClassifier()
        self.pipeline = ResolutionPipeline(self.d, self.window, self.classifier)

    def test_exact_hit_skips_later_tiers(self):
        self.d.learn("send it", "enter", "trained")
        m = self.pipeline.resolve("send it")
        self.assertEqual((m.action, m.tier, m.confidence), ("enter", 1, 1.0))
        self.assertEqual(self.classifier.calls, [])
        self.assertEqual(self.d.get_stats()["tier2_hits"], 0)

    def test_fuzzy_when_exact_misses(self):
        self.d.learn("turn it up", "volume_up")
        m = self.pipeline.resolve("turn it upp")
        self.assertEqual(m.tier, 2)
        self.assertEqual(m.source, "fuzzy")
        self.assertEqual(self.classifier.calls, [])

    def test_distant_phrase_goes_to_classifier(self):
        self.d.learn("turn it up", "volume_up")
        self.assertIsNone(self.pipeline.resolve("crank up the volume"))
        self.assertEqual(len(self.classifier.calls), 1)
        self.assertEqual(self.classifier.calls[0]["text"], "crank up the volume")

    def test_weak_fuzzy_falls_through_to_classifier(self):
        d = PhraseDictionary(None, fuzzy_accept=0.95)
        d.learn("turn it up", "volume_up")
        self.classifier.result = {"action": "volume_up", "confidence": 0.8}
        m = ResolutionPipeline(d, self.window, self.classifier).resolve("turn it upp")
        self.assertEqual((m.action, m.tier), ("volume_up", 3))
        self.assertEqual(d.get_stats()["tier2_hits"], 0)

    def test_context_override_beats_exact(self):
        self.d.learn("send", "enter", "trained")
        cmd = self.d.command_for_phrase("send")
        self.d.add_context_rule(cmd.id, ContextRule(match={"app": "slack"}, action="paste", priority=1))
        self.d.add_context_rule(cmd.id, ContextRule(match={"app": "slack", "mode": "thread"}, action="copy", priority=3))

        m = self.pipeline.resolve("send", Context(focused_app_id="Slack"))
        self.assertEqual((m.action, m.tier, m.confidence), ("paste", 0, 1.0))
        m = self.pipeline.resolve("send", {"focusedAppId": "slack", "mode": "thread"})
        self.assertEqual(m.action, "copy")
        m = self.pipeline.resolve("send", Context(focused_app_id="mail"))
        self.assertEqual((m.action, m.tier), ("enter", 1))

    def test_workflow_trigger(self):
        wf = self.d.add_workflow("morning", ["morning setup"], [WorkflowStep("open slack")])
        m = self.pipeline.resolve("Morning setup")
        self.assertEqual(m.action, "run_workflow")
        self.assertEqual(m.tier, 1)
        self.assertEqual(m.params["workflow_id"], wf.id)

    def test_classifier_tier(self):
        self.classifier.result = {"action": "paste", "confidence": 0.6, "params": {"n": 1}}
        self.window.add_action("copy", 1.0, 1)
        m = self.pipeline.resolve("stick it in", Context(focused_app_id="slack", category="chat"))
        self.assertEqual((m.action, m.tier, m.confidence), ("paste", 3, 0.6))
        self.assertEqual(m.params, {"n": 1})
        call = self.classifier.calls[0]
        self.assertEqual(call["context_summary"]["focused_app_id"], "slack")
        self.assertEqual(call["context_summary"]["recent_actions"], ["copy"])
        self.assertIn("paste", call["known_actions"])
        self.assertEqual(self.d.get_stats()["tier3_hits"], 1)

    def test_classifier_unknown_is_unresolved(self):
        self.assertIsNone(self.pipeline.resolve("gibberish words here"))
        self.assertEqual(self.d.get_stats()["tier3_hits"], 0)

    def test_empty_phrase(self):
        self.assertIsNone(self.pipeline.resolve("  ...  "))
        self.assertEqual(self.classifier.calls, [])

    def test_without_classifier(self):
        pipeline = ResolutionPipeline(self.d)
        self.assertIsNone(pipeline.resolve("stick it in"))


if __name__ == "__main__":
    unittest.main()
