import os
import sys
import tempfile
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from phraseloop.dictionary import PhraseDictionary
from phraseloop.drafts import DraftStore
from phraseloop.events import EVENT_SPEAK, EventBus
from phraseloop.models import Context
from phraseloop.resolver import ResolutionPipeline
from phraseloop.scheduler import TaskScheduler
from phraseloop.training import (
    STATE_COLLECTING_STEPS,
    STATE_COLLECTING_VARIATIONS,
    STATE_CONFIRMING,
    STATE_IDLE,
    STATE_LISTENING,
    STATE_RESUME_OFFERED,
    TYPE_CONTEXT_RULE,
    TYPE_SIMPLE_COMMAND,
    TYPE_WORKFLOW,
    TrainingMode,
    find_quoted,
    map_action,
)


class ManualClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self):
        return self.t

    def advance(self, seconds: float):
        self.t += seconds


class TestParsing(unittest.TestCase):
    def test_find_quoted(self):
        self.assertEqual(find_quoted('When I say "yeet", delete it')[0], "yeet")
        self.assertEqual(find_quoted("When I say 'yeet', delete it")[0], "yeet")
        self.assertEqual(find_quoted('When I\'m in slack and I say "send", press enter')[0], "send")
        self.assertIsNone(find_quoted("no quotes here"))

    def test_map_action(self):
        known = ["delete_selection", "select_all", "enter", "paste"]
        self.assertEqual(map_action("delete the selection", known), "delete_selection")
        self.assertEqual(map_action("Paste", known), "paste")
        self.assertEqual(map_action("press enter", known), "enter")
        self.assertEqual(map_action("open the pod bay doors", known), "custom_open_the_pod_bay_doors")
        self.assertEqual(map_action(None, known, fallback="yeet"), "custom_yeet")


class TrainingCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.clock = ManualClock()
        self.sched = TaskScheduler(clock=self.clock)
        self.d = PhraseDictionary(os.path.join(self.tmp.name, "commands.json")).load()
        self.bus = EventBus(record=True)
        self.drafts = DraftStore(os.path.join(self.tmp.name, "training_draft.json"))
        self.training = self._new_training()

    def tearDown(self):
        self.tmp.cleanup()

    def _new_training(self):
        return TrainingMode(self.d, self.bus, self.sched, drafts=self.drafts)

    def say(self, *lines):
        for line in lines:
            self.assertTrue(self.training.handle_speech(line))

    def advance(self, seconds: float):
        self.clock.advance(seconds)
        self.sched.tick()

    def spoken(self):
        return [e.payload["text"] for e in self.bus.recorded(EVENT_SPEAK)]


class TestTrainingFlow(TrainingCase):
    def test_enter(self):
        self.assertTrue(self.training.enter())
        self.assertEqual(self.training.state, STATE_LISTENING)
        self.assertEqual(self.spoken(), ["Training mode. What should I learn?"])
        self.assertFalse(self.training.enter())

    def test_inactive_ignores_speech(self):
        self.assertFalse(self.training.handle_speech("hello"))

    def test_round_trip_simple_command(self):
        self.training.enter()
        self.say('When I say "yeet", delete the selection')
        self.assertEqual(self.training.state, STATE_COLLECTING_VARIATIONS)
        self.assertEqual(self.training.session.type, TYPE_SIMPLE_COMMAND)
        self.say("also chuck it", "done")
        self.assertEqual(self.training.state, STATE_CONFIRMING)
        self.say("yes")

        self.assertEqual(self.training.state, STATE_IDLE)
        for phrase in ["yeet", "chuck it"]:
            m = self.d.lookup_exact(phrase)
            self.assertEqual(m.action, "delete_selection")
            self.assertEqual(m.confidence, 1.0)
        self.assertEqual(self.d.command_for_phrase("yeet").source, "trained")
        self.assertIn("Learned!", self.spoken())
        self.assertEqual(self.spoken()[-1], "Training off.")
        self.assertFalse(self.drafts.exists())

    def test_cancel_without_content_mutates_nothing(self):
        before = self.d.to_document()["commands"]
        self.training.enter()
        self.say("cancel")
        self.assertEqual(self.training.state, STATE_IDLE)
        self.assertEqual(self.d.to_document()["commands"], before)
        self.assertEqual(self.spoken()[-1], "Cancelled.")

    def test_exit_with_content_forces_confirmation(self):
        self.training.enter()
        self.say('When I say "yeet", delete the selection', "stop")
        self.assertEqual(self.training.state, STATE_CONFIRMING)
        self.say("stop")
        self.assertEqual(self.training.state, STATE_IDLE)
        self.assertIsNone(self.d.lookup_exact("yeet"))

    def test_confirm_negative_discards(self):
        self.training.enter()
        self.say('When I say "yeet", delete the selection', "done", "nope")
        self.assertEqual(self.training.state, STATE_IDLE)
        self.assertIsNone(self.d.lookup_exact("yeet"))

    def test_ambiguous_confirmation_reprompts(self):
        self.training.enter()
        self.say('When I say "yeet", delete the selection', "done", "maybe later")
        self.assertEqual(self.training.state, STATE_CONFIRMING)
        self.assertEqual(self.spoken()[-1], "Say confirm to save or cancel to discard.")

    def test_unparsed_request_reprompts(self):
        self.training.enter()
        self.say("delete things please")
        self.assertEqual(self.training.state, STATE_LISTENING)
        self.assertIn("when I say", self.spoken()[-1])

    def test_taken_phrase_is_reported(self):
        self.d.learn("chuck it", "paste")
        self.training.enter()
        self.say('When I say "yeet", delete the selection', "chuck it", "done", "yes")
        self.assertEqual(self.training.last_result["rejected"], ["chuck it"])
        self.assertEqual(self.d.lookup_exact("chuck it").action, "paste")
        self.assertEqual(self.d.lookup_exact("yeet").action, "delete_selection")

    def test_workflow(self):
        self.training.enter()
        self.say('Learn a routine called "morning setup"')
        self.assertEqual(self.training.state, STATE_COLLECTING_STEPS)
        self.assertEqual(self.training.session.type, TYPE_WORKFLOW)
        self.say("open slack", "if there are unread messages, mark them read", "done")
        self.assertEqual(self.training.state, STATE_CONFIRMING)
        self.say("confirm")

        wf = self.d.lookup_workflow("morning setup")
        self.assertIsNotNone(wf)
        self.assertEqual(len(wf.steps), 2)
        self.assertFalse(wf.steps[0].conditional)
        self.assertTrue(wf.steps[1].conditional)

    def test_context_rule(self):
        self.d.learn("send", "submit_form", "trained")
        self.training.enter()
        self.say('When I\'m in slack and I say "send", press enter')
        self.assertEqual(self.training.session.type, TYPE_CONTEXT_RULE)
        self.assertEqual(self.training.session.context_match, {"app": "slack"})
        self.say("done", "yes")

        pipeline = ResolutionPipeline(self.d)
        m = pipeline.resolve("send", Context(focused_app_id="Slack"))
        self.assertEqual((m.action, m.tier), ("enter", 0))
        m = pipeline.resolve("send", Context(focused_app_id="mail"))
        self.assertEqual((m.action, m.tier), ("submit_form", 1))


class TestTrainingTimeouts(TrainingCase):
    def test_warning_then_discard_when_empty(self):
        self.training.enter()
        self.advance(15)
        self.assertEqual(self.spoken()[-1], "Still there?")
        self.assertEqual(self.training.state, STATE_LISTENING)
        self.advance(10)
        self.assertEqual(self.training.state, STATE_IDLE)

    def test_timeout_with_content_confirms(self):
        self.training.enter()
        self.say('When I say "yeet", delete the selection')
        self.advance(15)
        self.assertEqual(self.training.state, STATE_CONFIRMING)
        self.advance(20)
        self.assertEqual(self.training.state, STATE_IDLE)
        self.assertIsNone(self.d.lookup_exact("yeet"))

    def test_speech_resets_timeout(self):
        self.training.enter()
        self.say('When I say "yeet", delete the selection')
        self.advance(10)
        self.say("chuck it")
        self.advance(10)
        self.assertEqual(self.training.state, STATE_COLLECTING_VARIATIONS)

    def test_stale_timer_after_exit(self):
        self.training.enter()
        self.say("cancel")
        self.training.enter()
        self.advance(24)
        self.assertEqual(self.training.state, STATE_LISTENING)


class TestDrafts(TrainingCase):
    def test_draft_written_and_resumed(self):
        self.training.enter()
        self.say('When I say "yeet", delete the selection', "chuck it")
        self.assertTrue(self.drafts.exists())

        self.sched.clear_all()
        self.training = self._new_training()
        self.assertTrue(self.training.check_for_draft())
        self.assertEqual(self.training.state, STATE_RESUME_OFFERED)
        self.say("yes")
        self.assertEqual(self.training.state, STATE_COLLECTING_VARIATIONS)
        self.assertEqual(self.training.session.trigger_phrases, ["yeet", "chuck it"])
        self.say("done", "yes")
        self.assertEqual(self.d.lookup_exact("chuck it").action, "delete_selection")
        self.assertFalse(self.drafts.exists())

    def test_draft_discarded(self):
        self.training.enter()
        self.say('When I say "yeet", delete the selection')
        self.training = self._new_training()
        self.training.check_for_draft()
        self.say("no")
        self.assertEqual(self.training.state, STATE_IDLE)
        self.assertFalse(self.drafts.exists())
        self.assertIsNone(self.d.lookup_exact("yeet"))

    def test_no_draft(self):
        self.assertFalse(self.training.check_for_draft())
        self.assertEqual(self.training.state, STATE_IDLE)

    def test_corrupt_draft_ignored(self):
        with open(self.drafts.path, "w", encoding="utf-8") as f:
            f.write("{oops")
        self.assertFalse(self.training.check_for_draft())


if __name__ == "__main__":
    unittest.main()
