import os
import sys
import tempfile
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from phraseloop.events import EventBus
from phraseloop.voice import Voice


class TestVoice(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.voice_dir = os.path.join(self.tmp.name, "Assets", "voice")
        os.makedirs(self.voice_dir)
        self.voice = Voice(self.tmp.name, enabled=False)

    def tearDown(self):
        self.tmp.cleanup()

    def touch(self, name):
        path = os.path.join(self.voice_dir, name)
        with open(path, "wb") as f:
            f.write(b"")
        return path

    def test_exact_cue_wins(self):
        exact = self.touch("saved.wav")
        self.touch("saved_2.wav")
        self.assertEqual(self.voice.pick_cue("saved"), exact)

    def test_variant_cue(self):
        variant = self.touch("cancelled_1.mp3")
        self.assertEqual(self.voice.pick_cue("cancelled"), variant)

    def test_missing_cue(self):
        self.assertIsNone(self.voice.pick_cue("nothing"))
        self.assertIsNone(self.voice.pick_cue(None))

    def test_disabled_voice_records_text(self):
        self.voice.say("Learned!", "saved")
        self.assertEqual(self.voice.spoken, ["Learned!"])
        self.assertIsNone(self.voice.engine)

    def test_speak_event(self):
        bus = EventBus()
        bus.subscribe("speak", self.voice.on_speak)
        bus.speak("Training off.", "exit_training")
        self.assertEqual(self.voice.spoken, ["Training off."])


if __name__ == "__main__":
    unittest.main()
