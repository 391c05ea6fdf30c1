import unittest
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from phraseloop.events import EVENT_CORRECTION, EVENT_SPEAK, Event, EventBus


class TestEventBus(unittest.TestCase):
    def test_dispatch_by_kind(self):
        bus = EventBus()
        spoken, corrections = [], []
        bus.subscribe(EVENT_SPEAK, lambda e: spoken.append(e.payload["text"]))
        bus.subscribe(EVENT_CORRECTION, lambda e: corrections.append(e.payload["intended"]))
        bus.speak("hello")
        bus.correction("send it", "paste", "enter")
        self.assertEqual(spoken, ["hello"])
        self.assertEqual(corrections, ["enter"])

    def test_unknown_kind_raises(self):
        bus = EventBus()
        with self.assertRaises(ValueError):
            bus.subscribe("shout", lambda e: None)
        with self.assertRaises(ValueError):
            bus.dispatch(Event("shout", {}))

    def test_handler_failure_is_contained(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("speaker offline")

        bus.subscribe(EVENT_SPEAK, broken)
        bus.subscribe(EVENT_SPEAK, lambda e: seen.append(e))
        bus.speak("still delivered")
        self.assertEqual(len(seen), 1)

    def test_recording(self):
        bus = EventBus(record=True)
        bus.execute("enter", {"n": 1})
        bus.state_changed("learning", "observing", "idle")
        self.assertEqual(len(bus.history), 2)
        self.assertEqual(bus.recorded("execute")[0].payload, {"action": "enter", "params": {"n": 1}})


if __name__ == "__main__":
    unittest.main()
