import unittest
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from phraseloop.config import Thresholds
from phraseloop.policy import (
    DECISION_CONFIRM,
    DECISION_EXECUTE,
    DECISION_EXECUTE_OBSERVE,
    DECISION_REJECT,
    decide,
    should_execute,
)


class TestPolicy(unittest.TestCase):
    def test_default_bands(self):
        self.assertEqual(decide(1.0), DECISION_EXECUTE)
        self.assertEqual(decide(0.9), DECISION_EXECUTE)
        self.assertEqual(decide(0.89), DECISION_EXECUTE_OBSERVE)
        self.assertEqual(decide(0.7), DECISION_EXECUTE_OBSERVE)
        self.assertEqual(decide(0.69), DECISION_CONFIRM)
        self.assertEqual(decide(0.5), DECISION_CONFIRM)
        self.assertEqual(decide(0.49), DECISION_REJECT)
        self.assertEqual(decide(0.0), DECISION_REJECT)
        self.assertEqual(decide(None), DECISION_REJECT)

    def test_custom_thresholds(self):
        t = Thresholds(execute_immediate=0.95, execute_observe=0.8, ask_confirmation=0.6)
        self.assertEqual(decide(0.9, t), DECISION_EXECUTE_OBSERVE)
        self.assertEqual(decide(0.7, t), DECISION_CONFIRM)
        self.assertEqual(decide(0.55, t), DECISION_REJECT)

    def test_should_execute(self):
        self.assertTrue(should_execute(0.75))
        self.assertFalse(should_execute(0.6))


if __name__ == "__main__":
    unittest.main()
