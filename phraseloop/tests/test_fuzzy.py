import unittest
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from phraseloop.fuzzy import FuzzyEntry, FuzzyIndex


class TestFuzzyIndex(unittest.TestCase):
    def setUp(self):
        self.index = FuzzyIndex(
            [
                FuzzyEntry("turn it up", "volume_up", "c1"),
                FuzzyEntry("turn it down", "volume_down", "c2"),
                FuzzyEntry("send it", "enter", "c3"),
            ]
        )

    def test_identical_scores_zero(self):
        hit = self.index.search("send it")
        self.assertEqual(hit.entry.action, "enter")
        self.assertEqual(hit.score, 0.0)

    def test_close_match(self):
        hit = self.index.search("turn it dwn")
        self.assertEqual(hit.entry.action, "volume_down")
        self.assertLess(hit.score, 0.3)

    def test_threshold_is_strict(self):
        hit = self.index.search("send it")
        self.assertIsNone(self.index.search("send it", max_score=0.0))
        self.assertIsNotNone(hit)

    def test_no_match(self):
        self.assertIsNone(self.index.search("crank up the volume"))
        self.assertIsNone(self.index.search(""))
        self.assertIsNone(FuzzyIndex().search("send it"))

    def test_top(self):
        hits = self.index.top("turn it", limit=2)
        self.assertEqual(len(hits), 2)
        self.assertTrue(all(h.entry.phrase.startswith("turn it") for h in hits))
        self.assertLessEqual(hits[0].score, hits[1].score)


if __name__ == "__main__":
    unittest.main()
