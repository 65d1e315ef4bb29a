import unittest

from services.pipeline_rules import (
    DEFAULT_STAGES,
    TERMINAL_STAGE_ID,
    is_won,
    normalize_stages,
    rename_stage,
    reorder_stages,
    stage_key,
    stage_transition_updates,
)


class StageTransitionTests(unittest.TestCase):
    def test_entering_closed_stage_marks_won(self):
        updates = stage_transition_updates({"stage": "20", "status": "Open"}, TERMINAL_STAGE_ID)
        self.assertEqual(updates, {"stage": "10", "status": "Won"})

    def test_leaving_closed_stage_reopens(self):
        updates = stage_transition_updates({"stage": "10", "status": "Won"}, "19")
        self.assertEqual(updates, {"stage": "19", "status": "Open"})

    def test_other_moves_only_change_stage(self):
        updates = stage_transition_updates({"stage": "16", "status": "Lost"}, "17")
        self.assertEqual(updates, {"stage": "17"})

    def test_destination_is_required(self):
        with self.assertRaises(ValueError):
            stage_transition_updates({"stage": "16"}, " ")

    def test_is_won_accepts_status_or_terminal_stage(self):
        self.assertTrue(is_won({"status": "Won", "stage": "20"}))
        self.assertTrue(is_won({"status": "Open", "stage": "10"}))
        self.assertFalse(is_won({"status": "Open", "stage": "20"}))

    def test_stage_key_defaults_to_unknown(self):
        self.assertEqual(stage_key(None), "Unknown")
        self.assertEqual(stage_key(" 20.5 "), "20.5")


class StageListTests(unittest.TestCase):
    def test_default_pipeline_has_closed_stage(self):
        self.assertIn(TERMINAL_STAGE_ID, [stage["id"] for stage in DEFAULT_STAGES])
        self.assertEqual(len(DEFAULT_STAGES), 9)

    def test_normalize_rejects_duplicates(self):
        with self.assertRaises(ValueError):
            normalize_stages([{"id": "1"}, {"id": "1"}])

    def test_normalize_fills_title_and_color(self):
        stages = normalize_stages([{"id": "30"}])
        self.assertEqual(stages, [{"id": "30", "title": "30", "color": "#808080"}])

    def test_rename_keeps_id(self):
        renamed = rename_stage(DEFAULT_STAGES, "20", "20 - Very Hot")
        titles = {stage["id"]: stage["title"] for stage in renamed}
        self.assertEqual(titles["20"], "20 - Very Hot")
        self.assertEqual({stage["id"]: stage["title"] for stage in DEFAULT_STAGES}["20"], "20 - Hot")

    def test_rename_unknown_stage_fails(self):
        with self.assertRaises(ValueError):
            rename_stage(DEFAULT_STAGES, "99", "Nope")

    def test_reorder_requires_every_stage(self):
        ids = [stage["id"] for stage in DEFAULT_STAGES]
        reordered = reorder_stages(DEFAULT_STAGES, list(reversed(ids)))
        self.assertEqual(reordered[0]["id"], "0")
        with self.assertRaises(ValueError):
            reorder_stages(DEFAULT_STAGES, ids[:-1])


if __name__ == "__main__":
    unittest.main()
