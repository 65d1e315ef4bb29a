import unittest

from schemas.opportunity_schema import (
    normalize_date,
    normalize_tags,
    normalize_task,
    normalize_tasks,
    normalize_time,
    validate_appointment_create,
    validate_appointment_update,
    validate_opportunity_create,
    validate_opportunity_update,
)


class OpportunitySchemaTests(unittest.TestCase):
    def test_tags_keep_first_spelling(self):
        self.assertEqual(normalize_tags(["VIP", " vip ", "Hot  Lead", "hot lead"]), ["VIP", "Hot Lead"])
        self.assertEqual(normalize_tags("a, b,,A"), ["a", "b"])

    def test_create_defaults(self):
        record = validate_opportunity_create({"name": " Website "})
        self.assertEqual(record["name"], "Website")
        self.assertEqual(record["status"], "Open")
        self.assertEqual(record["value"], 0.0)
        self.assertEqual(record["tasks"], [])
        self.assertFalse(record["followUpRead"])

    def test_create_rejects_bad_status(self):
        with self.assertRaises(ValueError):
            validate_opportunity_create({"name": "x", "status": "Pending"})

    def test_update_ignores_unknown_fields(self):
        self.assertEqual(validate_opportunity_update({"status": "won", "id": "nope"}), {"status": "Won"})

    def test_update_cannot_blank_the_name(self):
        with self.assertRaises(ValueError):
            validate_opportunity_update({"name": "  "})

    def test_task_normalization(self):
        task = normalize_task({"title": "Call", "dueDate": "2026-03-15T09:00:00Z", "dueTime": "09:30:00", "extra": 1})
        self.assertEqual(task["dueDate"], "2026-03-15")
        self.assertEqual(task["dueTime"], "09:30")
        self.assertFalse(task["isCompleted"])
        self.assertNotIn("extra", task)
        self.assertTrue(task["id"])

    def test_task_identity_fields_are_trimmed_and_blank_ones_dropped(self):
        task = normalize_task({"title": "Call", "createdBy": "   ", "assignee": " bob@example.com ", "assignedBy": ""})
        self.assertNotIn("createdBy", task)
        self.assertNotIn("assignedBy", task)
        self.assertEqual(task["assignee"], "bob@example.com")

    def test_appointment_validation(self):
        record = validate_appointment_create({"title": " Demo ", "date": "2026-03-15T08:00:00Z", "time": "09:05", "notes": ""})
        self.assertEqual(record, {"title": "Demo", "date": "2026-03-15", "time": "09:05"})
        with self.assertRaises(ValueError):
            validate_appointment_create({"title": "Demo", "date": "2026-03-15"})
        with self.assertRaises(ValueError):
            validate_appointment_update({"date": ""})
        self.assertEqual(validate_appointment_update({"time": "10:00", "color": "red"}), {"time": "10:00"})

    def test_task_ids_must_be_unique(self):
        with self.assertRaises(ValueError):
            normalize_tasks([{"id": "t1", "title": "A"}, {"id": "t1", "title": "B"}])

    def test_date_and_time_validation(self):
        with self.assertRaises(ValueError):
            normalize_date("15/03/2026")
        with self.assertRaises(ValueError):
            normalize_time("25:00")
        self.assertIsNone(normalize_date(""))


if __name__ == "__main__":
    unittest.main()
