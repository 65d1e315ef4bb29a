import unittest

from services.crm_rbac import ActorIdentity
from services.task_guard import (
    ACTION_COMPLETE,
    ACTION_DELETE,
    ACTION_EDIT,
    TaskPermissionError,
    classify_task_change,
    guard_opportunity_update,
    stamp_new_tasks,
)

ALICE = ActorIdentity(user_id="u-alice", email="alice@example.com")
BOB = ActorIdentity(user_id="u-bob", email="bob@example.com")


def _task(task_id, title, **extra):
    task = {"id": task_id, "title": title, "isCompleted": False}
    task.update(extra)
    return task


class ClassifyTaskChangeTests(unittest.TestCase):
    def test_unchanged(self):
        task = _task("t1", "Call", createdBy="u-alice")
        self.assertIsNone(classify_task_change(task, dict(task)))

    def test_completion_only(self):
        old = _task("t1", "Call")
        new = _task("t1", "Call", isCompleted=True)
        self.assertEqual(classify_task_change(old, new), ACTION_COMPLETE)

    def test_completion_plus_other_field_is_edit(self):
        old = _task("t1", "Call")
        new = _task("t1", "Call back", isCompleted=True)
        self.assertEqual(classify_task_change(old, new), ACTION_EDIT)


class GuardOpportunityUpdateTests(unittest.TestCase):
    def setUp(self):
        self.existing = {
            "id": "opp-1",
            "name": "Website",
            "tasks": [
                _task("t1", "Send quote", createdBy="alice@example.com", assignee="bob@example.com"),
                _task("t2", "Call back", createdBy="u-bob"),
            ],
        }

    def test_diff_scenario_allows_completion_and_new_task(self):
        updates = {
            "tasks": [
                _task("t1", "Send quote", createdBy="alice@example.com", assignee="bob@example.com", isCompleted=True),
                _task("t2", "Call back", createdBy="u-bob"),
                _task("t3", "New follow-up"),
            ]
        }
        prepared = guard_opportunity_update(self.existing, updates, BOB)
        tasks = {task["id"]: task for task in prepared["tasks"]}
        self.assertTrue(tasks["t1"]["isCompleted"])
        self.assertEqual(tasks["t3"]["createdBy"], "bob@example.com")
        self.assertEqual(tasks["t3"]["assignedBy"], "bob@example.com")

    def test_deleting_someone_elses_task_is_rejected(self):
        updates = {"tasks": [self.existing["tasks"][1]]}
        with self.assertRaises(TaskPermissionError) as ctx:
            guard_opportunity_update(self.existing, updates, BOB)
        self.assertEqual(ctx.exception.action, ACTION_DELETE)
        self.assertEqual(ctx.exception.task_id, "t1")
        self.assertIn('delete task "Send quote"', str(ctx.exception))

    def test_editing_someone_elses_task_is_rejected(self):
        updates = {
            "tasks": [
                _task("t1", "Send quote v2", createdBy="alice@example.com", assignee="bob@example.com"),
                self.existing["tasks"][1],
            ]
        }
        with self.assertRaises(TaskPermissionError) as ctx:
            guard_opportunity_update(self.existing, updates, BOB)
        self.assertEqual(ctx.exception.action, ACTION_EDIT)

    def test_completion_by_non_assignee_non_author_is_rejected(self):
        carol = ActorIdentity(email="carol@example.com")
        updates = {
            "tasks": [
                _task("t1", "Send quote", createdBy="alice@example.com", assignee="bob@example.com", isCompleted=True),
                self.existing["tasks"][1],
            ]
        }
        with self.assertRaises(TaskPermissionError) as ctx:
            guard_opportunity_update(self.existing, updates, carol)
        self.assertEqual(ctx.exception.action, ACTION_COMPLETE)
        self.assertEqual(ctx.exception.to_details()["taskTitle"], "Send quote")

    def test_rejection_covers_the_whole_update(self):
        updates = {"name": "Renamed", "tasks": []}
        with self.assertRaises(TaskPermissionError):
            guard_opportunity_update(self.existing, updates, BOB)
        self.assertEqual(self.existing["name"], "Website")
        self.assertEqual(len(self.existing["tasks"]), 2)

    def test_guard_does_not_mutate_inputs(self):
        new_task = _task("t3", "Fresh")
        updates = {"tasks": list(self.existing["tasks"]) + [new_task]}
        guard_opportunity_update(self.existing, updates, ALICE)
        self.assertNotIn("createdBy", new_task)
        self.assertEqual(len(updates["tasks"]), 3)

    def test_dropped_created_by_is_restored_not_treated_as_edit(self):
        stripped = {key: value for key, value in self.existing["tasks"][0].items() if key != "createdBy"}
        updates = {"tasks": [stripped, self.existing["tasks"][1]]}
        prepared = guard_opportunity_update(self.existing, updates, BOB)
        self.assertEqual(prepared["tasks"][0]["createdBy"], "alice@example.com")

    def test_legacy_task_edit_depends_on_policy(self):
        existing = {"id": "opp-2", "tasks": [_task("t9", "Legacy")]}
        updates = {"tasks": [_task("t9", "Legacy edited")]}
        prepared = guard_opportunity_update(existing, updates, BOB, legacy_policy="permissive")
        self.assertEqual(prepared["tasks"][0]["title"], "Legacy edited")
        self.assertNotIn("createdBy", prepared["tasks"][0])
        with self.assertRaises(TaskPermissionError):
            guard_opportunity_update(existing, updates, BOB, legacy_policy="deny")

    def test_follow_up_date_resets_read_flag(self):
        existing = {"id": "opp-3", "followUpDate": "2026-03-01", "followUpRead": True}
        prepared = guard_opportunity_update(existing, {"followUpDate": "2026-03-01"}, ALICE)
        self.assertIs(prepared["followUpRead"], False)
        prepared = guard_opportunity_update(existing, {"followUpDate": None, "followUpRead": True}, ALICE)
        self.assertIs(prepared["followUpRead"], False)

    def test_updates_without_tasks_skip_permission_checks(self):
        prepared = guard_opportunity_update(self.existing, {"name": "Renamed"}, BOB)
        self.assertEqual(prepared, {"name": "Renamed"})


class StampNewTasksTests(unittest.TestCase):
    def test_reassignment_records_assigned_by(self):
        old = [_task("t1", "Call", createdBy="u-alice", assignee="u-alice")]
        new = [_task("t1", "Call", createdBy="u-alice", assignee="u-bob")]
        stamped = stamp_new_tasks(old, new, ALICE)
        self.assertEqual(stamped[0]["assignedBy"], "alice@example.com")

    def test_created_by_cannot_be_forged(self):
        old = [_task("t1", "Call", createdBy="u-alice")]
        new = [_task("t1", "Call", createdBy="u-bob")]
        stamped = stamp_new_tasks(old, new, BOB)
        self.assertEqual(stamped[0]["createdBy"], "u-alice")

    def test_new_task_is_credited_to_the_actor(self):
        stamped = stamp_new_tasks([], [_task("t1", "Imported", createdBy="u-carol", assignedBy="u-carol")], ALICE)
        self.assertEqual(stamped[0]["createdBy"], "alice@example.com")
        self.assertEqual(stamped[0]["assignedBy"], "alice@example.com")

    def test_anonymous_actor_cannot_pass_an_author_through(self):
        stamped = stamp_new_tasks([], [_task("t1", "Imported", createdBy="u-carol")], ActorIdentity())
        self.assertNotIn("createdBy", stamped[0])


if __name__ == "__main__":
    unittest.main()
