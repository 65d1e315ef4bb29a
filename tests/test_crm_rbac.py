import unittest

from services.crm_rbac import (
    ActorIdentity,
    can_delete_task,
    can_edit_task,
    can_toggle_task_completion,
    is_task_assignee,
    is_task_author,
    normalize_identity,
)


class CrmRbacTests(unittest.TestCase):
    def setUp(self):
        self.alice = ActorIdentity(user_id="u-alice", email="Alice@Example.com")
        self.bob = ActorIdentity(user_id="u-bob", email="bob@example.com")

    def test_normalize_identity_lowercases_emails_only(self):
        self.assertEqual(normalize_identity("  Alice@Example.com "), "alice@example.com")
        self.assertEqual(normalize_identity(" U-Alice "), "U-Alice")
        self.assertEqual(normalize_identity(None), "")

    def test_author_matches_by_id_or_email(self):
        self.assertTrue(is_task_author({"createdBy": "u-alice"}, self.alice))
        self.assertTrue(is_task_author({"createdBy": "alice@example.com"}, self.alice))
        self.assertFalse(is_task_author({"createdBy": "u-bob"}, self.alice))

    def test_author_gates_delete_and_edit(self):
        task = {"id": "t1", "title": "Call", "createdBy": "alice@example.com"}
        self.assertTrue(can_delete_task(task, self.alice))
        self.assertTrue(can_edit_task(task, self.alice))
        self.assertFalse(can_delete_task(task, self.bob))
        self.assertFalse(can_edit_task(task, self.bob))

    def test_assignee_may_toggle_completion_only(self):
        task = {"id": "t1", "title": "Call", "createdBy": "u-alice", "assignee": "bob@example.com"}
        self.assertTrue(is_task_assignee(task, self.bob))
        self.assertTrue(can_toggle_task_completion(task, self.bob))
        self.assertFalse(can_edit_task(task, self.bob))
        self.assertFalse(can_delete_task(task, self.bob))

    def test_legacy_tasks_are_open_under_permissive_policy(self):
        task = {"id": "t1", "title": "Legacy"}
        self.assertTrue(can_delete_task(task, self.bob, legacy_policy="permissive"))
        self.assertTrue(can_edit_task(task, self.bob, legacy_policy="permissive"))
        self.assertTrue(can_toggle_task_completion(task, self.bob, legacy_policy="permissive"))

    def test_legacy_tasks_are_locked_under_deny_policy(self):
        task = {"id": "t1", "title": "Legacy", "assignee": "u-bob"}
        self.assertFalse(can_delete_task(task, self.alice, legacy_policy="deny"))
        self.assertFalse(can_edit_task(task, self.bob, legacy_policy="deny"))
        self.assertTrue(can_toggle_task_completion(task, self.bob, legacy_policy="deny"))

    def test_anonymous_actor_has_no_rights_on_authored_tasks(self):
        anonymous = ActorIdentity()
        task = {"id": "t1", "title": "Call", "createdBy": "u-alice", "assignee": "u-alice"}
        self.assertTrue(anonymous.is_anonymous())
        self.assertFalse(can_delete_task(task, anonymous))
        self.assertFalse(can_toggle_task_completion(task, anonymous))

    def test_label_prefers_email(self):
        self.assertEqual(self.alice.label, "alice@example.com")
        self.assertEqual(ActorIdentity(user_id="u-9").label, "u-9")


if __name__ == "__main__":
    unittest.main()
