import json
import os
import unittest
from datetime import datetime
from unittest import mock

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AUTH_SESSION_SECRET", "test-secret")

import azure.functions as func

import appointment_endpoints
import opportunity_endpoints as endpoints
import reminder_endpoints
from crm_http import dispatch, run_handler
from crm_shared import issue_session_token
from services.crm_rbac import ActorIdentity
from services.crm_session import CRMSession, get_session, reset_sessions_for_tests
from services.crm_store import GatewayError, MemoryDocumentStore, set_document_store


def _request(method="GET", *, body=None, params=None, route_params=None, headers=None):
    return func.HttpRequest(
        method=method,
        url="/api/crm/test",
        headers=headers or {},
        params=params or {},
        route_params=route_params or {},
        body=json.dumps(body).encode("utf-8") if body is not None else b"",
    )


def _payload(response):
    return json.loads(response.get_body().decode("utf-8"))


class OpportunityHandlerTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryDocumentStore(workspace_id="ws-test")
        self.alice = CRMSession(ActorIdentity(user_id="1", email="alice@example.com"), self.store)
        self.bob = CRMSession(ActorIdentity(user_id="2", email="bob@example.com"), self.store)

    def _call(self, handler, session, method="GET", **kwargs):
        req = _request(method, **kwargs)
        body = kwargs.get("body") or {}
        return run_handler(handler, req, body, session, {})

    def _create(self, session=None, **fields):
        fields.setdefault("name", "Website")
        response = self._call(endpoints._handle_opportunities, session or self.alice, "POST", body=fields)
        self.assertEqual(response.status_code, 201)
        return _payload(response)["item"]

    def test_create_and_list(self):
        created = self._create(stage="16", value=250)
        response = self._call(endpoints._handle_opportunities, self.alice)
        payload = _payload(response)
        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["id"] for item in payload["items"]], [created["id"]])
        self.assertFalse(payload["hasMore"])

    def test_validation_error_maps_to_400(self):
        response = self._call(endpoints._handle_opportunities, self.alice, "POST", body={"value": -5, "name": "x"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(_payload(response)["code"], "validation_error")

    def test_task_permission_error_maps_to_403_with_details(self):
        created = self._create(tasks=[{"id": "t1", "title": "Call client"}])
        response = self._call(
            endpoints._handle_opportunity_detail,
            self.bob,
            "PATCH",
            body={"tasks": []},
            route_params={"opportunity_id": created["id"]},
        )
        payload = _payload(response)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(payload["code"], "task_permission_denied")
        self.assertEqual(payload["details"], {"action": "delete", "taskId": "t1", "taskTitle": "Call client"})

    def test_missing_opportunity_maps_to_404(self):
        response = self._call(
            endpoints._handle_opportunity_detail,
            self.alice,
            "DELETE",
            route_params={"opportunity_id": "missing"},
        )
        self.assertEqual(response.status_code, 404)

    def test_gateway_failure_maps_to_502(self):
        def failing(req, body, session, cors):
            raise GatewayError("table storage down")

        with self.assertLogs("crm_http", level="ERROR"):
            response = run_handler(failing, _request(), {}, self.alice, {})
        self.assertEqual(response.status_code, 502)
        self.assertEqual(_payload(response)["code"], "storage_error")

    def test_stage_move_returns_counts(self):
        created = self._create(stage="20")
        response = self._call(
            endpoints._handle_stage_move,
            self.alice,
            "POST",
            body={"stage": "10"},
            route_params={"opportunity_id": created["id"]},
        )
        payload = _payload(response)
        self.assertEqual(payload["item"]["status"], "Won")
        self.assertEqual(payload["stageCounts"]["10"]["count"], 1)

    def test_stage_page_sets_cursor_header(self):
        for index in range(12):
            self._create(name=f"Deal {index}", stage="16")
        response = self._call(endpoints._handle_stage_opportunities, self.alice, route_params={"stage_id": "16"})
        payload = _payload(response)
        self.assertEqual(len(payload["items"]), 10)
        self.assertTrue(payload["hasMore"])
        self.assertIn("X-Next-Cursor", response.headers)
        more = self._call(
            endpoints._handle_stage_opportunities,
            self.alice,
            params={"more": "true"},
            route_params={"stage_id": "16"},
        )
        self.assertEqual(len(_payload(more)["items"]), 2)
        self.assertEqual(_payload(more)["loaded"], 12)

    def test_bulk_delete_requires_id_list(self):
        response = self._call(endpoints._handle_bulk_delete, self.alice, "POST", body={"ids": "abc"})
        self.assertEqual(response.status_code, 400)

    def test_stages_and_rename(self):
        response = self._call(endpoints._handle_stage_rename, self.alice, "PATCH", body={"title": "Closed Won"}, route_params={"stage_id": "10"})
        titles = {stage["id"]: stage["title"] for stage in _payload(response)["items"]}
        self.assertEqual(titles["10"], "Closed Won")
        listed = self._call(endpoints._handle_stages, self.bob)
        self.assertIn({"id": "10", "title": "Closed Won", "color": "#1ea34f"}, _payload(listed)["items"])

    def test_dashboard_days_parameter(self):
        self._create(status="Won")
        response = self._call(endpoints._handle_dashboard, self.alice, params={"days": "7"})
        self.assertEqual(_payload(response)["conversionRate"], 100.0)

    def test_my_tasks(self):
        self._create(tasks=[{"title": "Call", "assignee": "bob@example.com"}])
        response = self._call(endpoints._handle_my_tasks, self.bob)
        self.assertEqual([task["title"] for task in _payload(response)["items"]], ["Call"])

    def test_reset_tasks_requires_admin_secret(self):
        created = self._create(tasks=[{"id": "t1", "title": "Call client"}])
        with mock.patch.dict(os.environ, {"CRM_ADMIN_SECRET": "s3cret"}):
            refused = self._call(endpoints._handle_reset_tasks, self.alice, "POST")
            wrong = self._call(endpoints._handle_reset_tasks, self.alice, "POST", headers={"X-CRM-Admin-Secret": "nope"})
            accepted = self._call(endpoints._handle_reset_tasks, self.alice, "POST", headers={"X-CRM-Admin-Secret": "s3cret"})
        self.assertEqual(refused.status_code, 403)
        self.assertEqual(wrong.status_code, 403)
        self.assertEqual(accepted.status_code, 200)
        self.assertEqual(_payload(accepted), {"reset": 1})
        self.assertEqual(self.store.get("opportunities", created["id"])["tasks"], [])

    def test_reset_tasks_is_closed_without_configured_secret(self):
        with mock.patch("crm_http.get_admin_secret", return_value=None):
            response = self._call(endpoints._handle_reset_tasks, self.alice, "POST", headers={"X-CRM-Admin-Secret": ""})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(_payload(response)["code"], "forbidden")


class AppointmentHandlerTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryDocumentStore(workspace_id="ws-test")
        self.alice = CRMSession(ActorIdentity(user_id="1", email="alice@example.com"), self.store)

    def _call(self, handler, method="GET", **kwargs):
        req = _request(method, **kwargs)
        return run_handler(handler, req, kwargs.get("body") or {}, self.alice, {})

    def test_created_appointment_is_assigned_to_the_actor_and_fires_a_reminder(self):
        created = self._call(
            appointment_endpoints._handle_appointments,
            "POST",
            body={"title": "Site visit", "date": "2026-03-15", "time": "10:30"},
        )
        self.assertEqual(created.status_code, 201)
        item = _payload(created)["item"]
        self.assertEqual(item["assignedTo"], "alice@example.com")
        fired = self.alice.scan_reminders(now=datetime(2026, 3, 15, 10, 30, 5))
        self.assertEqual([reminder.entity_id for reminder in fired], [item["id"]])

    def test_list_update_and_delete(self):
        self.store.create("appointments", {"id": "a2", "title": "Later", "date": "2026-03-20", "time": "09:00", "assignedTo": "bob@example.com"})
        self.store.create("appointments", {"id": "a1", "title": "Sooner", "date": "2026-03-16", "time": "09:00", "assignedTo": "1"})
        listed = _payload(self._call(appointment_endpoints._handle_appointments))["items"]
        self.assertEqual([item["id"] for item in listed], ["a1", "a2"])
        mine = _payload(self._call(appointment_endpoints._handle_appointments, params={"mine": "1"}))["items"]
        self.assertEqual([item["id"] for item in mine], ["a1"])

        moved = self._call(
            appointment_endpoints._handle_appointment_detail,
            "PATCH",
            body={"time": "11:15"},
            route_params={"appointment_id": "a1"},
        )
        self.assertEqual(_payload(moved)["item"]["time"], "11:15")

        deleted = self._call(appointment_endpoints._handle_appointment_detail, "DELETE", route_params={"appointment_id": "a1"})
        self.assertEqual(deleted.status_code, 200)
        missing = self._call(appointment_endpoints._handle_appointment_detail, "DELETE", route_params={"appointment_id": "a1"})
        self.assertEqual(missing.status_code, 404)

    def test_invalid_time_maps_to_400(self):
        response = self._call(
            appointment_endpoints._handle_appointments,
            "POST",
            body={"title": "Call", "date": "2026-03-15", "time": "25:00"},
        )
        self.assertEqual(response.status_code, 400)


class DispatchTests(unittest.TestCase):
    def setUp(self):
        reset_sessions_for_tests()
        set_document_store(MemoryDocumentStore(workspace_id="default"))
        self.addCleanup(set_document_store, None)
        self.addCleanup(reset_sessions_for_tests)

    def test_options_preflight(self):
        response = dispatch(_request("OPTIONS"), ["GET"], endpoints._handle_opportunities)
        self.assertEqual(response.status_code, 204)

    def test_missing_token_is_unauthorized(self):
        response = dispatch(_request("GET"), ["GET"], endpoints._handle_opportunities)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(_payload(response)["code"], "auth_required")

    def test_valid_token_resolves_actor_and_session(self):
        token, _ = issue_session_token("Carol@Example.com", workspace_id="default")
        headers = {"Authorization": f"Bearer {token}"}
        created = dispatch(
            _request("POST", body={"name": "Website", "tasks": [{"title": "Call"}]}, headers=headers),
            ["GET", "POST"],
            endpoints._handle_opportunities,
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(_payload(created)["item"]["tasks"][0]["createdBy"], "carol@example.com")

    def test_mismatched_email_header_is_rejected(self):
        token, _ = issue_session_token("carol@example.com", workspace_id="default")
        headers = {"Authorization": f"Bearer {token}", "x-user-email": "mallory@example.com"}
        response = dispatch(_request("GET", headers=headers), ["GET"], endpoints._handle_opportunities)
        self.assertEqual(response.status_code, 401)


class ReminderEndpointTests(unittest.TestCase):
    def setUp(self):
        reset_sessions_for_tests()
        self.addCleanup(reset_sessions_for_tests)

    def test_scan_all_sessions_counts_failures(self):
        store = MemoryDocumentStore(workspace_id="ws-test")
        healthy = get_session(ActorIdentity(email="alice@example.com"), store)
        broken = get_session(ActorIdentity(email="bob@example.com"), store)
        store.create("opportunities", {"id": "o1", "name": "Website", "followUpDate": healthy.reminders.now().date().isoformat()})
        with mock.patch.object(broken, "scan_reminders", side_effect=GatewayError("down")):
            with self.assertLogs("reminder_endpoints", level="ERROR"):
                summary = reminder_endpoints.scan_all_sessions()
        self.assertEqual(summary, {"sessions": 2, "fired": 1, "failed": 1})

    def test_schedule_expression(self):
        self.assertEqual(reminder_endpoints._reminder_schedule(30), "*/30 * * * * *")
        self.assertEqual(reminder_endpoints._reminder_schedule(300), "0 */5 * * * *")


if __name__ == "__main__":
    unittest.main()
