from __future__ import annotations

import logging
from typing import Any, Dict, List

import azure.functions as func

from function_app import app
from crm_http import dispatch, json_response, query_flag
from services.crm_session import CRMSession, iter_sessions, prune_idle_sessions
from services.crm_store import GatewayError
from shared.config import get_reminder_interval_seconds

logger = logging.getLogger(__name__)


def _reminder_schedule(seconds: int) -> str:
    """NCRONTAB expression (with seconds field) for the scan interval."""
    if seconds < 60:
        return f"*/{seconds} * * * * *"
    return f"0 */{max(1, seconds // 60)} * * * *"


def scan_all_sessions() -> Dict[str, int]:
    sessions = iter_sessions()
    fired = 0
    failed = 0
    for session in sessions:
        try:
            fired += len(session.scan_reminders())
        except GatewayError as exc:
            failed += 1
            logger.error("Reminder scan failed for %s: %s", session.identity.label, exc)
    return {"sessions": len(sessions), "fired": fired, "failed": failed}


def _handle_notifications(req, body, session: CRMSession, cors):
    records = session.store.query_all("notifications", order=("createdAt", "desc"))
    mine: List[Dict[str, Any]] = [item for item in records if session.identity.matches(item.get("userEmail") or item.get("userId"))]
    if query_flag(req, "unread"):
        mine = [item for item in mine if not item.get("read")]
    return json_response({"items": mine}, status_code=200, cors=cors)


def _handle_scan_now(req, body, session: CRMSession, cors):
    fired = session.scan_reminders()
    return json_response({"fired": [item.to_dict() for item in fired]}, status_code=200, cors=cors)


@app.function_name(name="CrmNotifications")
@app.route(route="crm/notifications", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_notifications(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "OPTIONS"], _handle_notifications)


@app.function_name(name="CrmReminderScanNow")
@app.route(route="crm/reminders/scan", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_reminder_scan_now(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["POST", "OPTIONS"], _handle_scan_now)


@app.function_name(name="CrmReminderScan")
@app.timer_trigger(
    schedule=_reminder_schedule(get_reminder_interval_seconds()),
    arg_name="timer",
    run_on_startup=False,
    use_monitor=False,
)
def crm_reminder_scan(timer: func.TimerRequest) -> None:
    if timer.past_due:
        logger.info("CrmReminderScan is running late")
    summary = scan_all_sessions()
    ended = prune_idle_sessions()
    if summary["fired"] or summary["failed"] or ended:
        logger.info(
            "Reminder scan: sessions=%s fired=%s failed=%s idle_ended=%s",
            summary["sessions"],
            summary["fired"],
            summary["failed"],
            ended,
        )
