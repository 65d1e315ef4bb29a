from __future__ import annotations

from typing import Any, Dict, List, Optional

import azure.functions as func

from function_app import app
from crm_http import dispatch, json_response, query_flag, verify_admin_secret
from services.crm_session import CRMSession
from services.crm_store import RecordNotFoundError
from services.task_guard import CRMPermissionError


MAX_DASHBOARD_DAYS = 365


def _get_days(req: func.HttpRequest, default: int = 30) -> int:
    raw = req.params.get("days")
    try:
        parsed = int(raw) if raw else default
    except ValueError:
        parsed = default
    return max(0, min(MAX_DASHBOARD_DAYS, parsed))


def _id_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        raise ValueError("ids must be a list")
    return [str(item).strip() for item in value if str(item or "").strip()]


def _page_response(
    records: List[Dict[str, Any]],
    *,
    cursor: Optional[str],
    has_more: bool,
    loaded: int,
    cors: Dict[str, str],
) -> func.HttpResponse:
    headers = dict(cors)
    if cursor:
        headers["X-Next-Cursor"] = cursor
    return json_response({"items": records, "hasMore": has_more, "loaded": loaded}, status_code=200, cors=headers)


# Handlers -----------------------------------------------------------------


def _handle_opportunities(req, body, session: CRMSession, cors):
    service = session.opportunities
    if req.method == "GET":
        records = service.load_more_opportunities() if query_flag(req, "more") else service.fetch_opportunities()
        state = service.cache.flat_state()
        return _page_response(records, cursor=state.cursor, has_more=state.has_more, loaded=len(service.cache), cors=cors)
    created = service.add_opportunity(body)
    return json_response({"item": created}, status_code=201, cors=cors)


def _handle_opportunity_detail(req, body, session: CRMSession, cors):
    service = session.opportunities
    opportunity_id = str(req.route_params.get("opportunity_id") or "").strip()
    if not opportunity_id:
        raise ValueError("opportunity id is required")
    if req.method == "GET":
        return json_response({"item": service.get_opportunity(opportunity_id)}, status_code=200, cors=cors)
    if req.method == "DELETE":
        result = service.delete_opportunity(opportunity_id)
        if not result["deleted"]:
            raise RecordNotFoundError("opportunities", opportunity_id)
        return json_response({"deleted": True, "contactsDeleted": result["contactsDeleted"]}, status_code=200, cors=cors)
    updated = service.update_opportunity(opportunity_id, body)
    return json_response({"item": updated}, status_code=200, cors=cors)


def _handle_stage_move(req, body, session: CRMSession, cors):
    opportunity_id = str(req.route_params.get("opportunity_id") or "").strip()
    moved = session.opportunities.move_opportunity_stage(opportunity_id, body.get("stage"))
    return json_response(
        {"item": moved, "stageCounts": session.opportunities.cache.stage_counts},
        status_code=200,
        cors=cors,
    )


def _handle_follow_up_read(req, body, session: CRMSession, cors):
    opportunity_id = str(req.route_params.get("opportunity_id") or "").strip()
    return json_response({"item": session.opportunities.mark_follow_up_read(opportunity_id)}, status_code=200, cors=cors)


def _handle_bulk_delete(req, body, session: CRMSession, cors):
    result = session.opportunities.bulk_delete_opportunities(_id_list(body.get("ids")))
    return json_response(result, status_code=200, cors=cors)


def _handle_bulk_tags(req, body, session: CRMSession, cors):
    saved = session.opportunities.bulk_add_tags(_id_list(body.get("ids")), body.get("tags"))
    return json_response({"items": saved}, status_code=200, cors=cors)


def _handle_dedupe(req, body, session: CRMSession, cors):
    return json_response(session.opportunities.remove_duplicate_opportunities(), status_code=200, cors=cors)


def _handle_stage_opportunities(req, body, session: CRMSession, cors):
    service = session.opportunities
    stage_id = str(req.route_params.get("stage_id") or "").strip()
    if not stage_id:
        raise ValueError("stage id is required")
    if query_flag(req, "more"):
        records = service.load_more_by_stage(stage_id)
    else:
        records = service.fetch_opportunities_by_stage(stage_id)
    state = service.cache.stage_state(stage_id)
    return _page_response(
        records,
        cursor=state.cursor,
        has_more=state.has_more,
        loaded=len(service.cache.by_stage(stage_id)),
        cors=cors,
    )


def _handle_stages(req, body, session: CRMSession, cors):
    service = session.opportunities
    if req.method == "GET":
        return json_response({"items": service.get_stages()}, status_code=200, cors=cors)
    if "order" in body:
        stages = service.reorder_stages(body.get("order"))
    else:
        stages = service.save_stages(body.get("stages"))
    return json_response({"items": stages}, status_code=200, cors=cors)


def _handle_stage_rename(req, body, session: CRMSession, cors):
    stage_id = str(req.route_params.get("stage_id") or "").strip()
    stages = session.opportunities.rename_stage(stage_id, body.get("title"))
    return json_response({"items": stages}, status_code=200, cors=cors)


def _handle_stage_counts(req, body, session: CRMSession, cors):
    return json_response({"counts": session.opportunities.fetch_stage_counts()}, status_code=200, cors=cors)


def _handle_dashboard(req, body, session: CRMSession, cors):
    stats = session.opportunities.fetch_dashboard_stats(days_back=_get_days(req))
    return json_response(stats, status_code=200, cors=cors)


def _handle_my_tasks(req, body, session: CRMSession, cors):
    return json_response({"items": session.opportunities.list_my_tasks()}, status_code=200, cors=cors)


def _handle_task_visibility(req, body, session: CRMSession, cors):
    return json_response(session.opportunities.task_visibility(), status_code=200, cors=cors)


def _handle_reset_tasks(req, body, session: CRMSession, cors):
    if not verify_admin_secret(req):
        raise CRMPermissionError("admin secret required")
    return json_response({"reset": session.opportunities.reset_all_tasks()}, status_code=200, cors=cors)


def _handle_contact_delete(req, body, session: CRMSession, cors):
    contact_id = str(req.route_params.get("contact_id") or "").strip()
    if not contact_id:
        raise ValueError("contact id is required")
    return json_response(session.opportunities.delete_contact(contact_id), status_code=200, cors=cors)


# Routes -------------------------------------------------------------------


@app.function_name(name="CrmOpportunities")
@app.route(route="crm/opportunities", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_opportunities(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "POST", "OPTIONS"], _handle_opportunities)


@app.function_name(name="CrmOpportunitiesBulkDelete")
@app.route(route="crm/opportunities/bulk-delete", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_opportunities_bulk_delete(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["POST", "OPTIONS"], _handle_bulk_delete)


@app.function_name(name="CrmOpportunitiesBulkTags")
@app.route(route="crm/opportunities/bulk-tags", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_opportunities_bulk_tags(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["POST", "OPTIONS"], _handle_bulk_tags)


@app.function_name(name="CrmOpportunitiesDedupe")
@app.route(route="crm/opportunities/dedupe", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_opportunities_dedupe(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["POST", "OPTIONS"], _handle_dedupe)


@app.function_name(name="CrmOpportunityDetail")
@app.route(
    route="crm/opportunities/{opportunity_id}",
    methods=["GET", "PATCH", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def crm_opportunity_detail(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "PATCH", "DELETE", "OPTIONS"], _handle_opportunity_detail)


@app.function_name(name="CrmOpportunityStage")
@app.route(route="crm/opportunities/{opportunity_id}/stage", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_opportunity_stage(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["POST", "OPTIONS"], _handle_stage_move)


@app.function_name(name="CrmOpportunityFollowUpRead")
@app.route(
    route="crm/opportunities/{opportunity_id}/follow-up-read",
    methods=["POST", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def crm_opportunity_follow_up_read(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["POST", "OPTIONS"], _handle_follow_up_read)


@app.function_name(name="CrmStageOpportunities")
@app.route(route="crm/stages/{stage_id}/opportunities", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_stage_opportunities(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "OPTIONS"], _handle_stage_opportunities)


@app.function_name(name="CrmStages")
@app.route(route="crm/stages", methods=["GET", "PUT", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_stages(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "PUT", "OPTIONS"], _handle_stages)


@app.function_name(name="CrmStageDetail")
@app.route(route="crm/stages/{stage_id}", methods=["PATCH", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_stage_detail(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["PATCH", "OPTIONS"], _handle_stage_rename)


@app.function_name(name="CrmStageCounts")
@app.route(route="crm/stage-counts", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_stage_counts(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "OPTIONS"], _handle_stage_counts)


@app.function_name(name="CrmDashboard")
@app.route(route="crm/dashboard", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_dashboard(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "OPTIONS"], _handle_dashboard)


@app.function_name(name="CrmMyTasks")
@app.route(route="crm/my-tasks", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_my_tasks(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "OPTIONS"], _handle_my_tasks)


@app.function_name(name="CrmTaskVisibility")
@app.route(route="crm/task-visibility", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_task_visibility(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "OPTIONS"], _handle_task_visibility)


@app.function_name(name="CrmContactDelete")
@app.route(route="crm/contacts/{contact_id}", methods=["DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_contact_delete(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["DELETE", "OPTIONS"], _handle_contact_delete)


@app.function_name(name="CrmTasksReset")
@app.route(route="crm/admin/reset-tasks", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_tasks_reset(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["POST", "OPTIONS"], _handle_reset_tasks)
