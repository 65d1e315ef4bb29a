from __future__ import annotations

import azure.functions as func

from function_app import app
from crm_http import dispatch, json_response, query_flag
from services.crm_session import CRMSession


def _handle_appointments(req, body, session: CRMSession, cors):
    service = session.appointments
    if req.method == "GET":
        return json_response({"items": service.list_appointments(mine=query_flag(req, "mine"))}, status_code=200, cors=cors)
    return json_response({"item": service.add_appointment(body)}, status_code=201, cors=cors)


def _handle_appointment_detail(req, body, session: CRMSession, cors):
    appointment_id = str(req.route_params.get("appointment_id") or "").strip()
    if not appointment_id:
        raise ValueError("appointment id is required")
    if req.method == "DELETE":
        session.appointments.delete_appointment(appointment_id)
        return json_response({"deleted": True}, status_code=200, cors=cors)
    updated = session.appointments.update_appointment(appointment_id, body)
    return json_response({"item": updated}, status_code=200, cors=cors)


@app.function_name(name="CrmAppointments")
@app.route(route="crm/appointments", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_appointments(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["GET", "POST", "OPTIONS"], _handle_appointments)


@app.function_name(name="CrmAppointmentDetail")
@app.route(
    route="crm/appointments/{appointment_id}",
    methods=["PATCH", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def crm_appointment_detail(req: func.HttpRequest) -> func.HttpResponse:
    return dispatch(req, ["PATCH", "DELETE", "OPTIONS"], _handle_appointment_detail)
