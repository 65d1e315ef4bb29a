import azure.functions as func

from function_app import app
from crm_http import json_response
from services.crm_store import get_document_store
from shared.config import is_demo_mode
from utils.cors import build_cors_headers


@app.function_name(name="HealthApi")
@app.route(route="health", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def health_api(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    store = get_document_store()
    return json_response(
        {"status": "ok", "store": store.backend_name, "demoMode": is_demo_mode()},
        status_code=200,
        cors=cors,
    )
