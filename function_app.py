import logging

import azure.functions as func

from shared.db import init_db

logging.getLogger("azure.core.pipeline.policies.http_logging_policy").setLevel(logging.WARNING)

# Creates the user directory tables once when the Functions host starts.
init_db()

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import opportunity_endpoints  # noqa
import appointment_endpoints  # noqa
import reminder_endpoints  # noqa
import health_endpoints  # noqa
