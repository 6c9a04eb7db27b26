import azure.functions as func

from shared.db import init_db

# Creates the organization tables on first start of the Functions host.
init_db()

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import health_endpoints  # noqa
import pipeline_endpoints  # noqa
import todos_endpoints  # noqa
import calendar_endpoints  # noqa
import public_demo_endpoints  # noqa
