"""Semantic-convention attribute names.

Keys follow the OpenTelemetry naming where one exists so collectors and
dashboards recognise them without remapping.
"""

HTTP_METHOD = "http.method"
HTTP_URL = "http.url"
HTTP_STATUS_CODE = "http.status_code"

DB_OPERATION = "db.operation"
DB_STATEMENT = "db.statement"

USER_ID = "user.id"

ERROR_TYPE = "error.type"
ERROR_MESSAGE = "error.message"

SERVICE_NAME = "service.name"
SERVICE_VERSION = "service.version"
DEPLOYMENT_ENVIRONMENT = "deployment.environment"

TENANT_ID = "tenant.id"
TENANT_NAME = "tenant.name"

SYSTEM_NAME = "system.name"
EVENT_NAME = "event.name"
SOURCE = "source"
