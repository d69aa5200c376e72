"""Minimal deterministic OpenAPI spec builder.

Paths come from a static route table (method, path, summary, capability hint,
response codes); list endpoints get the shared pagination/sort parameters and the
caching headers. This is the canonical builder; `repairdesk/openapi.py` re-exports it.
"""
from typing import Any, Dict, List, Tuple
from .models.repair_ticket import RepairTicket, FlowStage

__all__ = ["build_openapi_spec", "ROUTES"]

# (method, path, summary, capabilities hint, response codes)
ROUTES: List[Tuple[str, str, str, List[str], List[str]]] = [
    ("post", "/iam/auth/login", "Login", [], ["200", "400", "401"]),
    ("get", "/iam/auth/me", "Current user with resolved capabilities", [], ["200", "401"]),
    ("get", "/iam/users", "List users", [], ["200"]),
    ("post", "/iam/users", "Create user", ["manage_settings"], ["201", "400", "403"]),
    ("put", "/iam/users/{user_id}/permissions", "Edit user flags, role and department", ["manage_settings"], ["200", "400", "403", "404", "409"]),
    ("get", "/departments", "List departments", [], ["200"]),
    ("post", "/departments", "Create department", ["manage_settings"], ["201", "400", "403"]),
    ("put", "/departments/{department_id}", "Update department", ["manage_settings"], ["200", "400", "403", "404"]),
    ("put", "/departments/{department_id}/monitor", "Set department monitor", ["admin"], ["200", "400", "403", "404"]),
    ("get", "/repairs/tickets", "List tickets", [], ["200", "304", "400"]),
    ("head", "/repairs/tickets", "List tickets (headers only)", [], ["200", "304"]),
    ("post", "/repairs/tickets", "Create ticket", ["intake", "edit_any"], ["201", "400", "403"]),
    ("get", "/repairs/tickets/{ticket_id}", "Get ticket", [], ["200", "304", "403", "404"]),
    ("head", "/repairs/tickets/{ticket_id}", "Get ticket (headers only)", [], ["200", "304", "403", "404"]),
    ("put", "/repairs/tickets/{ticket_id}", "Update ticket fields and/or status", [], ["200", "400", "403", "404", "409"]),
    ("delete", "/repairs/tickets/{ticket_id}", "Delete ticket", ["delete"], ["200", "403", "404"]),
    ("put", "/repairs/tickets/{ticket_id}/assign-technician", "Assign technician to the active stage", [], ["200", "400", "403", "404", "409"]),
    ("put", "/repairs/tickets/{ticket_id}/complete-step", "Complete the active stage", [], ["200", "400", "403", "404", "409"]),
    ("put", "/repairs/tickets/{ticket_id}/move-next", "Route the ticket to the next department", [], ["200", "400", "403", "404", "409"]),
    ("get", "/repairs/tickets/{ticket_id}/timeline", "Flow, capability flags and event log", [], ["200", "403", "404"]),
    ("post", "/repairs/tickets/{ticket_id}/public-tracking", "Configure public tracking", ["admin"], ["200", "403", "404"]),
    ("get", "/public/repairs/{token}", "Public tracking view", [], ["200", "404"]),
    ("get", "/notifications", "My notifications", [], ["200"]),
    ("get", "/notifications/unread-count", "Unread notification count", [], ["200"]),
    ("put", "/notifications/{notification_id}/read", "Mark notification read", [], ["200", "404"]),
    ("post", "/notifications/mark-all-read", "Mark all notifications read", [], ["200"]),
    ("delete", "/notifications/clear", "Clear notifications", [], ["200"]),
    ("post", "/notifications/push/subscribe", "Register push subscription", [], ["201", "400"]),
    ("post", "/notifications/push/unsubscribe", "Remove push subscription", [], ["200", "400"]),
    ("get", "/healthz", "Health check", [], ["200"]),
]

PUBLIC_PATHS = {"/iam/auth/login", "/public/repairs/{token}", "/healthz"}
LIST_PATHS = {"/repairs/tickets", "/iam/users"}

DESCRIPTIONS = {
    "200": "OK", "201": "Created", "304": "Not Modified", "400": "Bad Request", "401": "Unauthorized",
    "403": "Forbidden", "404": "Not Found", "409": "Conflict",
}


def caching_headers() -> Dict[str, Any]:
    return {
        "ETag": {"schema": {"type": "string"}},
        "Last-Modified": {"schema": {"type": "string"}},
        "X-Last-Modified-ISO": {"schema": {"type": "string"}},
    }


def _path_params(path: str) -> List[Dict[str, Any]]:
    out = []
    for seg in path.split("/"):
        if seg.startswith("{") and seg.endswith("}"):
            name = seg[1:-1]
            schema = {"type": "string"} if name == "token" else {"type": "integer"}
            out.append({"name": name, "in": "path", "required": True, "schema": schema})
    return out


def _operation(method: str, path: str, summary: str, caps: List[str], codes: List[str]) -> Dict[str, Any]:
    responses: Dict[str, Any] = {}
    for code in codes:
        resp: Dict[str, Any] = {"description": DESCRIPTIONS[code]}
        if int(code) >= 400:
            resp["content"] = {"application/json": {"schema": {"$ref": "#/components/schemas/Error"}}}
        responses[code] = resp
    op: Dict[str, Any] = {"summary": summary, "responses": responses}
    params = _path_params(path)
    if path in LIST_PATHS and method in ("get", "head"):
        params += [
            {"$ref": "#/components/parameters/LimitParam"},
            {"$ref": "#/components/parameters/OffsetParam"},
            {"$ref": "#/components/parameters/SortParam"},
        ]
        responses["200"]["headers"] = caching_headers()
    if params:
        op["parameters"] = params
    if caps:
        op["x-required-capabilities"] = caps
    if path in PUBLIC_PATHS:
        op["security"] = []
    rid = path.strip("/").replace("/", "_").replace("{", "").replace("}", "").replace("-", "_")
    op["operationId"] = f"{method}_{rid}"
    op["tags"] = [path.split("/")[1].capitalize()]
    return op


def build_openapi_spec() -> Dict[str, Any]:
    schemas: Dict[str, Any] = {
        "RepairTicket": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "ticket_number": {"type": "integer"},
                "status": {"type": "string", "enum": list(RepairTicket.ALL_STATUSES)},
                "version": {"type": "integer"},
            },
            "required": ["id", "ticket_number", "status"],
            "x-statuses": list(RepairTicket.ALL_STATUSES),
        },
        "FlowStage": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "position": {"type": "integer"},
                "status": {"type": "string", "enum": list(FlowStage.ALL_STATUSES)},
            },
            "required": ["id", "position", "status"],
            "x-transitions": list(FlowStage.ALL_STATUSES),
        },
        "Pagination": {
            "type": "object",
            "properties": {
                "total": {"type": "integer"},
                "limit": {"type": "integer"},
                "offset": {"type": "integer"},
                "returned": {"type": "integer"},
            },
            "required": ["total", "limit", "offset", "returned"],
        },
        "Error": {
            "type": "object",
            "properties": {
                "error": {
                    "type": "object",
                    "properties": {
                        "status": {"type": "integer"},
                        "title": {"type": "string"},
                        "detail": {"type": "string"},
                        "code": {"type": "string"},
                    },
                }
            },
            "required": ["error"],
        },
    }
    components: Dict[str, Any] = {
        "schemas": schemas,
        "securitySchemes": {"BearerAuth": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}},
        "parameters": {
            "LimitParam": {"name": "limit", "in": "query", "schema": {"type": "integer", "default": 25}},
            "OffsetParam": {"name": "offset", "in": "query", "schema": {"type": "integer", "default": 0}},
            "SortParam": {"name": "sort", "in": "query", "schema": {"type": "string"},
                          "description": "Comma-separated fields, '-' prefix for descending"},
        },
    }

    paths: Dict[str, Any] = {}
    for method, path, summary, caps, codes in ROUTES:
        paths.setdefault(path, {})[method] = _operation(method, path, summary, caps, codes)

    tags = sorted({op["tags"][0] for ops in paths.values() for op in ops.values()})
    return {
        "openapi": "3.0.3",
        "info": {"title": "RepairDesk API", "version": "0.1.0"},
        "paths": paths,
        "components": components,
        "security": [{"BearerAuth": []}],
        "tags": [{"name": t, "description": f"{t} endpoints"} for t in tags],
    }
