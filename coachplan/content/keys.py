"""Collection paths and document ids.

Document ids are shared with existing stored data and must stay bit-exact:
- client plan content: {clientId}_{programId}_{weekKey}
- client session assignment: {clientId}_{YYYY-MM-DD}_{sessionId}
- client program: {clientId}_{programId}
"""

from datetime import date, datetime

from coachplan.utils.calendar import format_date_for_storage

PLANS = "plans"
CLIENT_PROGRAMS = "client_programs"
CLIENT_PLAN_ASSIGNMENTS = "client_plan_assignments"
CLIENT_PLAN_CONTENT = "client_plan_content"
CLIENT_SESSION_CONTENT = "client_session_content"
CLIENT_SESSIONS = "client_sessions"
USERS = "users"
NUTRITION_ASSIGNMENTS = "nutrition_assignments"
CLIENT_NUTRITION_PLAN_CONTENT = "client_nutrition_plan_content"
AUDIT_EVENTS = "audit_events"
WORKFLOWS = "workflows"


def library_sessions(creator_id: str) -> str:
    return f"creator_libraries/{creator_id}/sessions"


def nutrition_library_plans(creator_id: str) -> str:
    return f"creator_nutrition_library/{creator_id}/plans"


def plan_modules(plan_id: str) -> str:
    return f"{PLANS}/{plan_id}/modules"


def plan_module_sessions(plan_id: str, module_id: str) -> str:
    return f"{PLANS}/{plan_id}/modules/{module_id}/sessions"


def client_plan_content_id(client_id: str, program_id: str, week_key: str) -> str:
    return f"{client_id}_{program_id}_{week_key}"


def client_plan_content_sessions(content_id: str) -> str:
    return f"{CLIENT_PLAN_CONTENT}/{content_id}/sessions"


def client_session_id(client_id: str, session_date: date | datetime | str, session_id: str) -> str:
    date_str = session_date if isinstance(session_date, str) else format_date_for_storage(session_date)
    return f"{client_id}_{date_str}_{session_id}"


def client_program_id(client_id: str, program_id: str) -> str:
    return f"{client_id}_{program_id}"


def plan_assignment_id(client_id: str, program_id: str, week_key: str) -> str:
    return f"{client_id}_{program_id}_{week_key}"


def split_client_plan_content_id(content_id: str) -> tuple[str, str, str] | None:
    """Recover (clientId, programId, weekKey) from a week copy id.

    Only the first two underscores separate fields; week keys never contain one.
    Returns None for ids that do not have three parts.
    """
    parts = content_id.split("_", 2)
    if len(parts) < 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2]


def client_id_from_session_content_id(content_id: str) -> str | None:
    """Client id is the first segment of {clientId}_{dateStr}_{sessionId}."""
    parts = content_id.split("_")
    return parts[0] if len(parts) >= 3 else None
