from __future__ import annotations

from typing import Any, Dict

PROSPECT_MUTABLE_FIELDS = {
    "name",
    "type",
    "country",
    "city",
    "email",
    "phone",
    "website",
    "priority",
    "leadSource",
    "responsiblePerson",
    "notes",
    "nextAction",
    "nextActionDate",
    "lastActivityDate",
}
PROSPECT_ORDERING_FIELDS = {"pipelineStage", "stageOrder"}
TODO_MUTABLE_FIELDS = {"title", "description", "completed", "assignedTo", "dueDate"}


def normalize_role(raw_role: str | None, user_role: str | None = None) -> str:
    if str(user_role or "").strip().lower() == "admin":
        # Global admins operate every organization as admins.
        return "admin"
    role = str(raw_role or "").strip().lower()
    if role in {"owner", "admin"}:
        return "admin"
    return "member"


def can_manage_all(role: str) -> bool:
    return role == "admin"


def is_row_owner(actor_user_id: str | None, row: Dict[str, Any]) -> bool:
    owner = str(row.get("createdBy") or row.get("userId") or "").strip()
    return bool(actor_user_id and owner and owner == str(actor_user_id))


def can_delete_row(role: str, actor_user_id: str | None, row: Dict[str, Any]) -> bool:
    if can_manage_all(role):
        return True
    return is_row_owner(actor_user_id, row)
