"""
Pipeline board: stages, prospects, the demo-gated stage move and analytics.

Prospects are ordered per stage by ``stageOrder``. Their stage and order only
change through the reassignment engine, so the PATCH sanitizer here rejects
both fields.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from azure.core.exceptions import AzureError

from org_shared import OrgActor
from services.crm_store import EntityNotFoundError, delete_entity, get_entity, list_entities, update_entity, utc_now_iso
from services.ordered_store import (
    PROSPECTS,
    MoveOutcome,
    commit_reassignment,
    insert_ordered,
    load_items,
    ordered_rows,
)
from services.org_rbac import PROSPECT_MUTABLE_FIELDS, PROSPECT_ORDERING_FIELDS
from services.reorder import Move, OrderedItem, Reassignment, compute_reassignment

logger = logging.getLogger(__name__)

PIPELINE_STAGES = [
    "not_contacted",
    "cold_called",
    "first_demo",
    "second_demo",
    "offer_sent",
    "offer_accepted",
    "offer_rejected",
]
STAGE_LABELS = {
    "not_contacted": "Not Contacted",
    "cold_called": "Cold Called",
    "first_demo": "First Demo",
    "second_demo": "Second Demo",
    "offer_sent": "Offer Sent",
    "offer_accepted": "Offer Accepted",
    "offer_rejected": "Offer Rejected",
}
DEMO_STAGES = {"first_demo", "second_demo"}
WON_STAGE = "offer_accepted"
LOST_STAGE = "offer_rejected"

PRIORITIES = ["high", "medium", "low"]
LEAD_SOURCES = ["cold_outreach", "inbound", "referral", "linkedin", "website", "event", "other"]


def normalize_stage(value: Any) -> Optional[str]:
    stage = str(value or "").strip().lower()
    return stage if stage in PIPELINE_STAGES else None


def requires_demo(source_stage: Optional[str], dest_stage: Optional[str]) -> bool:
    return dest_stage in DEMO_STAGES and dest_stage != source_stage


def _clean_text(value: Any, max_len: int = 500) -> Optional[str]:
    text = str(value or "").strip()
    return text[:max_len] if text else None


def sanitize_prospect_payload(body: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    """
    Whitelist and normalize prospect fields. Raises ValueError on a bad value,
    or when a partial update tries to change stage or order.
    """
    if partial:
        blocked = sorted(PROSPECT_ORDERING_FIELDS.intersection(body.keys()))
        if blocked:
            raise ValueError(f"{', '.join(blocked)} can only change through a pipeline move")
    out: Dict[str, Any] = {}
    for key in PROSPECT_MUTABLE_FIELDS:
        if key not in body:
            continue
        out[key] = _clean_text(body.get(key), max_len=2000 if key == "notes" else 500)
    if "email" in out and out["email"]:
        out["email"] = out["email"].lower()
    if "priority" in out:
        priority = (out["priority"] or "medium").lower()
        if priority not in PRIORITIES:
            raise ValueError("priority must be one of high, medium, low")
        out["priority"] = priority
    if "leadSource" in out:
        source = (out["leadSource"] or "other").lower()
        if source not in LEAD_SOURCES:
            raise ValueError(f"leadSource must be one of {', '.join(LEAD_SOURCES)}")
        out["leadSource"] = source
    if "responsiblePerson" in out and out["responsiblePerson"]:
        out["responsiblePerson"] = out["responsiblePerson"].lower()
    if not partial:
        if not out.get("name"):
            raise ValueError("name is required")
        out.setdefault("priority", "medium")
        out.setdefault("leadSource", "other")
    elif "name" in out and not out["name"]:
        raise ValueError("name cannot be empty")
    return out


def create_prospect(actor: OrgActor, body: Dict[str, Any]) -> Dict[str, Any]:
    payload = sanitize_prospect_payload(body)
    stage = normalize_stage(body.get("pipelineStage")) if body.get("pipelineStage") else "not_contacted"
    if stage is None:
        raise ValueError("pipelineStage is not a known stage")
    payload.update(
        {
            "pipelineStage": stage,
            "organizationId": actor.organization_id,
            "createdBy": actor.user_id,
        }
    )
    created = insert_ordered(PROSPECTS, actor.tenant_id, payload)
    logger.info("Prospect %s created in %s for org %s", created.get("id"), stage, actor.slug)
    return created


def get_prospect(tenant_id: str, prospect_id: str) -> Optional[Dict[str, Any]]:
    return get_entity("prospects", tenant_id, prospect_id)


def update_prospect(tenant_id: str, prospect_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    updates = sanitize_prospect_payload(body, partial=True)
    if not updates:
        raise ValueError("no valid fields to update")
    return update_entity("prospects", tenant_id, prospect_id, updates)


def delete_prospect(tenant_id: str, prospect_id: str) -> bool:
    return delete_entity("prospects", tenant_id, prospect_id)


def build_board(items: Iterable[OrderedItem]) -> List[Dict[str, Any]]:
    """One column per stage, prospects in display order. Unknown stages are dropped."""
    materialized = list(items)
    columns: List[Dict[str, Any]] = []
    for stage in PIPELINE_STAGES:
        rows = ordered_rows(PROSPECTS, materialized, stage)
        columns.append({"id": stage, "title": STAGE_LABELS[stage], "count": len(rows), "prospects": rows})
    return columns


def load_board(tenant_id: str) -> List[Dict[str, Any]]:
    return build_board(load_items(PROSPECTS, tenant_id))


class StageMoveGate:
    """
    A stage move held back until its companion step succeeds.

    The optimistic board is available immediately through ``preview``. Moves
    into a demo stage persist only after ``confirm`` ran the companion
    (scheduling the demo); ``cancel`` drops the optimistic result and returns
    the stored board.
    """

    def __init__(self, tenant_id: str, move: Move, *, items: Optional[List[OrderedItem]] = None):
        self.tenant_id = tenant_id
        self.move = move
        self.before = items if items is not None else load_items(PROSPECTS, tenant_id)
        self.result: Reassignment = compute_reassignment(self.before, move)
        self.state = "pending"

    @property
    def invalid(self) -> Optional[str]:
        return self.result.invalid

    @property
    def preview(self) -> List[OrderedItem]:
        return self.result.items

    @property
    def moved(self) -> Optional[OrderedItem]:
        return self.result.moved

    @property
    def needs_confirmation(self) -> bool:
        if not self.result.changed:
            return False
        return requires_demo(self.move.source_bucket, self.move.dest_bucket)

    def confirm(
        self,
        companion: Optional[Callable[[OrderedItem], Any]] = None,
        rollback: Optional[Callable[[OrderedItem], Any]] = None,
    ) -> MoveOutcome:
        """
        Run the companion step, then persist the move. When the commit raises
        after the companion ran, ``rollback`` undoes the companion's side
        effects before the error propagates; the gate stays pending.
        """
        if self.state != "pending":
            raise RuntimeError(f"stage move already {self.state}")
        ran_companion = False
        if self.needs_confirmation:
            if companion is None:
                raise ValueError(f"moving into {self.move.dest_bucket} requires a scheduled demo")
            # A raising companion leaves the gate pending with nothing written.
            companion(self.result.moved)
            ran_companion = True
        try:
            outcome = commit_reassignment(PROSPECTS, self.tenant_id, self.result)
        except Exception:
            if ran_companion and rollback is not None:
                rollback(self.result.moved)
            raise
        self.state = "committed"
        if self.result.moved is not None and not outcome.reloaded:
            _touch_last_activity(self.tenant_id, self.result.moved.id)
        return outcome

    def cancel(self) -> List[OrderedItem]:
        if self.state == "committed":
            raise RuntimeError("stage move already committed")
        self.state = "cancelled"
        return load_items(PROSPECTS, self.tenant_id)


def begin_stage_move(tenant_id: str, move: Move, *, items: Optional[List[OrderedItem]] = None) -> StageMoveGate:
    for stage in (move.source_bucket, move.dest_bucket):
        if stage is not None and normalize_stage(stage) is None:
            raise ValueError(f"unknown pipeline stage: {stage}")
    normalized = Move(
        item_id=move.item_id,
        source_bucket=normalize_stage(move.source_bucket) if move.source_bucket is not None else None,
        source_index=move.source_index,
        dest_bucket=normalize_stage(move.dest_bucket) if move.dest_bucket is not None else None,
        dest_index=move.dest_index,
    )
    return StageMoveGate(tenant_id, normalized, items=items)


def _touch_last_activity(tenant_id: str, prospect_id: str) -> None:
    try:
        update_entity("prospects", tenant_id, prospect_id, {"lastActivityDate": utc_now_iso()})
    except (EntityNotFoundError, AzureError) as exc:
        logger.warning("Could not stamp last activity on prospect %s: %s", prospect_id, exc)


def pipeline_summary(rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    by_stage = {stage: 0 for stage in PIPELINE_STAGES}
    total = 0
    for row in rows:
        total += 1
        stage = normalize_stage(row.get("pipelineStage"))
        if stage:
            by_stage[stage] += 1
    won = by_stage[WON_STAGE]
    lost = by_stage[LOST_STAGE]
    closed = won + lost
    conversion = round(won / closed * 100, 1) if closed else 0
    return {
        "total": total,
        "byStage": [
            {"stage": stage, "label": STAGE_LABELS[stage], "count": by_stage[stage]} for stage in PIPELINE_STAGES
        ],
        "active": total - closed,
        "won": won,
        "lost": lost,
        "conversionRate": conversion,
    }


def load_summary(tenant_id: str) -> Dict[str, Any]:
    return pipeline_summary(list_entities("prospects", tenant_id))
