from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import azure.functions as func
from sqlalchemy import func as sa_func

from shared.db import Organization, OrganizationMember, SessionLocal, User
from services.org_rbac import normalize_role


@dataclass
class OrgActor:
    organization_id: str
    slug: str
    email: str
    role: str
    user_id: Optional[str]

    @property
    def tenant_id(self) -> str:
        return self.organization_id


def _normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def _normalize_slug(value: Any) -> str:
    return str(value or "").strip().lower()


def extract_email(req: func.HttpRequest, body: Optional[dict] = None) -> str:
    body = body or {}
    headers = req.headers or {}
    candidates = [
        headers.get("x-user-email"),
        headers.get("X-User-Email"),
        headers.get("x-ms-client-principal-name"),
        req.params.get("email"),
        body.get("userEmail"),
    ]
    for candidate in candidates:
        normalized = _normalize_email(candidate)
        if normalized:
            return normalized
    return ""


def system_actor(organization_id: Any, slug: str = "") -> OrgActor:
    """Actor used by public flows (website booking, webhooks) that have no signed-in user."""
    return OrgActor(
        organization_id=str(organization_id),
        slug=_normalize_slug(slug),
        email="",
        role="admin",
        user_id=None,
    )


def _find_user(db, email: str) -> Optional[User]:
    """Case-insensitive user lookup; the oldest row wins when e-mails differ only in case."""
    normalized_email = _normalize_email(email)
    if not normalized_email:
        return None
    return (
        db.query(User)
        .filter(sa_func.lower(sa_func.trim(User.email)) == normalized_email)
        .order_by(User.id.asc())
        .first()
    )


def _resolve_actor_for(db, email: str, slug: str) -> Optional[OrgActor]:
    normalized_email = _normalize_email(email)
    normalized_slug = _normalize_slug(slug)
    if not normalized_email or not normalized_slug:
        return None
    user = _find_user(db, normalized_email)
    if not user:
        return None
    org = db.query(Organization).filter(sa_func.lower(Organization.slug) == normalized_slug).one_or_none()
    if not org:
        return None
    membership = (
        db.query(OrganizationMember)
        .filter_by(organization_id=org.id, user_id=user.id)
        .one_or_none()
    )
    if not membership:
        return None
    return OrgActor(
        organization_id=str(org.id),
        slug=org.slug,
        email=normalized_email,
        role=normalize_role(membership.role, user.role),
        user_id=str(user.id),
    )


def resolve_actor(req: func.HttpRequest, body: Optional[dict] = None) -> Optional[OrgActor]:
    email = extract_email(req, body)
    slug = _normalize_slug((req.route_params or {}).get("slug"))
    if not email or not slug:
        return None
    db = SessionLocal()
    try:
        return _resolve_actor_for(db, email, slug)
    finally:
        db.close()


def has_identity(req: func.HttpRequest, body: Optional[dict] = None) -> bool:
    return bool(extract_email(req, body))


def resolve_organization(slug: str) -> Optional[Dict[str, Any]]:
    normalized_slug = _normalize_slug(slug)
    if not normalized_slug:
        return None
    db = SessionLocal()
    try:
        org = db.query(Organization).filter(sa_func.lower(Organization.slug) == normalized_slug).one_or_none()
        if not org:
            return None
        return {"id": str(org.id), "slug": org.slug, "name": org.name, "logoUrl": org.logo_url}
    finally:
        db.close()


def _organizations_for(db, email: str) -> List[Dict[str, Any]]:
    user = _find_user(db, email)
    if not user:
        return []
    rows = (
        db.query(OrganizationMember, Organization)
        .join(Organization, Organization.id == OrganizationMember.organization_id)
        .filter(OrganizationMember.user_id == user.id)
        .order_by(Organization.name.asc())
        .all()
    )
    return [
        {
            "id": str(org.id),
            "slug": org.slug,
            "name": org.name,
            "logoUrl": org.logo_url,
            "role": normalize_role(member.role, user.role),
        }
        for member, org in rows
    ]


def list_user_organizations(email: str) -> List[Dict[str, Any]]:
    if not _normalize_email(email):
        return []
    db = SessionLocal()
    try:
        return _organizations_for(db, email)
    finally:
        db.close()
