#!/usr/bin/env python3
from __future__ import annotations

import argparse

from shared.db import Organization, OrganizationMember, SessionLocal, User, init_db


def seed_organization(name: str, slug: str, member_emails: list, admin_email: str | None = None) -> None:
    init_db()
    db = SessionLocal()
    try:
        org = db.query(Organization).filter_by(slug=slug).one_or_none()
        if not org:
            org = Organization(name=name, slug=slug)
            db.add(org)
            db.flush()
        for email in member_emails:
            normalized = email.strip().lower()
            user = db.query(User).filter_by(email=normalized).one_or_none()
            if not user:
                user = User(email=normalized, name=normalized.split("@")[0])
                db.add(user)
                db.flush()
            membership = db.query(OrganizationMember).filter_by(organization_id=org.id, user_id=user.id).one_or_none()
            role = "owner" if admin_email and normalized == admin_email.strip().lower() else "member"
            if not membership:
                db.add(OrganizationMember(organization_id=org.id, user_id=user.id, role=role))
        db.commit()
        print(f"Organization '{slug}' ready with {len(member_emails)} member(s)")
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create an organization and its members")
    parser.add_argument("--name", required=True)
    parser.add_argument("--slug", required=True)
    parser.add_argument("--member", action="append", default=[], help="Member email (repeatable)")
    parser.add_argument("--admin", help="Member email that gets the owner role")
    args = parser.parse_args()
    seed_organization(args.name, args.slug.strip().lower(), args.member, args.admin)


if __name__ == "__main__":
    main()
