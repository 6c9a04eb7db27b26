import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from org_shared import _organizations_for, _resolve_actor_for, system_actor
from services.org_rbac import can_delete_row, can_manage_all, normalize_role
from shared.db import Base, Organization, OrganizationMember, User


class OrgRbacTests(unittest.TestCase):
    def test_owner_and_admin_map_to_admin(self):
        self.assertEqual(normalize_role("owner"), "admin")
        self.assertEqual(normalize_role("ADMIN"), "admin")

    def test_global_admin_overrides_membership(self):
        self.assertEqual(normalize_role("member", "admin"), "admin")

    def test_unknown_role_is_member(self):
        self.assertEqual(normalize_role(None), "member")
        self.assertEqual(normalize_role("viewer", "salesperson"), "member")
        self.assertFalse(can_manage_all("member"))

    def test_members_delete_only_their_own_rows(self):
        row = {"createdBy": "7"}
        self.assertTrue(can_delete_row("member", "7", row))
        self.assertFalse(can_delete_row("member", "8", row))
        self.assertFalse(can_delete_row("member", None, {}))
        self.assertTrue(can_delete_row("admin", "8", row))


class ActorResolutionTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(bind=self.engine)
        Session = sessionmaker(bind=self.engine)
        self.db = Session()

        self.member = User(email="seller@funect.test", role="salesperson")
        self.outsider = User(email="outsider@other.test", role="salesperson")
        self.org = Organization(name="Funect", slug="funect")
        other_org = Organization(name="77 Football", slug="77-football")
        self.db.add_all([self.member, self.outsider, self.org, other_org])
        self.db.flush()
        self.db.add(OrganizationMember(organization_id=self.org.id, user_id=self.member.id, role="member"))
        self.db.add(OrganizationMember(organization_id=other_org.id, user_id=self.outsider.id, role="owner"))
        self.db.commit()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_member_resolves_to_org_actor(self):
        actor = _resolve_actor_for(self.db, " Seller@Funect.test ", "FUNECT")
        self.assertIsNotNone(actor)
        self.assertEqual(actor.organization_id, str(self.org.id))
        self.assertEqual(actor.tenant_id, str(self.org.id))
        self.assertEqual(actor.role, "member")
        self.assertEqual(actor.user_id, str(self.member.id))

    def test_non_member_is_rejected(self):
        self.assertIsNone(_resolve_actor_for(self.db, "outsider@other.test", "funect"))

    def test_unknown_org_or_user(self):
        self.assertIsNone(_resolve_actor_for(self.db, "seller@funect.test", "missing"))
        self.assertIsNone(_resolve_actor_for(self.db, "ghost@funect.test", "funect"))
        self.assertIsNone(_resolve_actor_for(self.db, "", "funect"))

    def test_emails_differing_only_in_case_resolve_to_oldest_user(self):
        self.db.add(User(email="SELLER@funect.test", role="salesperson"))
        self.db.commit()

        orgs = _organizations_for(self.db, "seller@funect.test")
        self.assertEqual([(org["slug"], org["role"]) for org in orgs], [("funect", "member")])
        actor = _resolve_actor_for(self.db, "Seller@Funect.test", "funect")
        self.assertEqual(actor.user_id, str(self.member.id))

    def test_organizations_for_unknown_user(self):
        self.assertEqual(_organizations_for(self.db, "ghost@funect.test"), [])

    def test_system_actor_has_no_user(self):
        actor = system_actor(12, "Funect")
        self.assertEqual(actor.tenant_id, "12")
        self.assertEqual(actor.slug, "funect")
        self.assertIsNone(actor.user_id)


if __name__ == "__main__":
    unittest.main()
