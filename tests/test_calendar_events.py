import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock

from org_shared import OrgActor
from services.calendar_events import (
    color_for_person,
    create_demo_event,
    create_event,
    event_position,
    layout_day,
    list_day_events,
    list_events,
    list_month_events,
    list_prospect_demos,
    team_members_for_org,
    update_event,
)
from services.crm_store import EntityNotFoundError, get_entity, reset_memory_store_for_tests
from services.pipeline import create_prospect

ACTOR = OrgActor(organization_id="org-1", slug="funect", email="owner@funect.test", role="admin", user_id="1")
DAY = date(2024, 6, 10)


def _event(event_id, start, end, **extra):
    return {"id": event_id, "startTime": start, "endTime": end, **extra}


class PersonColorTests(unittest.TestCase):
    def test_known_people(self):
        self.assertEqual(color_for_person("veeti"), "#3B82F6")
        self.assertEqual(color_for_person("ALPPA"), "#F97316")
        self.assertEqual(color_for_person("ilari"), "#10B981")

    def test_unknown_falls_back_to_team(self):
        self.assertEqual(color_for_person("someone"), "#A855F7")
        self.assertEqual(color_for_person(None), "#A855F7")

    def test_team_members_per_org(self):
        self.assertEqual([m["value"] for m in team_members_for_org("77-football")], ["team", "ilari", "alppa"])
        self.assertEqual([m["value"] for m in team_members_for_org("unknown-org")], ["team", "alppa"])


class LayoutTests(unittest.TestCase):
    def test_position_is_minutes_since_midnight(self):
        top, height = event_position(_event("e", "2024-06-10T09:30:00Z", "2024-06-10T11:00:00Z"), DAY)
        self.assertEqual((top, height), (570, 90))

    def test_position_is_clipped_to_day(self):
        top, height = event_position(_event("e", "2024-06-10T23:00:00Z", "2024-06-11T02:00:00Z"), DAY)
        self.assertEqual((top, height), (1380, 60))

    def test_position_respects_timezone(self):
        helsinki_summer = timezone(timedelta(hours=3))
        top, _ = event_position(_event("e", "2024-06-10T06:00:00Z", "2024-06-10T07:00:00Z"), DAY, helsinki_summer)
        self.assertEqual(top, 540)

    def test_overlapping_events_get_distinct_lanes(self):
        events = [
            _event("a", "2024-06-10T09:00:00Z", "2024-06-10T10:00:00Z"),
            _event("b", "2024-06-10T09:30:00Z", "2024-06-10T10:30:00Z"),
            _event("c", "2024-06-10T10:00:00Z", "2024-06-10T11:00:00Z"),
            _event("d", "2024-06-10T13:00:00Z", "2024-06-10T14:00:00Z"),
            _event("all", "2024-06-10T00:00:00Z", "2024-06-10T23:59:00Z", allDay=True),
        ]
        layout = layout_day(events, DAY)
        placed = {entry["event"]["id"]: entry for entry in layout["timed"]}

        self.assertEqual([row["id"] for row in layout["allDay"]], ["all"])
        self.assertEqual(placed["a"]["lane"], 0)
        self.assertEqual(placed["b"]["lane"], 1)
        # c starts when a ends, so it reuses lane 0 inside the same cluster.
        self.assertEqual(placed["c"]["lane"], 0)
        self.assertEqual({placed[key]["lanes"] for key in "abc"}, {2})
        self.assertEqual((placed["d"]["lane"], placed["d"]["lanes"]), (0, 1))


class CalendarCrudTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_create_derives_color_and_validates(self):
        created = create_event(
            ACTOR,
            {
                "title": "Call",
                "eventType": "call",
                "startTime": "2024-06-10T09:00:00Z",
                "endTime": "2024-06-10T09:30:00Z",
                "assignedTo": "veeti",
            },
        )
        self.assertEqual(created["color"], "#3B82F6")
        self.assertEqual(created["userId"], "1")
        with self.assertRaises(ValueError):
            create_event(ACTOR, {"title": "Bad", "startTime": "2024-06-10T10:00:00Z", "endTime": "2024-06-10T09:00:00Z"})
        with self.assertRaises(ValueError):
            create_event(
                ACTOR,
                {"title": "Bad", "eventType": "party", "startTime": "2024-06-10T10:00:00Z", "endTime": "2024-06-10T11:00:00Z"},
            )

    def test_patch_rederives_color(self):
        created = create_event(
            ACTOR,
            {"title": "Sync", "startTime": "2024-06-10T09:00:00Z", "endTime": "2024-06-10T10:00:00Z"},
        )
        self.assertEqual(created["color"], "#A855F7")
        updated = update_event(ACTOR.tenant_id, created["id"], {"assignedTo": "alppa"})
        self.assertEqual(updated["color"], "#F97316")
        with self.assertRaises(EntityNotFoundError):
            update_event(ACTOR.tenant_id, "missing", {"title": "x"})

    def test_range_queries_are_ordered_and_bounded(self):
        for title, start in (("late", "2024-06-10T15:00:00Z"), ("early", "2024-06-10T08:00:00Z"), ("next", "2024-06-11T08:00:00Z")):
            create_event(ACTOR, {"title": title, "startTime": start, "endTime": start})
        create_event(ACTOR, {"title": "july", "startTime": "2024-07-01T08:00:00Z", "endTime": "2024-07-01T09:00:00Z"})

        day = list_day_events(ACTOR.tenant_id, DAY)
        self.assertEqual([row["title"] for row in day], ["early", "late"])
        month = list_month_events(ACTOR.tenant_id, 2024, 6)
        self.assertEqual([row["title"] for row in month], ["early", "late", "next"])
        window = list_events(
            ACTOR.tenant_id,
            datetime(2024, 6, 10, 12, tzinfo=timezone.utc),
            datetime(2024, 7, 2, tzinfo=timezone.utc),
        )
        self.assertEqual([row["title"] for row in window], ["late", "next", "july"])


class DemoEventTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.prospect = create_prospect(ACTOR, {"name": "Green Valley Golf", "responsiblePerson": "alppa"})

    def test_demo_event_stamps_prospect(self):
        start = datetime(2024, 6, 12, 10, tzinfo=timezone.utc)
        event = create_demo_event(
            ACTOR, self.prospect["id"], "second_demo", start, start + timedelta(hours=1), "Green Valley Golf", "alppa"
        )
        self.assertEqual(event["title"], "Second Demo - Green Valley Golf")
        self.assertEqual(event["eventType"], "demo")
        self.assertEqual(event["color"], "#F97316")
        stored = get_entity("prospects", ACTOR.tenant_id, self.prospect["id"])
        self.assertEqual(stored["secondDemoScheduledAt"], "2024-06-12T10:00:00Z")
        self.assertEqual([row["id"] for row in list_prospect_demos(ACTOR.tenant_id, self.prospect["id"])], [event["id"]])

    def test_event_list_attaches_prospect(self):
        start = datetime(2024, 6, 10, 10, tzinfo=timezone.utc)
        create_demo_event(ACTOR, self.prospect["id"], "first_demo", start, start + timedelta(hours=1), "Green Valley Golf")
        rows = list_day_events(ACTOR.tenant_id, DAY)
        self.assertEqual(rows[0]["prospect"]["name"], "Green Valley Golf")
        self.assertEqual(rows[0]["title"], "First Demo - Green Valley Golf")

    def test_stamp_failure_is_logged_not_raised(self):
        start = datetime(2024, 6, 12, 10, tzinfo=timezone.utc)
        with mock.patch(
            "services.calendar_events.update_entity",
            side_effect=EntityNotFoundError("prospects", self.prospect["id"]),
        ):
            with self.assertLogs("services.calendar_events", level="ERROR"):
                event = create_demo_event(
                    ACTOR, self.prospect["id"], "first_demo", start, start + timedelta(hours=1), "Green Valley Golf"
                )
        self.assertIsNotNone(get_entity("calendar_events", ACTOR.tenant_id, event["id"]))

    def test_unknown_demo_type(self):
        start = datetime(2024, 6, 12, 10, tzinfo=timezone.utc)
        with self.assertRaises(ValueError):
            create_demo_event(ACTOR, self.prospect["id"], "third_demo", start, start, "x")


if __name__ == "__main__":
    unittest.main()
