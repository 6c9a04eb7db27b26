import unittest
from datetime import date
from unittest import mock

from azure.core.exceptions import AzureError

from org_shared import OrgActor
from services.crm_store import get_entity, list_entities, reset_memory_store_for_tests, update_entity
from services.ordered_store import TODOS, load_items
from services.reorder import Move, display_order
from services.todo_calendar import (
    attach_screenshot,
    carried_over_ids,
    carry_over_incomplete,
    create_todo,
    day_label,
    delete_todo,
    list_window,
    move_todo,
    toggle_todo,
    update_todo,
    window_days,
)

ACTOR = OrgActor(organization_id="org-1", slug="funect", email="owner@funect.test", role="member", user_id="3")
TODAY = date(2024, 6, 10)


def _day_titles(day):
    items = display_order(load_items(TODOS, ACTOR.tenant_id), day)
    return [item.payload["title"] for item in items]


class TodoWindowTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_window_labels(self):
        days = window_days(TODAY, 7)
        self.assertEqual(len(days), 7)
        self.assertEqual([day["label"] for day in days[:3]], ["Today", "Tomorrow", "Wed, Jun 12"])
        self.assertTrue(days[0]["isToday"])
        self.assertEqual(days[-1]["date"], "2024-06-16")

    def test_day_label_formats_later_days(self):
        self.assertEqual(day_label(date(2024, 7, 1), TODAY), "Mon, Jul 1")

    def test_list_window_groups_todos_by_day(self):
        create_todo(ACTOR, {"title": "Call Veeti"}, today=TODAY)
        create_todo(ACTOR, {"title": "Prep deck", "dueDate": "2024-06-11"}, today=TODAY)
        create_todo(ACTOR, {"title": "Out of window", "dueDate": "2024-07-30"}, today=TODAY)

        window = list_window(ACTOR.tenant_id, TODAY, 7)
        by_date = {day["date"]: [todo["title"] for todo in day["todos"]] for day in window["days"]}
        self.assertEqual(by_date["2024-06-10"], ["Call Veeti"])
        self.assertEqual(by_date["2024-06-11"], ["Prep deck"])
        self.assertNotIn("Out of window", sum(by_date.values(), []))


class TodoLifecycleTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_create_defaults_and_appends(self):
        first = create_todo(ACTOR, {"title": "First", "assignedTo": "Veeti"}, today=TODAY)
        second = create_todo(ACTOR, {"title": "Second", "assignedTo": "stranger"}, today=TODAY)

        self.assertEqual(first["dueDate"], "2024-06-10")
        self.assertEqual(first["assignedTo"], "veeti")
        self.assertEqual(second["assignedTo"], "team")
        self.assertEqual([first["displayOrder"], second["displayOrder"]], [0, 1])
        self.assertFalse(first["completed"])
        self.assertEqual(first["attachments"], [])

    def test_create_validates_input(self):
        with self.assertRaises(ValueError):
            create_todo(ACTOR, {"title": "  "}, today=TODAY)
        with self.assertRaises(ValueError):
            create_todo(ACTOR, {"title": "Bad date", "dueDate": "10.6.2024"}, today=TODAY)

    def test_companion_calendar_event(self):
        created = create_todo(ACTOR, {"title": "Demo prep", "addToCalendar": True}, today=TODAY)
        events = list_entities("calendar_events", ACTOR.tenant_id)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["eventType"], "task")
        self.assertTrue(events[0]["allDay"])
        self.assertEqual(created["calendarEventId"], events[0]["id"])

    def test_companion_event_failure_keeps_todo(self):
        with mock.patch("services.todo_calendar.create_event", side_effect=AzureError("down")):
            with self.assertLogs("services.todo_calendar", level="WARNING"):
                created = create_todo(ACTOR, {"title": "Still here", "addToCalendar": True}, today=TODAY)
        self.assertIsNotNone(get_entity("todos", ACTOR.tenant_id, created["id"]))
        self.assertNotIn("calendarEventId", created)

    def test_toggle_flips_completion(self):
        created = create_todo(ACTOR, {"title": "Toggle me"}, today=TODAY)
        self.assertTrue(toggle_todo(ACTOR.tenant_id, created["id"])["completed"])
        self.assertFalse(toggle_todo(ACTOR.tenant_id, created["id"])["completed"])

    def test_due_date_change_moves_to_end_of_new_day(self):
        moving = create_todo(ACTOR, {"title": "Moving"}, today=TODAY)
        create_todo(ACTOR, {"title": "Staying"}, today=TODAY)
        create_todo(ACTOR, {"title": "Tomorrow"}, today=date(2024, 6, 11))

        updated = update_todo(ACTOR.tenant_id, moving["id"], {"dueDate": "2024-06-11", "title": "Moved"})

        self.assertEqual(updated["dueDate"], "2024-06-11")
        self.assertEqual(updated["title"], "Moved")
        self.assertEqual(_day_titles("2024-06-11"), ["Tomorrow", "Moved"])
        self.assertEqual(_day_titles("2024-06-10"), ["Staying"])
        self.assertEqual(load_items(TODOS, ACTOR.tenant_id)[1].sort_index, 0)

    def test_display_order_cannot_be_patched(self):
        created = create_todo(ACTOR, {"title": "Fixed"}, today=TODAY)
        with self.assertRaises(ValueError):
            update_todo(ACTOR.tenant_id, created["id"], {"displayOrder": 5})

    def test_move_todo_rejects_non_date_buckets(self):
        created = create_todo(ACTOR, {"title": "Drag"}, today=TODAY)
        with self.assertRaises(ValueError):
            move_todo(ACTOR.tenant_id, Move(created["id"], "2024-06-10", 0, "someday", 0))

    def test_delete_removes_row(self):
        created = create_todo(ACTOR, {"title": "Gone"}, today=TODAY)
        self.assertTrue(delete_todo(ACTOR.tenant_id, created["id"]))
        self.assertFalse(delete_todo(ACTOR.tenant_id, created["id"]))


class CarryOverTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_incomplete_todos_are_appended_to_today_in_order(self):
        yesterday = date(2024, 6, 9)
        first = create_todo(ACTOR, {"title": "Old one"}, today=yesterday)
        done = create_todo(ACTOR, {"title": "Done"}, today=yesterday)
        create_todo(ACTOR, {"title": "Old two"}, today=yesterday)
        create_todo(ACTOR, {"title": "Today task"}, today=TODAY)
        update_entity("todos", ACTOR.tenant_id, done["id"], {"completed": True})
        move_todo(ACTOR.tenant_id, Move(first["id"], "2024-06-09", 0, "2024-06-09", 2))

        outcome = carry_over_incomplete(ACTOR.tenant_id, TODAY)

        self.assertFalse(outcome.reloaded)
        self.assertEqual(_day_titles("2024-06-10"), ["Today task", "Old two", "Old one"])
        self.assertEqual(_day_titles("2024-06-09"), ["Done"])
        orders = [item.sort_index for item in display_order(load_items(TODOS, ACTOR.tenant_id), "2024-06-10")]
        self.assertEqual(orders, [0, 1, 2])

    def test_carried_ids_exclude_reindexed_today_siblings(self):
        removed = create_todo(ACTOR, {"title": "Removed"}, today=TODAY)
        staying = create_todo(ACTOR, {"title": "Already today"}, today=TODAY)
        late = create_todo(ACTOR, {"title": "Late"}, today=date(2024, 6, 9))
        delete_todo(ACTOR.tenant_id, removed["id"])

        outcome = carry_over_incomplete(ACTOR.tenant_id, TODAY)

        rewritten = {record.id for record in outcome.reassignment.writes}
        self.assertIn(staying["id"], rewritten)
        self.assertEqual(carried_over_ids(outcome, TODAY), [late["id"]])

    def test_nothing_to_carry_over(self):
        create_todo(ACTOR, {"title": "Today task"}, today=TODAY)
        outcome = carry_over_incomplete(ACTOR.tenant_id, TODAY)
        self.assertEqual(outcome.reassignment.writes, [])
        self.assertEqual(carried_over_ids(outcome, TODAY), [])


class AttachmentFlowTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_attachment_is_appended(self):
        created = create_todo(ACTOR, {"title": "Screenshot"}, today=TODAY)
        record = {"name": "shot.png", "url": "https://blob.test/shot.png", "size": 3, "blobName": "org-1/x/shot.png"}
        with mock.patch("services.todo_calendar.upload_task_attachment", return_value=record) as upload:
            updated = attach_screenshot(
                ACTOR.tenant_id,
                created["id"],
                filename="shot.png",
                data=b"png",
                content_type="image/png",
            )
        upload.assert_called_once()
        self.assertEqual(updated["attachments"], [record])

        with mock.patch("services.todo_calendar.delete_task_attachment") as remove:
            delete_todo(ACTOR.tenant_id, created["id"])
        remove.assert_called_once_with("org-1/x/shot.png")


if __name__ == "__main__":
    unittest.main()
