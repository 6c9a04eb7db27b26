import unittest
from unittest import mock

from org_shared import OrgActor
from services.crm_store import get_entity, reset_memory_store_for_tests
from services.ordered_store import PROSPECTS, load_items
from services.pipeline import (
    PIPELINE_STAGES,
    begin_stage_move,
    build_board,
    create_prospect,
    pipeline_summary,
    requires_demo,
    update_prospect,
)
from services.reorder import Move


ACTOR = OrgActor(organization_id="org-1", slug="acme", email="owner@acme.test", role="admin", user_id="1")


def _snapshot(tenant_id):
    return sorted((item.id, item.bucket_key, item.sort_index) for item in load_items(PROSPECTS, tenant_id))


class StageMoveGateTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.cold = [create_prospect(ACTOR, {"name": name, "pipelineStage": "cold_called"}) for name in ("Alpha", "Beta")]
        self.demo = create_prospect(ACTOR, {"name": "Gamma", "pipelineStage": "first_demo"})

    def _move_alpha_to_first_demo(self):
        return begin_stage_move(ACTOR.tenant_id, Move(self.cold[0]["id"], "cold_called", 0, "first_demo", 0))

    def test_demo_stage_move_is_held_until_confirmed(self):
        before = _snapshot(ACTOR.tenant_id)
        gate = self._move_alpha_to_first_demo()

        self.assertTrue(gate.needs_confirmation)
        preview = {item.id: item.bucket_key for item in gate.preview}
        self.assertEqual(preview[self.cold[0]["id"]], "first_demo")
        self.assertEqual(_snapshot(ACTOR.tenant_id), before)

    def test_cancel_leaves_stage_and_order_untouched(self):
        before = _snapshot(ACTOR.tenant_id)
        gate = self._move_alpha_to_first_demo()
        restored = gate.cancel()

        self.assertEqual(sorted((item.id, item.bucket_key, item.sort_index) for item in restored), before)
        self.assertEqual(_snapshot(ACTOR.tenant_id), before)
        self.assertEqual(gate.state, "cancelled")

    def test_confirm_requires_companion_step(self):
        before = _snapshot(ACTOR.tenant_id)
        gate = self._move_alpha_to_first_demo()
        with self.assertRaises(ValueError):
            gate.confirm()
        self.assertEqual(_snapshot(ACTOR.tenant_id), before)

    def test_failing_companion_writes_nothing(self):
        before = _snapshot(ACTOR.tenant_id)
        gate = self._move_alpha_to_first_demo()

        def failing_schedule(item):
            raise ValueError("calendar unavailable")

        with self.assertRaises(ValueError):
            gate.confirm(failing_schedule)
        self.assertEqual(gate.state, "pending")
        self.assertEqual(_snapshot(ACTOR.tenant_id), before)

    def test_confirm_runs_companion_then_persists(self):
        scheduled = []
        gate = self._move_alpha_to_first_demo()
        outcome = gate.confirm(lambda item: scheduled.append((item.id, item.bucket_key)))

        self.assertEqual(scheduled, [(self.cold[0]["id"], "first_demo")])
        self.assertFalse(outcome.reloaded)
        stored = get_entity("prospects", ACTOR.tenant_id, self.cold[0]["id"])
        self.assertEqual(stored["pipelineStage"], "first_demo")
        self.assertEqual(stored["stageOrder"], 0)
        self.assertIsNotNone(stored.get("lastActivityDate"))
        self.assertEqual(get_entity("prospects", ACTOR.tenant_id, self.demo["id"])["stageOrder"], 1)
        self.assertEqual(get_entity("prospects", ACTOR.tenant_id, self.cold[1]["id"])["stageOrder"], 0)

    def test_failed_commit_rolls_back_companion(self):
        before = _snapshot(ACTOR.tenant_id)
        scheduled, removed = [], []
        gate = self._move_alpha_to_first_demo()

        with mock.patch("services.pipeline.commit_reassignment", side_effect=RuntimeError("store bug")):
            with self.assertRaises(RuntimeError):
                gate.confirm(
                    lambda item: scheduled.append(item.id),
                    rollback=lambda item: removed.append(item.id),
                )

        self.assertEqual(scheduled, [self.cold[0]["id"]])
        self.assertEqual(removed, [self.cold[0]["id"]])
        self.assertEqual(gate.state, "pending")
        self.assertEqual(_snapshot(ACTOR.tenant_id), before)

    def test_rollback_not_called_on_success(self):
        removed = []
        gate = self._move_alpha_to_first_demo()
        gate.confirm(lambda item: None, rollback=lambda item: removed.append(item.id))
        self.assertEqual(removed, [])

    def test_stage_names_are_normalized(self):
        gate = begin_stage_move(ACTOR.tenant_id, Move(self.cold[0]["id"], "Cold_Called", 0, " First_Demo ", 0))
        self.assertIsNone(gate.invalid)
        self.assertEqual((gate.move.source_bucket, gate.move.dest_bucket), ("cold_called", "first_demo"))
        self.assertTrue(gate.needs_confirmation)

    def test_non_demo_stage_commits_without_companion(self):
        gate = begin_stage_move(ACTOR.tenant_id, Move(self.cold[1]["id"], "cold_called", 1, "offer_sent", 0))
        self.assertFalse(gate.needs_confirmation)
        gate.confirm()
        self.assertEqual(get_entity("prospects", ACTOR.tenant_id, self.cold[1]["id"])["pipelineStage"], "offer_sent")
        with self.assertRaises(RuntimeError):
            gate.confirm()

    def test_reorder_inside_demo_stage_is_not_gated(self):
        other = create_prospect(ACTOR, {"name": "Delta", "pipelineStage": "first_demo"})
        gate = begin_stage_move(ACTOR.tenant_id, Move(other["id"], "first_demo", 1, "first_demo", 0))
        self.assertFalse(gate.needs_confirmation)

    def test_unknown_stage_is_rejected(self):
        with self.assertRaises(ValueError):
            begin_stage_move(ACTOR.tenant_id, Move(self.cold[0]["id"], "cold_called", 0, "lost_forever", 0))

    def test_requires_demo(self):
        self.assertTrue(requires_demo("cold_called", "second_demo"))
        self.assertFalse(requires_demo("first_demo", "first_demo"))
        self.assertFalse(requires_demo("first_demo", "offer_sent"))


class ProspectTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_create_defaults(self):
        created = create_prospect(ACTOR, {"name": "Acme Golf", "email": "Sales@Acme.Test"})
        self.assertEqual(created["pipelineStage"], "not_contacted")
        self.assertEqual(created["stageOrder"], 0)
        self.assertEqual(created["priority"], "medium")
        self.assertEqual(created["leadSource"], "other")
        self.assertEqual(created["email"], "sales@acme.test")
        self.assertEqual(created["createdBy"], "1")

    def test_create_requires_name(self):
        with self.assertRaises(ValueError):
            create_prospect(ACTOR, {"city": "Helsinki"})

    def test_patch_cannot_change_stage(self):
        created = create_prospect(ACTOR, {"name": "Acme"})
        with self.assertRaises(ValueError):
            update_prospect(ACTOR.tenant_id, created["id"], {"pipelineStage": "offer_sent"})

    def test_patch_updates_fields(self):
        created = create_prospect(ACTOR, {"name": "Acme"})
        updated = update_prospect(ACTOR.tenant_id, created["id"], {"priority": "HIGH", "notes": "call back"})
        self.assertEqual(updated["priority"], "high")
        self.assertEqual(updated["notes"], "call back")
        self.assertEqual(updated["stageOrder"], 0)

    def test_board_columns_follow_stage_order(self):
        first = create_prospect(ACTOR, {"name": "One", "pipelineStage": "cold_called"})
        second = create_prospect(ACTOR, {"name": "Two", "pipelineStage": "cold_called"})
        board = build_board(load_items(PROSPECTS, ACTOR.tenant_id))

        self.assertEqual([column["id"] for column in board], PIPELINE_STAGES)
        cold = board[PIPELINE_STAGES.index("cold_called")]
        self.assertEqual([row["id"] for row in cold["prospects"]], [first["id"], second["id"]])
        self.assertEqual(cold["count"], 2)


class PipelineSummaryTests(unittest.TestCase):
    def test_conversion_rate(self):
        rows = (
            [{"pipelineStage": "offer_accepted"}] * 3
            + [{"pipelineStage": "offer_rejected"}] * 2
            + [{"pipelineStage": "cold_called"}]
        )
        summary = pipeline_summary(rows)
        self.assertEqual(summary["total"], 6)
        self.assertEqual(summary["won"], 3)
        self.assertEqual(summary["lost"], 2)
        self.assertEqual(summary["active"], 1)
        self.assertEqual(summary["conversionRate"], 60.0)

    def test_conversion_is_zero_without_closed_deals(self):
        summary = pipeline_summary([{"pipelineStage": "first_demo"}])
        self.assertEqual(summary["conversionRate"], 0)


if __name__ == "__main__":
    unittest.main()
