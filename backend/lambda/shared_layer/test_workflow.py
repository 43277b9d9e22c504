"""test_workflow.py — Unit tests for the mcod_shared state machine driver.

Run from shared_layer directory:
    PYTHONPATH=python python3 -m pytest test_workflow.py -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from mcod_shared.errors import WorkflowFailed
from mcod_shared.workflow import (
    WORKFLOW_STATUS_FAILED,
    WORKFLOW_STATUS_SUCCEEDED,
    backoff_delay,
    run_workflow,
)


def _counter_definition(limit=3):
    """Increment ctx["n"] with a wait between steps until it reaches limit."""

    def bump(ctx):
        ctx["n"] = ctx.get("n", 0) + 1
        return "Check"

    def check(ctx):
        return "Done" if ctx["n"] >= limit else "Pause"

    return {
        "name": "counter",
        "start": "Bump",
        "failure_state": "Broken",
        "states": {
            "Bump": {"type": "task", "run": bump},
            "Check": {"type": "choice", "choose": check},
            "Pause": {"type": "wait", "seconds": lambda ctx: ctx["n"] * 2, "next": "Bump"},
            "Broken": {"type": "fail", "error": "Broken", "cause": "counter broke"},
            "Done": {"type": "succeed"},
        },
    }


class BackoffDelayTests(unittest.TestCase):
    def test_doubles_from_base(self):
        self.assertEqual([backoff_delay(a, 1, 60) for a in range(4)], [1.0, 2.0, 4.0, 8.0])

    def test_capped(self):
        self.assertEqual([backoff_delay(a, 5, 10) for a in range(4)], [5.0, 10.0, 10.0, 10.0])

    def test_negative_attempt_treated_as_first(self):
        self.assertEqual(backoff_delay(-3, 5, 10), 5.0)


class RunWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.waits = []

    def _sleep(self, seconds):
        self.waits.append(seconds)

    def test_runs_to_success_and_records_waits(self):
        ctx = run_workflow(_counter_definition(), {"executionId": "e1"}, sleep=self._sleep)

        self.assertEqual(ctx["status"], WORKFLOW_STATUS_SUCCEEDED)
        self.assertEqual(ctx["state"], "Done")
        self.assertEqual(ctx["n"], 3)
        self.assertEqual(self.waits, [2.0, 4.0])
        self.assertIn("finishedAt", ctx)

    def test_history_tracks_every_transition(self):
        ctx = run_workflow(_counter_definition(limit=1), {}, sleep=self._sleep)
        self.assertEqual(
            [(h["state"], h["next"]) for h in ctx["history"]],
            [("Bump", "Check"), ("Check", "Done")],
        )

    def test_context_stays_json_serializable(self):
        ctx = run_workflow(_counter_definition(), {}, sleep=self._sleep)
        json.dumps(ctx)

    def test_workflow_failed_moves_to_failure_state(self):
        definition = _counter_definition()

        def explode(ctx):
            raise WorkflowFailed("Boom", "step exploded")

        definition["states"]["Bump"]["run"] = explode
        ctx = run_workflow(definition, {}, sleep=self._sleep)

        self.assertEqual(ctx["status"], WORKFLOW_STATUS_FAILED)
        self.assertEqual(ctx["state"], "Broken")
        self.assertEqual(ctx["error"], "Boom")
        self.assertEqual(ctx["cause"], "step exploded")
        self.assertEqual(ctx["history"][-1]["error"], "Boom")

    def test_workflow_failed_may_name_its_fail_state(self):
        definition = _counter_definition()
        definition["states"]["Other"] = {"type": "fail", "error": "Other", "cause": "other"}

        def explode(ctx):
            raise WorkflowFailed("Boom", "step exploded", state="Other")

        definition["states"]["Bump"]["run"] = explode
        ctx = run_workflow(definition, {}, sleep=self._sleep)
        self.assertEqual(ctx["state"], "Other")
        self.assertEqual(ctx["error"], "Boom")

    def test_named_state_must_be_a_fail_state(self):
        definition = _counter_definition()

        def explode(ctx):
            raise WorkflowFailed("Boom", "step exploded", state="Done")

        definition["states"]["Bump"]["run"] = explode
        with self.assertRaises(ValueError):
            run_workflow(definition, {}, sleep=self._sleep)

    def test_other_exceptions_propagate(self):
        definition = _counter_definition()

        def explode(ctx):
            raise KeyError("missing")

        definition["states"]["Bump"]["run"] = explode
        with self.assertRaises(KeyError):
            run_workflow(definition, {}, sleep=self._sleep)

    def test_reaching_fail_state_directly(self):
        definition = _counter_definition()
        definition["states"]["Check"]["choose"] = lambda ctx: "Broken"
        ctx = run_workflow(definition, {}, sleep=self._sleep)
        self.assertEqual(ctx["status"], WORKFLOW_STATUS_FAILED)
        self.assertEqual(ctx["error"], "Broken")
        self.assertEqual(ctx["cause"], "counter broke")

    def test_unknown_next_state_raises(self):
        definition = _counter_definition()
        definition["states"]["Check"]["choose"] = lambda ctx: "Nowhere"
        with self.assertRaises(ValueError):
            run_workflow(definition, {}, sleep=self._sleep)

    def test_transition_limit_fails_the_execution(self):
        definition = _counter_definition(limit=1000)
        ctx = run_workflow(definition, {}, sleep=self._sleep, max_transitions=10)
        self.assertEqual(ctx["status"], WORKFLOW_STATUS_FAILED)
        self.assertEqual(ctx["error"], "TransitionLimitExceeded")
        self.assertEqual(len(ctx["history"]), 10)

    def test_resumes_from_persisted_state(self):
        ctx = run_workflow(_counter_definition(), {"state": "Check", "n": 3}, sleep=self._sleep)
        self.assertEqual(ctx["status"], WORKFLOW_STATUS_SUCCEEDED)
        self.assertEqual(ctx["n"], 3)
        self.assertEqual(self.waits, [])

    def test_resume_from_unknown_state_raises(self):
        with self.assertRaises(ValueError):
            run_workflow(_counter_definition(), {"state": "Gone"}, sleep=self._sleep)

    def test_invalid_definitions_rejected(self):
        definition = _counter_definition()
        definition["start"] = "Missing"
        with self.assertRaises(ValueError):
            run_workflow(definition, {}, sleep=self._sleep)

        definition = _counter_definition()
        definition["failure_state"] = "Done"
        with self.assertRaises(ValueError):
            run_workflow(definition, {}, sleep=self._sleep)

        definition = _counter_definition()
        definition["states"]["Pause"]["type"] = "parallel"
        with self.assertRaises(ValueError):
            run_workflow(definition, {}, sleep=self._sleep)


if __name__ == "__main__":
    unittest.main()
