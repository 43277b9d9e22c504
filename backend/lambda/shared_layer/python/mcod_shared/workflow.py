"""mcod_shared.workflow — Explicit state machine driver for lifecycle workflows.

A workflow definition is a plain dict:

    {
        "name": "server_provisioning",
        "start": "LaunchInstance",
        "failure_state": "ProvisioningFailed",
        "states": {
            "LaunchInstance": {"type": "task", "run": fn},           # fn(ctx) -> next
            "WaitForInstance": {"type": "wait", "seconds": fn, "next": "CheckReadiness"},
            "IsInstanceReady": {"type": "choice", "choose": fn},     # fn(ctx) -> next
            "ProvisioningFailed": {"type": "fail", "error": "...", "cause": "..."},
            "End": {"type": "succeed"},
        },
    }

`run_workflow` performs the side effect for the current state, computes the
next one and repeats until a terminal state. Wait states are the only
suspension points. The context stays JSON-serializable and carries its
current `state`, so an execution can be resumed from a persisted copy.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict

from mcod_shared.config import logger
from mcod_shared.errors import WorkflowFailed
from mcod_shared.serialization import _emit_structured_observability, _now_z

WORKFLOW_STATUS_RUNNING = "RUNNING"
WORKFLOW_STATUS_SUCCEEDED = "SUCCEEDED"
WORKFLOW_STATUS_FAILED = "FAILED"

DEFAULT_MAX_TRANSITIONS = 500

_STATE_TYPES = {"task", "wait", "choice", "fail", "succeed"}


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... never above cap."""
    attempt = max(0, int(attempt))
    return float(min(cap, base * (2 ** attempt)))


def _validate_definition(definition: Dict[str, Any]) -> None:
    states = definition.get("states") or {}
    if definition.get("start") not in states:
        raise ValueError(f"{definition.get('name')}: start state not defined")
    failure_state = definition.get("failure_state")
    if failure_state and states.get(failure_state, {}).get("type") != "fail":
        raise ValueError(f"{definition.get('name')}: failure_state must be a fail state")
    for name, state_def in states.items():
        if state_def.get("type") not in _STATE_TYPES:
            raise ValueError(f"{definition.get('name')}: state '{name}' has unknown type {state_def.get('type')!r}")


def _observe(definition: Dict[str, Any], context: Dict[str, Any], event: str, **kwargs: Any) -> None:
    _emit_structured_observability(
        component=definition["name"],
        event=event,
        server_id=context.get("serverId"),
        execution_id=context.get("executionId"),
        **kwargs,
    )


def _finish_failed(
    definition: Dict[str, Any],
    context: Dict[str, Any],
    state: str,
    error: str,
    cause: str,
) -> Dict[str, Any]:
    context["state"] = state
    context["status"] = WORKFLOW_STATUS_FAILED
    context["error"] = error
    context["cause"] = cause
    context["finishedAt"] = _now_z()
    logger.error("[ERROR] %s execution %s failed in %s: %s (%s)",
                 definition["name"], context.get("executionId"), state, error, cause)
    _observe(definition, context, "workflow_failed", state=state, error_code=error, extra={"cause": cause})
    return context


def run_workflow(
    definition: Dict[str, Any],
    context: Dict[str, Any],
    *,
    sleep: Callable[[float], None] = time.sleep,
    max_transitions: int = DEFAULT_MAX_TRANSITIONS,
) -> Dict[str, Any]:
    """Drive `context` through `definition` until a terminal state.

    Returns the same context dict with `status` set to SUCCEEDED or FAILED.
    A step raising WorkflowFailed moves the execution to the fail state the
    exception names, else the definition's `failure_state`, else fails in
    place, with that error and cause. Any other exception propagates to the
    caller.
    """
    _validate_definition(definition)
    states = definition["states"]
    state = context.get("state") or definition["start"]
    if state not in states:
        raise ValueError(f"{definition['name']}: cannot resume from unknown state '{state}'")

    context.setdefault("history", [])
    context["status"] = WORKFLOW_STATUS_RUNNING
    transitions = 0

    while True:
        state_def = states[state]
        kind = state_def["type"]
        context["state"] = state

        if kind == "succeed":
            context["status"] = WORKFLOW_STATUS_SUCCEEDED
            context["finishedAt"] = _now_z()
            _observe(definition, context, "workflow_succeeded", state=state)
            return context

        if kind == "fail":
            return _finish_failed(definition, context, state, state_def["error"], state_def["cause"])

        if transitions >= max_transitions:
            return _finish_failed(
                definition,
                context,
                state,
                "TransitionLimitExceeded",
                f"exceeded {max_transitions} state transitions",
            )

        started = time.perf_counter()
        entry: Dict[str, Any] = {"state": state, "enteredAt": _now_z()}
        try:
            if kind == "task":
                next_state = state_def["run"](context)
            elif kind == "choice":
                next_state = state_def["choose"](context)
            else:
                seconds = float(state_def["seconds"](context))
                entry["waitSeconds"] = seconds
                sleep(seconds)
                next_state = state_def["next"]
        except WorkflowFailed as exc:
            entry["error"] = exc.error
            context["history"].append(entry)
            failure_state = exc.state or definition.get("failure_state") or state
            if exc.state and states.get(exc.state, {}).get("type") != "fail":
                raise ValueError(f"{definition['name']}: '{exc.state}' is not a fail state") from exc
            return _finish_failed(definition, context, failure_state, exc.error, exc.cause)

        if next_state not in states:
            raise ValueError(f"{definition['name']}: state '{state}' returned unknown next state {next_state!r}")

        entry["next"] = next_state
        context["history"].append(entry)
        _observe(
            definition,
            context,
            "state_transition",
            state=state,
            latency_ms=int((time.perf_counter() - started) * 1000),
            extra={"next_state": next_state},
        )
        state = next_state
        transitions += 1
