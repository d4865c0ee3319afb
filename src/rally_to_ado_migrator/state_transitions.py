"""Lifecycle state writes that respect ADO workflow constraints.

ADO work item types define a workflow graph. For most types an elevated
(bypassRules) write can set any state directly. The Task workflow does not
allow jumping from New straight to a terminal state, so those writes are
walked through the intermediate states one at a time:

    New ──► Active ──► Closed
             │
             └──────► Resolved

Every write is attempted elevated first. If ADO rejects it (typically because
the PAT lacks the bypass permission), it is retried once without elevation
with only System.State; audit fields that need elevation are dropped then.
Failures are logged and reported, never raised: a wrong state is fixed by a
re-run, while aborting the item could lead to a duplicate on retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from .exceptions import AdoApiError
from .models import StateTransitionPlan

if TYPE_CHECKING:
    from .protocols import TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

STATE_FIELD: Final[str] = "System.State"

# Canonical paths from an initial state, per workflow-constrained ADO type
TRANSITION_PATHS: Final[dict[str, dict[str, list[str]]]] = {
    "Task": {
        "Closed": ["Active", "Closed"],
        "Resolved": ["Active", "Resolved"],
        "Removed": ["Removed"],
    },
}

# Fields ADO only accepts on an elevated write
ELEVATED_ONLY_FIELDS: Final[frozenset[str]] = frozenset(
    {"System.CreatedDate", "System.ChangedDate", "System.CreatedBy"}
)


@dataclass
class StateApplyResult:
    """Outcome of applying post-creation fields to one work item."""

    desired_state: str | None
    applied_states: list[str] = field(default_factory=list)
    failed_states: list[str] = field(default_factory=list)
    final_state: str | None = None
    used_fallback: bool = False
    fields_written: bool = False

    @property
    def state_matches(self) -> bool:
        return self.desired_state is None or (self.final_state or "").lower() == self.desired_state.lower()


def plan_transition(target_type: str, current_state: str | None, desired_state: str) -> StateTransitionPlan:
    """Compute the ordered states to write to reach `desired_state`.

    Steps the work item has already reached are dropped, so a Task already
    Active only needs the terminal write.
    """
    plan = StateTransitionPlan(target_type=target_type, current_state=current_state, desired_state=desired_state)
    if current_state and current_state.lower() == desired_state.lower():
        return plan

    path = TRANSITION_PATHS.get(target_type, {}).get(desired_state)
    if path is None:
        plan.steps = [desired_state]
        return plan

    steps = list(path)
    if current_state:
        lowered = [s.lower() for s in steps]
        if current_state.lower() in lowered:
            steps = steps[lowered.index(current_state.lower()) + 1 :]
    plan.steps = steps
    return plan


def _patch(target: TargetSystem, target_id: int, fields: dict[str, Any], *, elevated: bool) -> bool:
    try:
        return target.patch_fields(target_id, fields, elevated=elevated)
    except AdoApiError as e:
        logger.warning(f"Write of {', '.join(fields)} to work item {target_id} failed: {e}")
        return False


def _write(target: TargetSystem, target_id: int, fields: dict[str, Any], result: StateApplyResult) -> bool:
    """Elevated write with a single non-elevated, state-only fallback."""
    if _patch(target, target_id, fields, elevated=True):
        return True
    state = fields.get(STATE_FIELD)
    fallback = {STATE_FIELD: state} if state else {}
    dropped = sorted(set(fields) - set(fallback))
    if dropped:
        logger.warning(f"Elevated write to work item {target_id} rejected; dropping {', '.join(dropped)}")
    if not fallback:
        return False
    result.used_fallback = True
    return _patch(target, target_id, fallback, elevated=False)


def apply_state(
    target: TargetSystem,
    target_id: int,
    target_type: str,
    post_fields: dict[str, Any],
    *,
    current_state: str | None = None,
) -> StateApplyResult:
    """Write post-creation fields (state and audit fields) to a work item.

    Args:
        target: Target system client
        target_id: Work item id
        target_type: ADO work item type name, e.g. "Task"
        post_fields: Post-creation fields from the mapping
        current_state: State the work item is known to be in, if any

    Returns:
        StateApplyResult describing what was written; rejected and failed writes are never raised
    """
    desired = post_fields.get(STATE_FIELD)
    desired_state = str(desired) if desired else None
    result = StateApplyResult(desired_state=desired_state)
    if not post_fields:
        return result

    if target_type in TRANSITION_PATHS and desired_state:
        # Audit fields are not carried through workflow-constrained transitions
        dropped = sorted(ELEVATED_ONLY_FIELDS & post_fields.keys())
        if dropped:
            logger.debug(f"Work item {target_id}: not writing {', '.join(dropped)} for {target_type}")
        audit_fields = {k: v for k, v in post_fields.items() if k != STATE_FIELD and k not in ELEVATED_ONLY_FIELDS}
        plan = plan_transition(target_type, current_state, desired_state)
        if plan.steps:
            logger.debug(f"Work item {target_id}: state plan {' -> '.join(plan.steps)}")
        for step in plan.steps:
            if _write(target, target_id, {STATE_FIELD: step}, result):
                result.applied_states.append(step)
            else:
                result.failed_states.append(step)
                logger.warning(f"Work item {target_id}: transition to '{step}' failed, continuing with the plan")
        if audit_fields:
            result.fields_written = _patch(target, target_id, audit_fields, elevated=False)
    else:
        result.fields_written = _write(target, target_id, dict(post_fields), result)
        if desired_state and result.fields_written:
            result.applied_states.append(desired_state)
        elif desired_state:
            result.failed_states.append(desired_state)

    if desired_state:
        try:
            result.final_state = target.get_state(target_id)
        except AdoApiError as e:
            logger.warning(f"Work item {target_id}: could not read back the state: {e}")
            return result
        if not result.state_matches:
            logger.warning(
                f"Work item {target_id}: state is '{result.final_state}' but '{desired_state}' was requested"
            )
    return result
