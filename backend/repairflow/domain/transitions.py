# backend/repairflow/domain/transitions.py
from __future__ import annotations

from typing import Optional

from .enums import WorkflowStatus as WS, DisputeStatus as DS, TERMINAL_WORKFLOW
from .errors import IllegalTransitionError

# -----------------------------------------------------------------------------
# Maintenance request lifecycle
# -----------------------------------------------------------------------------
# Each edge names the only producer allowed to drive it ("via"). A caller using
# the wrong producer gets IllegalTransitionError even if the edge exists.
#
#   submitted -> approved | denied       via approval
#   approved  -> bidding                 via marketplace     (non-emergency)
#   approved  -> assigned                via dispatch        (emergency)
#   bidding   -> assigned                via selection
#   assigned  -> in_progress             via start_work
#   in_progress -> completed             via completion      (photo gate)
#   any non-terminal -> cancelled        via cancel
# -----------------------------------------------------------------------------

REQUEST_EDGES: dict[tuple[WS, WS], str] = {
    (WS.SUBMITTED, WS.APPROVED): "approval",
    (WS.SUBMITTED, WS.DENIED): "approval",
    (WS.APPROVED, WS.BIDDING): "marketplace",
    (WS.APPROVED, WS.ASSIGNED): "dispatch",
    (WS.BIDDING, WS.ASSIGNED): "selection",
    (WS.ASSIGNED, WS.IN_PROGRESS): "start_work",
    (WS.IN_PROGRESS, WS.COMPLETED): "completion",
}

for _s in WS:
    if _s not in TERMINAL_WORKFLOW:
        REQUEST_EDGES[(_s, WS.CANCELLED)] = "cancel"


def allowed_request_targets(current: str | WS) -> set[WS]:
    cur = WS.parse(current)
    return {dst for (src, dst) in REQUEST_EDGES if src == cur}


def assert_request_transition(
    current: str | WS,
    target: str | WS,
    *,
    via: str,
    is_emergency: Optional[bool] = None,
) -> None:
    cur = WS.parse(current)
    dst = WS.parse(target)

    producer = REQUEST_EDGES.get((cur, dst))
    if producer is None:
        raise IllegalTransitionError("maintenance_request", cur.value, dst.value)
    if producer != via:
        raise IllegalTransitionError(
            "maintenance_request", cur.value, dst.value, reason=f"only reachable via {producer}, not {via}"
        )

    if (cur, dst) == (WS.APPROVED, WS.BIDDING) and is_emergency:
        raise IllegalTransitionError(
            "maintenance_request", cur.value, dst.value, reason="emergency requests are dispatched, not bid"
        )
    if (cur, dst) == (WS.APPROVED, WS.ASSIGNED) and is_emergency is False:
        raise IllegalTransitionError(
            "maintenance_request", cur.value, dst.value, reason="direct dispatch is reserved for emergencies"
        )


# -----------------------------------------------------------------------------
# Dispute lifecycle
# -----------------------------------------------------------------------------

DISPUTE_EDGES: dict[DS, frozenset[DS]] = {
    DS.OPEN: frozenset({DS.IN_REVIEW, DS.CLOSED}),
    DS.IN_REVIEW: frozenset({DS.MEDIATION, DS.RESOLVED}),
    DS.MEDIATION: frozenset({DS.RESOLVED}),
    DS.RESOLVED: frozenset({DS.CLOSED}),
    DS.CLOSED: frozenset(),
}


def assert_dispute_transition(current: str | DS, target: str | DS) -> None:
    cur = DS.parse(current)
    dst = DS.parse(target)
    if dst not in DISPUTE_EDGES[cur]:
        raise IllegalTransitionError("dispute", cur.value, dst.value)
