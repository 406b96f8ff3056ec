"""Reconciliation core: converge recorded state to declared state.

Layered flow:
1) build the declaration DAG (``graph``)
2) optionally re-read real objects to detect drift (``refresh``)
3) diff declarations against known state into a plan (``planner``)
4) execute the plan's step graph, writing state after every step (``executor``)

``engine`` wraps these behind a synchronous, lock-holding facade.
"""

from __future__ import annotations

from .diff import AttributeChange, diff_attributes, values_equal
from .engine import ReconciliationEngine
from .executor import CancellationToken, Executor
from .graph import AddressGraph, DependencyGraph, build_dependency_graph
from .plan import Action, Change, ChangeReason, Plan, StepGraph, StepKey, StepKind
from .planner import Planner
from .refresh import Refresher
from .results import ApplyResult, ChangeFailure, RefreshResult
from .retry import RetryPolicy, call_with_retry

__all__ = [
    "Action",
    "AddressGraph",
    "ApplyResult",
    "AttributeChange",
    "CancellationToken",
    "Change",
    "ChangeFailure",
    "ChangeReason",
    "DependencyGraph",
    "Executor",
    "Plan",
    "Planner",
    "ReconciliationEngine",
    "RefreshResult",
    "Refresher",
    "RetryPolicy",
    "StepGraph",
    "StepKey",
    "StepKind",
    "build_dependency_graph",
    "call_with_retry",
    "diff_attributes",
    "values_equal",
]
