"""
edges.py

Conditional routing for the iteration loop.

File responsibilities:
- Pure routing: (GraphState) -> next node key. No side effects.
- Each source node owns an ordered list of (predicate, target) pairs; the first
  predicate that holds wins, and the last entry of every list is unconditional.
- workflow.py attaches these with add_conditional_edges.

Node keys:
  perceive, plan, act, observe, evaluate, recover, complete, end (-> LangGraph END)
"""

from __future__ import annotations

from typing import Callable, Dict, List, Tuple

from .state import GraphState


# Node key constants

NODE_PERCEIVE = "perceive"
NODE_PLAN = "plan"
NODE_ACT = "act"
NODE_OBSERVE = "observe"
NODE_EVALUATE = "evaluate"
NODE_RECOVER = "recover"
NODE_COMPLETE = "complete"
NODE_END = "end"  # workflow.py maps "end" -> END

Predicate = Callable[[GraphState], bool]


def _always(state: GraphState) -> bool:
    return True


def _recovery_exhausted(state: GraphState) -> bool:
    return state.recovery_attempts >= state.max_recovery_attempts


# Ordered routing table

EDGES: Dict[str, List[Tuple[Predicate, str]]] = {
    NODE_PERCEIVE: [
        (lambda s: s.task_complete, NODE_COMPLETE),
        (_always, NODE_PLAN),
    ],
    NODE_PLAN: [
        (lambda s: s.has_tool_calls, NODE_ACT),
        (_always, NODE_EVALUATE),
    ],
    NODE_ACT: [
        (_always, NODE_OBSERVE),
    ],
    NODE_OBSERVE: [
        (_always, NODE_EVALUATE),
    ],
    NODE_EVALUATE: [
        (lambda s: s.task_complete, NODE_COMPLETE),
        (lambda s: s.is_stuck, NODE_RECOVER),
        (_always, NODE_PERCEIVE),
    ],
    NODE_RECOVER: [
        (_recovery_exhausted, NODE_COMPLETE),
        (_always, NODE_PERCEIVE),
    ],
    NODE_COMPLETE: [
        (_always, NODE_END),
    ],
}


def route(source: str, state: GraphState) -> str:
    for predicate, target in EDGES[source]:
        if predicate(state):
            return target
    raise KeyError(f"No route from {source}")


def targets_of(source: str) -> List[str]:
    return [target for _, target in EDGES[source]]


# Per-node routers (what workflow.py registers)

def route_from_perceive(state: GraphState) -> str:
    return route(NODE_PERCEIVE, state)


def route_from_plan(state: GraphState) -> str:
    return route(NODE_PLAN, state)


def route_from_evaluate(state: GraphState) -> str:
    return route(NODE_EVALUATE, state)


def route_from_recover(state: GraphState) -> str:
    return route(NODE_RECOVER, state)
