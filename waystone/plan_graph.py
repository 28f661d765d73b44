"""Plan graph normalization, validation and traversal.

A workflow's plan graph is its step list plus conditional branches. Every step
also has an implicit fall-through edge to the next step in declaration order,
taken when no outgoing branch matches. The graph must stay acyclic.
"""

from __future__ import annotations

import heapq
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .conditions import evaluate_condition, validate_condition
from .contracts import Branch, PlanGraph, Step, Workflow
from .errors import PlanGraphCycleError, WorkflowValidationError


@dataclass
class CycleReport:
    has_cycle: bool
    cycle_path: List[str] = field(default_factory=list)


def _step_index(workflow: Workflow) -> Dict[str, int]:
    return {step.id: index for index, step in enumerate(workflow.steps)}


def sort_branches(branches: List[Branch]) -> List[Branch]:
    """Order branches by ascending priority, keeping creation order for ties."""
    return sorted(branches, key=lambda branch: branch.priority)


def ensure_plan_graph(workflow: Workflow) -> PlanGraph:
    """Return the canonical plan graph for ``workflow``.

    The entry step falls back to the first declared step, branches that
    reference unknown steps are dropped and the rest are sorted by priority.
    """
    base = workflow.plan_graph or PlanGraph()
    step_ids = {step.id for step in workflow.steps}
    first_step_id = workflow.steps[0].id if workflow.steps else ""

    entry_step_id = base.entry_step_id if base.entry_step_id in step_ids else first_step_id
    branches = [
        branch
        for branch in base.branches
        if branch.from_step_id in step_ids and branch.to_step_id in step_ids
    ]
    return PlanGraph(entry_step_id=entry_step_id, branches=sort_branches(branches))


def outgoing_branches(workflow: Workflow, step_id: str) -> List[Branch]:
    graph = ensure_plan_graph(workflow)
    return [branch for branch in graph.branches if branch.from_step_id == step_id]


def next_declared_step_id(workflow: Workflow, step_id: str) -> Optional[str]:
    index = _step_index(workflow).get(step_id)
    if index is None or index + 1 >= len(workflow.steps):
        return None
    return workflow.steps[index + 1].id


def build_adjacency(workflow: Workflow) -> Dict[str, List[str]]:
    """Map each step to its successors: branch targets, then the fall-through."""
    graph = ensure_plan_graph(workflow)
    adjacency: Dict[str, List[str]] = {step.id: [] for step in workflow.steps}
    for branch in graph.branches:
        targets = adjacency[branch.from_step_id]
        if branch.to_step_id not in targets:
            targets.append(branch.to_step_id)
    for step in workflow.steps:
        fallthrough = next_declared_step_id(workflow, step.id)
        if fallthrough and fallthrough not in adjacency[step.id]:
            adjacency[step.id].append(fallthrough)
    return adjacency


def detect_cycle(workflow: Workflow) -> CycleReport:
    """Depth-first search for a cycle; returns the offending path if found."""
    adjacency = build_adjacency(workflow)
    state: Dict[str, str] = {}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        state[node] = "visiting"
        stack.append(node)
        for neighbor in adjacency.get(node, []):
            neighbor_state = state.get(neighbor)
            if neighbor_state == "visiting":
                start = stack.index(neighbor)
                return stack[start:] + [neighbor]
            if neighbor_state is None:
                cycle = visit(neighbor)
                if cycle:
                    return cycle
        stack.pop()
        state[node] = "visited"
        return None

    for step in workflow.steps:
        if step.id in state:
            continue
        cycle = visit(step.id)
        if cycle:
            return CycleReport(has_cycle=True, cycle_path=cycle)
    return CycleReport(has_cycle=False)


def topological_sort(workflow: Workflow) -> List[Step]:
    """Static execution order, ties broken by declaration order.

    Raises:
        PlanGraphCycleError: If the plan graph has a cycle.
    """
    if len(workflow.steps) <= 1:
        return list(workflow.steps)

    report = detect_cycle(workflow)
    if report.has_cycle:
        raise PlanGraphCycleError(report.cycle_path)

    adjacency = build_adjacency(workflow)
    index = _step_index(workflow)
    indegree = Counter({step.id: 0 for step in workflow.steps})
    for targets in adjacency.values():
        for target in targets:
            indegree[target] += 1

    ready: List[Tuple[int, str]] = [
        (index[step_id], step_id) for step_id, degree in indegree.items() if degree == 0
    ]
    heapq.heapify(ready)
    ordered: List[str] = []
    while ready:
        _, step_id = heapq.heappop(ready)
        ordered.append(step_id)
        for target in adjacency[step_id]:
            indegree[target] -= 1
            if indegree[target] == 0:
                heapq.heappush(ready, (index[target], target))

    by_id = {step.id: step for step in workflow.steps}
    return [by_id[step_id] for step_id in ordered]


def validate_workflow(workflow: Workflow) -> PlanGraph:
    """Validate the definition and return its canonical plan graph.

    Raises:
        WorkflowValidationError: On duplicate ids, dangling branch references
            or malformed conditions.
        PlanGraphCycleError: If the graph is cyclic.
    """
    problems: List[str] = []
    step_ids = [step.id for step in workflow.steps]
    duplicates = sorted(step_id for step_id, count in Counter(step_ids).items() if count > 1)
    if duplicates:
        problems.append(f"Duplicate step id(s): {', '.join(duplicates)}.")

    known = set(step_ids)
    graph = workflow.plan_graph
    if graph is not None:
        if graph.entry_step_id and graph.entry_step_id not in known:
            problems.append(f"Entry step {graph.entry_step_id} does not exist.")

        branch_ids = [branch.id for branch in graph.branches]
        duplicate_branches = sorted(
            branch_id for branch_id, count in Counter(branch_ids).items() if count > 1
        )
        if duplicate_branches:
            problems.append(f"Duplicate branch id(s): {', '.join(duplicate_branches)}.")

        for branch in graph.branches:
            if branch.from_step_id not in known:
                problems.append(
                    f"Branch {branch.id} starts at unknown step {branch.from_step_id}."
                )
            if branch.to_step_id not in known:
                problems.append(f"Branch {branch.id} targets unknown step {branch.to_step_id}.")
            problems.extend(validate_condition(branch.condition))

    if problems:
        raise WorkflowValidationError(" ".join(problems))

    report = detect_cycle(workflow)
    if report.has_cycle:
        raise PlanGraphCycleError(report.cycle_path)
    return ensure_plan_graph(workflow)


def resolve_next_step_id(
    workflow: Workflow, current_step_id: str, context: Dict[str, Any]
) -> Tuple[Optional[str], Optional[Branch]]:
    """Pick the step that follows ``current_step_id``.

    Branches are tried in priority order and the first match wins. Without a
    match the walk falls through to the next declared step. Returns the chosen
    step id (``None`` when the step is terminal) and the branch taken.
    """
    for branch in outgoing_branches(workflow, current_step_id):
        if evaluate_condition(branch.condition, context):
            return branch.to_step_id, branch
    return next_declared_step_id(workflow, current_step_id), None


def traverse(
    workflow: Workflow,
    context: Optional[Dict[str, Any]] = None,
    start_step_id: Optional[str] = None,
) -> List[str]:
    """Preview the path a run would take for a fixed ``context``."""
    if not workflow.steps:
        return []
    graph = ensure_plan_graph(workflow)
    known = {step.id for step in workflow.steps}
    cursor: Optional[str] = start_step_id if start_step_id in known else graph.entry_step_id
    path: List[str] = []
    visited = set()
    while cursor and cursor in known and cursor not in visited:
        path.append(cursor)
        visited.add(cursor)
        cursor, _ = resolve_next_step_id(workflow, cursor, context or {})
    return path
