import pytest

from waystone.contracts import Branch, Condition, PlanGraph, Step, Workflow
from waystone.errors import WorkflowValidationError
from waystone.history import ChangeHistory, diff_snapshots, snapshot_workflow
from waystone.persistence import InMemoryWorkflowRepository


def _workflow(workflow_id: str = "wf-1") -> Workflow:
    steps = [
        Step(id="collect", title="Collect", kind="transform", action_id="transform.collect_context"),
        Step(id="summarize", title="Summarize", kind="transform", action_id="transform.summarize"),
        Step(id="publish", title="Publish", kind="artifact", action_id="artifact.publish"),
    ]
    branch = Branch(
        id="skip",
        from_step_id="collect",
        to_step_id="publish",
        condition=Condition(source_path="current.output.empty", operator="exists"),
    )
    return Workflow(
        id=workflow_id,
        user_id="user-1",
        name="Digest",
        steps=steps,
        plan_graph=PlanGraph(entry_step_id="collect", branches=[branch]),
    )


def test_identical_snapshots_have_empty_diff():
    workflow = _workflow()
    diff = diff_snapshots(snapshot_workflow(workflow), snapshot_workflow(workflow))
    assert diff.is_empty


def test_pure_reorder_is_not_a_change():
    workflow = _workflow()
    reordered = workflow.model_copy(update={"steps": list(reversed(workflow.steps))})
    diff = diff_snapshots(snapshot_workflow(workflow), snapshot_workflow(reordered))
    assert diff.is_empty


def test_diff_reports_added_removed_and_changed_ids():
    before = _workflow()
    after = before.model_copy(deep=True)
    after.steps = [step for step in after.steps if step.id != "summarize"]
    after.steps[0].title = "Collect everything"
    after.steps.append(Step(id="notify", title="Notify", kind="transform", action_id="transform.summarize"))
    after.plan_graph.branches[0].priority = 3
    after.plan_graph.branches.append(
        Branch(
            id="extra",
            from_step_id="collect",
            to_step_id="notify",
            condition=Condition(source_path="__always", operator="exists"),
        )
    )

    diff = diff_snapshots(snapshot_workflow(before), snapshot_workflow(after))
    assert diff.added_step_ids == ["notify"]
    assert diff.removed_step_ids == ["summarize"]
    assert diff.changed_step_ids == ["collect"]
    assert diff.added_branch_ids == ["extra"]
    assert diff.removed_branch_ids == []
    assert diff.changed_branch_ids == ["skip"]


def test_regex_flag_edit_changes_the_branch():
    before = _workflow()
    before.plan_graph.branches[0].condition = Condition(
        source_path="current.summary", operator="regex_match", value="^urgent"
    )
    after = before.model_copy(deep=True)
    after.plan_graph.branches[0].condition.regex_flags = "i"

    diff = diff_snapshots(snapshot_workflow(before), snapshot_workflow(after))
    assert diff.changed_branch_ids == ["skip"]
    assert diff.changed_step_ids == []


@pytest.mark.asyncio
async def test_history_lists_newest_first_with_limit():
    history = ChangeHistory(InMemoryWorkflowRepository())
    workflow = _workflow()

    first = await history.record_save(before=None, after=workflow)
    second = await history.record_save(before=workflow, after=workflow)
    third = await history.record_save(before=workflow, after=workflow, summary="Touched")

    entries = await history.list("user-1", "wf-1")
    assert [entry.id for entry in entries] == [third.id, second.id, first.id]
    assert first.change_type == "workflow_created"
    assert second.change_type == "plan_modified"
    assert third.summary == "Touched"

    assert len(await history.list("user-1", "wf-1", limit=2)) == 2
    assert await history.list("user-1", "wf-1", limit=0) == []
    assert await history.list("someone-else", "wf-1") == []


@pytest.mark.asyncio
async def test_diff_requires_entries_of_the_same_workflow():
    history = ChangeHistory(InMemoryWorkflowRepository())
    left = await history.record_save(before=None, after=_workflow("wf-1"))
    right = await history.record_save(before=None, after=_workflow("wf-2"))

    with pytest.raises(WorkflowValidationError):
        history.diff(left, right)

    again = await history.record_save(before=_workflow("wf-1"), after=_workflow("wf-1"))
    assert history.diff(left, again).is_empty
