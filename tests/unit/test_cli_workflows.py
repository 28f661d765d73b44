import asyncio

from typer.testing import CliRunner

import waystone.persistence as persistence
from waystone.cli import app
from waystone.contracts import DeadLetterEntry, Step, Workflow
from waystone.persistence import InMemoryWorkflowRepository

USER = "local"


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _digest(workflow_id: str, with_review: bool = False) -> Workflow:
    steps = [Step(id="collect", title="Collect", kind="transform", action_id="transform.collect_context")]
    if with_review:
        steps.append(Step(id="review", title="Review", kind="checkpoint", action_id="checkpoint.review"))
    steps.append(Step(id="publish", title="Publish", kind="artifact", action_id="artifact.publish"))
    return Workflow(id=workflow_id, user_id=USER, name=f"Digest {workflow_id}", status="ready", steps=steps)


def test_workflow_list_shows_saved_workflows():
    repo = _setup_repo()
    asyncio.run(repo.save_workflow(_digest("wf-one")))
    asyncio.run(repo.save_workflow(_digest("wf-two")))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, f"Command failed with exit code {result.exit_code}. Output: {result.stdout}"
    assert "wf-one" in result.stdout
    assert "wf-two" in result.stdout

    other_user = runner.invoke(app, ["workflow", "list", "--user", "someone-else"])
    assert "No workflows found" in other_user.stdout


def test_workflow_show_details_and_missing():
    repo = _setup_repo()
    asyncio.run(repo.save_workflow(_digest("wf-one")))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", "wf-one"])
    assert result.exit_code == 0, f"Command failed with exit code {result.exit_code}. Output: {result.stdout}"
    assert "Digest wf-one" in result.stdout
    assert "collect [transform]" in result.stdout

    missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Workflow missing-id not found" in missing.stdout


def test_workflow_run_prints_step_results():
    repo = _setup_repo()
    asyncio.run(repo.save_workflow(_digest("wf-one")))

    result = CliRunner().invoke(app, ["workflow", "run", "wf-one", "--variables", '{"week": 12}'])
    assert result.exit_code == 0, result.stdout
    assert "Status: completed" in result.stdout
    assert "collect: completed" in result.stdout
    assert "publish: completed" in result.stdout

    executions = asyncio.run(repo.list_executions(USER, "wf-one"))
    assert executions[0].context == {"week": 12}


def test_checkpoint_list_and_resolve():
    repo = _setup_repo()
    asyncio.run(repo.save_workflow(_digest("wf-review", with_review=True)))
    runner = CliRunner()

    run = runner.invoke(app, ["workflow", "run", "wf-review"])
    assert "Status: checkpoint_required" in run.stdout

    listed = runner.invoke(app, ["checkpoint", "list"])
    assert listed.exit_code == 0
    rows = [line for line in listed.stdout.splitlines() if line.startswith("checkpoint-")]
    assert len(rows) == 1
    request_id = rows[0].split("\t")[0]

    resolved = runner.invoke(app, ["checkpoint", "resolve", request_id, "--decision", "approve"])
    assert resolved.exit_code == 0, resolved.stdout
    assert "approved" in resolved.stdout
    assert "Status: completed" in resolved.stdout

    again = runner.invoke(app, ["checkpoint", "resolve", request_id, "--decision", "approve"])
    assert again.exit_code == 1
    assert "already resolved" in again.stdout

    bad = runner.invoke(app, ["checkpoint", "resolve", request_id, "--decision", "maybe"])
    assert bad.exit_code == 1


def test_dlq_list_and_resolve():
    repo = _setup_repo()
    entry = DeadLetterEntry(user_id=USER, workflow_id="wf-one", reason="IMAP unavailable")
    asyncio.run(repo.save_dead_letter(entry))
    runner = CliRunner()

    listed = runner.invoke(app, ["dlq", "list"])
    assert entry.id in listed.stdout
    assert "IMAP unavailable" in listed.stdout

    resolved = runner.invoke(app, ["dlq", "resolve", entry.id])
    assert resolved.exit_code == 0
    assert "resolved" in resolved.stdout
    assert "Dead-letter queue is empty" in runner.invoke(app, ["dlq", "list"]).stdout
    assert entry.id in runner.invoke(app, ["dlq", "list", "--all"]).stdout


def test_workflow_save_reads_yaml(tmp_path):
    repo = _setup_repo()
    definition = tmp_path / "digest.yaml"
    definition.write_text(
        "id: wf-yaml\n"
        "name: From yaml\n"
        "steps:\n"
        "  - id: sum\n"
        "    title: Summarize\n"
        "    kind: transform\n"
        "    action_id: transform.summarize\n"
    )

    result = CliRunner().invoke(app, ["workflow", "save", str(definition)])
    assert result.exit_code == 0, result.stdout
    stored = asyncio.run(repo.get_workflow(USER, "wf-yaml"))
    assert stored.name == "From yaml"

    missing = CliRunner().invoke(app, ["workflow", "save", str(tmp_path / "nope.yaml")])
    assert missing.exit_code == 1
