import pytest
import pytest_asyncio

from pagewright.constants import Stage, WorkflowType
from pagewright.contracts import (
    RunErrorEntry,
    RunStatus,
    TaskStatus,
    WorkflowRun,
    WorkflowTask,
)
from pagewright.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    SQLWorkflowRepository,
)


@pytest_asyncio.fixture(params=["memory", "sqlite", "sqlmodel"])
async def repository(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowRepository()
    elif request.param == "sqlite":
        repo = SQLiteWorkflowRepository(tmp_path / "runs.db")
        yield repo
        repo.close()
    else:
        repo = SQLWorkflowRepository(f"sqlite+aiosqlite:///{tmp_path / 'runs.db'}")
        yield repo
        await repo.dispose()


@pytest.mark.asyncio
async def test_run_round_trip(repository):
    run = WorkflowRun(owner="alice", workflow_type=WorkflowType.SITE_BUILD, proposal_id="p-9")
    await repository.create_run(run)

    stored = await repository.get_run(run.id)
    assert stored.id == run.id
    assert stored.owner == "alice"
    assert stored.workflow_type == WorkflowType.SITE_BUILD
    assert stored.status == RunStatus.RUNNING
    assert stored.current_stage == Stage.INTAKE
    assert stored.proposal_id == "p-9"
    assert stored.created_at == run.created_at
    assert await repository.get_run("missing") is None


@pytest.mark.asyncio
async def test_run_update_and_compare_and_set(repository):
    run = await repository.create_run(
        WorkflowRun(owner="alice", workflow_type=WorkflowType.BLOG_BATCH)
    )
    entry = RunErrorEntry(stage="research", task="research", error="boom")

    paused = await repository.update_run(
        run.id,
        {"status": RunStatus.PAUSED, "pause_reason": "hold", "error_log": [entry]},
        expected_status=RunStatus.RUNNING,
    )
    assert paused.status == RunStatus.PAUSED
    assert paused.updated_at >= run.updated_at

    lost = await repository.update_run(
        run.id, {"status": RunStatus.CANCELLED}, expected_status=RunStatus.RUNNING
    )
    assert lost is None

    stored = await repository.get_run(run.id)
    assert stored.status == RunStatus.PAUSED
    assert stored.pause_reason == "hold"
    assert stored.error_log[0].error == "boom"
    assert stored.error_log[0].stage == "research"


@pytest.mark.asyncio
async def test_list_runs_filters(repository):
    alice = await repository.create_run(
        WorkflowRun(owner="alice", workflow_type=WorkflowType.SITE_BUILD)
    )
    bob = await repository.create_run(
        WorkflowRun(owner="bob", workflow_type=WorkflowType.SITE_BUILD)
    )
    await repository.update_run(bob.id, {"status": RunStatus.PAUSED})

    assert [r.id for r in await repository.list_runs(owner="alice")] == [alice.id]
    assert [r.id for r in await repository.list_runs(status=RunStatus.PAUSED)] == [bob.id]
    assert len(await repository.list_runs()) == 2


@pytest.mark.asyncio
async def test_task_round_trip_and_filters(repository):
    run = await repository.create_run(
        WorkflowRun(owner="alice", workflow_type=WorkflowType.SITE_BUILD)
    )
    first = await repository.create_task(
        WorkflowTask(
            run_id=run.id,
            task_type=Stage.RESEARCH,
            target_entity="market",
            input={"industry": "bakery", "services": ["bread", "cakes"]},
            priority=3,
        )
    )
    second = await repository.create_task(
        WorkflowTask(run_id=run.id, task_type=Stage.KB_BUILD, depends_on=[first.id])
    )

    stored = await repository.get_task(second.id)
    assert stored.depends_on == [first.id]
    assert stored.output is None

    research = await repository.list_tasks(run_id=run.id, task_type=Stage.RESEARCH)
    assert [t.id for t in research] == [first.id]
    assert research[0].input == {"industry": "bakery", "services": ["bread", "cakes"]}
    assert research[0].priority == 3

    assert [t.id for t in await repository.list_tasks(run_id=run.id)] == [first.id, second.id]
    assert {t.id for t in await repository.get_tasks([first.id, second.id, "nope"])} == {
        first.id,
        second.id,
    }
    assert await repository.get_tasks([]) == []


@pytest.mark.asyncio
async def test_task_claim_is_conditional(repository):
    run = await repository.create_run(
        WorkflowRun(owner="alice", workflow_type=WorkflowType.SITE_BUILD)
    )
    task = await repository.create_task(WorkflowTask(run_id=run.id, task_type=Stage.SITEMAP))

    claimed = await repository.update_task(
        task.id, {"status": TaskStatus.RUNNING}, expected_status=TaskStatus.QUEUED
    )
    assert claimed.status == TaskStatus.RUNNING
    assert (
        await repository.update_task(
            task.id, {"status": TaskStatus.RUNNING}, expected_status=TaskStatus.QUEUED
        )
        is None
    )

    done = await repository.update_task(
        task.id,
        {"status": TaskStatus.DONE, "output": {"pages": ["home", "about"]}},
        expected_status=TaskStatus.RUNNING,
    )
    assert done.output == {"pages": ["home", "about"]}
    assert (await repository.list_tasks(status=TaskStatus.DONE))[0].id == task.id
    assert await repository.update_task("missing", {"status": TaskStatus.DONE}) is None
