"""End-to-end tests through the owner-scoped service surface."""

import asyncio

import pytest

from pagewright.config import HealthConfig, PagewrightConfig
from pagewright.constants import Stage, WorkflowType
from pagewright.contracts import CreateTaskParams, RunStatus, TaskResult, TaskStatus
from pagewright.errors import InvalidTransitionError, RunNotFoundError, TaskNotFoundError
from pagewright.handlers.images import ImageGenerateHandler, ImageStoreHandler
from pagewright.health import HealthStatus
from pagewright.imaging.qa import GeneratedImage, ImageQaLoop, ReviewVerdict
from pagewright.imaging.store import LocalImageStore
from pagewright.persistence import InMemoryWorkflowRepository
from pagewright.registry import HandlerRegistry
from pagewright.service import WorkflowService

INTAKE = {"business_name": "Acme Bakery", "industry": "bakery", "city": "Austin", "state": "TX"}
RESEARCH = {"task_type": "research", "input": {"industry": "bakery"}}


class Generator:
    async def generate(self, prompt, index):
        return GeneratedImage(base64="aW1n", prompt=prompt)


class Reviewer:
    async def review(self, image, prompt, section_context):
        return ReviewVerdict(approved=True)


class Rewriter:
    async def rewrite(self, prompt, feedback, fix_prompt, text_detected):
        return prompt


def _registry(tmp_path):
    registry = HandlerRegistry()

    @registry.handler(Stage.INTAKE)
    async def intake(task, cancel):
        questionnaire = task.input["questionnaire"]
        return TaskResult.ok(
            {"business": questionnaire["business_name"]},
            [
                CreateTaskParams(
                    task_type=Stage.IMAGE_GENERATE,
                    target_entity="hero",
                    input={"prompt": f"{questionnaire['industry']} storefront", "page_slug": "home"},
                    depends_on=[task.id],
                )
            ],
        )

    @registry.handler(Stage.PUBLISH)
    async def publish(task, cancel):
        return TaskResult.ok({"published": True})

    loop = ImageQaLoop(Generator(), Reviewer(), Reviewer(), Rewriter())
    registry.register(Stage.IMAGE_GENERATE, ImageGenerateHandler(loop))
    registry.register(Stage.IMAGE_STORE, ImageStoreHandler(LocalImageStore(tmp_path)))
    return registry


def _service(tmp_path, **config):
    return WorkflowService(
        _registry(tmp_path),
        repository=InMemoryWorkflowRepository(),
        config=PagewrightConfig(**config),
    )


@pytest.mark.asyncio
async def test_pipeline_runs_to_completion(tmp_path):
    service = _service(tmp_path)
    run = await service.start_run("alice", WorkflowType.SINGLE_PAGE, INTAKE)

    await service.tick()  # intake
    await service.tick()  # image_generate
    await service.tick()  # image_store

    stored = await service.list_tasks("alice", run.id, task_type=Stage.IMAGE_STORE)
    assert len(stored) == 1
    assert stored[0].status == TaskStatus.DONE
    assert (tmp_path / "home_image_0.png").read_bytes() == b"img"

    publish = await service.create_task(
        "alice",
        {"run_id": run.id, "task_type": "publish", "depends_on": [stored[0].id]},
    )
    report = await service.tick()
    assert report.cycle.succeeded == 1
    assert report.runs[0].status == RunStatus.COMPLETED

    status = await service.get_status("alice", run.id)
    assert status.run.status == RunStatus.COMPLETED
    assert status.run.current_stage == Stage.PUBLISH
    assert status.progress.overall_percent == 50
    assert status.health.status == HealthStatus.HEALTHY
    assert publish.id in {t.id for t in status.tasks}


@pytest.mark.asyncio
async def test_other_owners_cannot_see_or_steer_runs(tmp_path):
    service = _service(tmp_path)
    run = await service.start_run("alice", WorkflowType.SITE_BUILD, INTAKE)
    root = (await service.list_tasks("alice", run.id))[0]

    with pytest.raises(RunNotFoundError):
        await service.get_status("mallory", run.id)
    with pytest.raises(RunNotFoundError):
        await service.pause_run("mallory", run.id)
    with pytest.raises(TaskNotFoundError):
        await service.get_task("mallory", root.id)
    with pytest.raises(RunNotFoundError):
        await service.create_task("mallory", {"run_id": run.id, **RESEARCH})
    assert await service.list_runs("mallory") == []


@pytest.mark.asyncio
async def test_retry_reopens_a_failed_run(tmp_path):
    service = _service(tmp_path)
    run = await service.start_run("alice", WorkflowType.SITE_BUILD)
    # no questionnaire: the intake handler raises KeyError every time
    for _ in range(3):
        await service.tick()

    root = (await service.list_tasks("alice", run.id))[0]
    assert root.status == TaskStatus.FAILED
    status = await service.get_status("alice", run.id)
    assert status.run.status == RunStatus.FAILED
    assert status.health.status == HealthStatus.CRITICAL

    retried = await service.retry_task("alice", root.id)
    assert retried.status == TaskStatus.QUEUED
    assert (await service.get_status("alice", run.id)).run.status == RunStatus.RUNNING


@pytest.mark.asyncio
async def test_rejected_retry_leaves_a_failed_run_failed(tmp_path):
    service = _service(tmp_path)
    run = await service.start_run("alice", WorkflowType.SITE_BUILD)
    root = (await service.list_tasks("alice", run.id))[0]
    sitemap = await service.create_task(
        "alice", {"run_id": run.id, "task_type": "sitemap", "depends_on": [root.id]}
    )
    for _ in range(3):
        await service.tick()
    assert (await service.get_status("alice", run.id)).run.status == RunStatus.FAILED

    with pytest.raises(InvalidTransitionError):
        await service.retry_task("alice", sitemap.id)

    status = await service.get_status("alice", run.id)
    assert status.run.status == RunStatus.FAILED
    assert (await service.get_task("alice", sitemap.id)).status == TaskStatus.QUEUED


@pytest.mark.asyncio
async def test_pause_resume_and_cancel_through_service(tmp_path):
    service = _service(tmp_path)
    run = await service.start_run("alice", WorkflowType.BLOG_BATCH, INTAKE)

    paused = await service.pause_run("alice", run.id, "Waiting on brand guide")
    assert paused.status == RunStatus.PAUSED
    assert (await service.tick()).cycle.claimed == 0

    await service.resume_run("alice", run.id)
    cancelled = await service.cancel_run("alice", run.id)
    assert cancelled.status == RunStatus.CANCELLED
    tasks = await service.list_tasks("alice", run.id, status=TaskStatus.CANCELLED)
    assert len(tasks) == 1


@pytest.mark.asyncio
async def test_tick_recovers_stale_tasks(tmp_path):
    service = _service(tmp_path, health=HealthConfig(stale_after_seconds=0.01))
    run = await service.start_run("alice", WorkflowType.SITE_BUILD, INTAKE)
    root = (await service.list_tasks("alice", run.id))[0]
    await service.repository.update_task(root.id, {"status": TaskStatus.RUNNING})

    await asyncio.sleep(0.03)
    report = await service.tick()
    assert report.recovery.recovered == [root.id]
    # recovered and dispatched again in the same tick
    assert report.cycle.succeeded == 1
