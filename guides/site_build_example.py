"""Example driving a small site build through the workflow service."""

import asyncio

from pagewright import CreateTaskParams, HandlerRegistry, TaskResult, WorkflowService
from pagewright.constants import Stage, WorkflowType
from pagewright.persistence import InMemoryWorkflowRepository

registry = HandlerRegistry()


@registry.handler(Stage.INTAKE)
async def intake(task, cancel):
    questionnaire = task.input["questionnaire"]
    pages = ["home", "about", "contact"]
    return TaskResult.ok(
        {"business_name": questionnaire["business_name"]},
        [
            CreateTaskParams(
                task_type=Stage.COPYWRITE,
                target_entity=page,
                input={"page_slug": page, "business_name": questionnaire["business_name"]},
                depends_on=[task.id],
            )
            for page in pages
        ],
    )


@registry.handler(Stage.COPYWRITE)
async def copywrite(task, cancel):
    cancel.raise_if_cancelled()
    slug = task.input["page_slug"]
    return TaskResult.ok({"html": f"<h1>{task.input['business_name']}: {slug}</h1>"})


async def main():
    """Start a run and tick until nothing is left to dispatch."""
    service = WorkflowService(registry, repository=InMemoryWorkflowRepository())

    run = await service.start_run(
        "demo",
        WorkflowType.SITE_BUILD,
        {"business_name": "Acme Bakery", "industry": "bakery", "city": "Austin", "state": "TX"},
    )
    print(f"🚀 Started run {run.id}")

    while True:
        report = await service.tick(run.id)
        if report.cycle.claimed == 0:
            break
        print(f"⚙️  Dispatched {report.cycle.claimed} task(s)")

    status = await service.get_status("demo", run.id)
    print(f"📋 Stage: {status.progress.current_stage_label} ({status.progress.overall_percent}%)")
    print(f"🩺 Health: {status.health.status.value}")
    for task in status.tasks:
        print(f"  - {task.task_type.value} {task.target_entity or ''} [{task.status.value}]")


if __name__ == "__main__":
    asyncio.run(main())
