"""Example submitting a namespace to Argo and following it with the mirror."""

import asyncio
import sys

from idpflow import WorkflowService
from idpflow.config import load_config


async def main():
    namespace = sys.argv[1] if len(sys.argv) > 1 else "team-a"

    # Reads config.yaml or IDPFLOW_CONFIG; set engine: argo there
    config = load_config()
    service = WorkflowService.from_config(config)

    workflow = await service.start_namespace_provisioning(
        {"namespaceName": namespace, "description": "Created from the argo example"}
    )
    workflow = await service.wait_for(workflow.id)
    print(f"Submitted {workflow.remote_ref} for workflow {workflow.id}")

    while not workflow.is_terminal:
        await asyncio.sleep(config.mirror.poll_interval)
        report = await service.sync_remote()
        for workflow_id, error in report.errors.items():
            print(f"Sync error for {workflow_id}: {error}")
        workflow = await service.get_workflow(workflow.id)
        steps = ", ".join(f"{s.name}={s.status.value}" for s in await service.get_steps(workflow.id))
        print(f"{workflow.status.value}: {steps}")

    await service.close()


if __name__ == "__main__":
    asyncio.run(main())
