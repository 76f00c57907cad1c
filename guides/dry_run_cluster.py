"""Simple example showing a dry-run cluster provisioning workflow."""

import asyncio

from idpflow import WorkflowService
from idpflow.config import IdpFlowConfig


async def main():
    """Log the manifests a cluster would be created from, without applying them."""
    service = WorkflowService.from_config(IdpFlowConfig(engine="direct"))

    workflow = await service.start_cluster_provisioning(
        {
            "clusterName": "demo",
            "location": "eastus",
            "nodePoolType": "memory-optimized",
            "dryRun": True,
        }
    )
    workflow = await service.wait_for(workflow.id)

    print(f"Workflow {workflow.id} finished: {workflow.status.value}")
    for step in await service.get_steps(workflow.id):
        print(f"  {step.name}: {step.status.value}{' (skipped)' if step.skipped else ''}")
    for entry in await service.get_logs(workflow.id):
        print(entry.message)

    await service.close()


if __name__ == "__main__":
    asyncio.run(main())
