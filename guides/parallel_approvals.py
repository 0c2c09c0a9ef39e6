"""Example of two approvals meeting at a join before continuing."""

import asyncio

from stationflow import build_engine

APPROVALS = {
    "id": "approvals",
    "nodes": [
        {"id": "request", "config": {"kind": "noop"}},
        {"id": "finance", "config": {"kind": "hook"}},
        {"id": "legal", "config": {"kind": "hook"}},
        {
            "id": "both",
            "config": {
                "kind": "join",
                "conditions": [
                    'nodes.finance.output.body.decision = "approve"',
                    'nodes.legal.output.body.decision = "approve"',
                ],
            },
        },
        {"id": "publish", "config": {"kind": "noop"}},
    ],
    "edges": [
        {"source_id": "request", "target_id": "finance"},
        {"source_id": "request", "target_id": "legal"},
        {"source_id": "finance", "target_id": "both"},
        {"source_id": "legal", "target_id": "both"},
        {"source_id": "both", "target_id": "publish"},
    ],
}


async def main():
    async with build_engine() as engine:
        await engine.load_workflow(APPROVALS)
        instance = await engine.start_instance("approvals", {"document": "contract.pdf"})
        await engine.run_worker(lifespan=2)

        for team in ("finance", "legal"):
            await engine.complete_hook(
                "approvals", team, instance.id, {"decision": "approve"}
            )
            print(f"✅ {team} approved")

        await engine.run_worker(lifespan=2)
        finished = await engine.repository.get_instance(instance.id)
        print(f"📋 Instance {finished.id} is {finished.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
