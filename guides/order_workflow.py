"""Example running an HTTP call, a timer and a hook end to end."""

import asyncio

from stationflow import Workflow, build_engine

ORDER = {
    "id": "order",
    "name": "Order processing",
    "nodes": [
        {
            "id": "reserve",
            "label": "Reserve stock",
            "config": {"kind": "http", "url": "https://httpbin.org/post"},
        },
        {"id": "cool-off", "config": {"kind": "timer", "delay_ms": 2000}},
        {"id": "approve", "label": "Manual approval", "config": {"kind": "hook"}},
        {"id": "done", "config": {"kind": "noop"}},
    ],
    "edges": [
        {"source_id": "reserve", "target_id": "cool-off"},
        {"source_id": "cool-off", "target_id": "approve"},
        {"source_id": "approve", "target_id": "done"},
    ],
}


async def main():
    """Start an order instance and run the workers for a while."""
    async with build_engine() as engine:
        workflow = await engine.load_workflow(Workflow.model_validate(ORDER))
        instance = await engine.start_instance(workflow.id, {"orderId": 42})
        print(f"✅ Started instance {instance.id}")

        # Execute the HTTP node and wait for the timer
        await engine.run(lifespan=5)

        # Complete the hook as an external system would
        closure = await engine.complete_hook(
            workflow.id, "approve", instance.id, {"approved": True}
        )
        print(f"🔗 Hook completed: {closure is not None}")

        await engine.run(lifespan=2)

        finished = await engine.repository.get_instance(instance.id)
        print(f"📋 Instance {finished.id} is {finished.status.value}")
        print(f"📦 Output: {finished.output}")


if __name__ == "__main__":
    asyncio.run(main())
