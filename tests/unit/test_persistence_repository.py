import pytest

from stationflow.models import Workflow
from stationflow.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    Status,
    get_repository,
)

WORKFLOW = {
    "id": "wf",
    "name": "Example",
    "nodes": [
        {"id": "a", "label": "A", "config": {"kind": "http", "url": "http://x"}},
        {"id": "b", "config": {"kind": "timer", "ms": 250}},
        {"id": "c", "config": {"kind": "join", "conditions": ["x = 1"]}},
    ],
    "edges": [
        {"source_id": "a", "target_id": "b"},
        {"source_id": "b", "target_id": "c", "kind": "if", "condition": "x = 1"},
        {"source_id": "a", "target_id": "c", "kind": "loop"},
    ],
}


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkflowRepository()
    return SQLiteWorkflowRepository(tmp_path / "wf.db")


@pytest.mark.asyncio
async def test_graph_roundtrip(repo):
    await repo.save_workflow(Workflow.model_validate(WORKFLOW))

    wf = await repo.get_workflow("wf")
    assert wf is not None
    assert [n.id for n in wf.nodes] == ["a", "b", "c"]
    assert wf.node("b").config.delay_ms == 250
    assert [e.target_id for e in await repo.list_outbound_edges("a")] == ["b", "c"]
    assert [e.source_id for e in await repo.list_inbound_edges("c")] == ["b", "a"]
    node = await repo.get_node("a")
    assert node.workflow_id == "wf"
    assert node.label == "A"
    assert await repo.get_workflow("missing") is None


@pytest.mark.asyncio
async def test_activity_close_is_conditional(repo):
    await repo.save_workflow(Workflow.model_validate(WORKFLOW))
    instance = await repo.create_instance("wf", {"in": 1})
    activity = await repo.create_activity(instance.id, "wf", "b", {"in": 1})
    await repo.record_activity_output(activity.id, {"scheduledFor": 5})

    assert await repo.find_running_activity(instance.id, "b") is not None
    assert await repo.count_running_activities(instance.id) == 1

    assert await repo.close_activity(activity.id, Status.SUCCESS) is True
    assert await repo.close_activity(activity.id, Status.FAILED, error="late") is False

    closed = await repo.get_activity(activity.id)
    assert closed.status is Status.SUCCESS
    assert closed.output == {"scheduledFor": 5}
    assert closed.error is None
    assert closed.finished_at is not None
    assert await repo.find_running_activity(instance.id, "b") is None
    assert await repo.count_running_activities(instance.id) == 0


@pytest.mark.asyncio
async def test_activities_keep_creation_order(repo):
    instance = await repo.create_instance("wf")
    ids = [(await repo.create_activity(instance.id, "wf", n, {})).id for n in "cab"]

    activities = await repo.list_activities(instance.id)
    assert [a.id for a in activities] == ids
    assert [a.seq for a in activities] == sorted(a.seq for a in activities)


@pytest.mark.asyncio
async def test_instance_finish_and_pending_counter(repo):
    instance = await repo.create_instance("wf", {"in": 1}, "parent", "parent-activity")
    assert instance.status is Status.RUNNING

    await repo.reserve_activation(instance.id, "act-1")
    await repo.reserve_activation(instance.id, "act-2")
    await repo.reserve_activation(instance.id, "act-2")
    assert (await repo.get_instance(instance.id)).pending_activations == 2

    assert await repo.release_activation(instance.id, "act-1")
    assert not await repo.release_activation(instance.id, "act-1")
    assert not await repo.release_activation(instance.id, "unknown")
    assert not await repo.release_activation("other-instance", "act-2")
    assert (await repo.get_instance(instance.id)).pending_activations == 1
    assert await repo.release_activation(instance.id, "act-2")
    assert (await repo.get_instance(instance.id)).pending_activations == 0

    assert await repo.finish_instance(instance.id, Status.SUCCESS, output={"done": 1})
    assert not await repo.finish_instance(instance.id, Status.FAILED, error="again")

    stored = await repo.get_instance(instance.id)
    assert stored.status is Status.SUCCESS
    assert stored.output == {"done": 1}
    assert stored.parent_instance_id == "parent"
    assert stored.parent_activity_id == "parent-activity"
    assert [i.id for i in await repo.list_instances("wf")] == [instance.id]
    assert await repo.list_instances("other") == []


@pytest.mark.asyncio
async def test_transaction_rolls_back(repo):
    instance = await repo.create_instance("wf")

    with pytest.raises(RuntimeError):
        async with repo.transaction():
            await repo.reserve_activation(instance.id, "rolled-back")
            await repo.create_activity(instance.id, "wf", "a", {})
            raise RuntimeError("abort")

    assert (await repo.get_instance(instance.id)).pending_activations == 0
    assert await repo.list_activities(instance.id) == []
    assert not await repo.release_activation(instance.id, "rolled-back")

    async with repo.transaction():
        await repo.reserve_activation(instance.id, "kept")
        async with repo.transaction():
            await repo.create_activity(instance.id, "wf", "a", {})
    assert (await repo.get_instance(instance.id)).pending_activations == 1
    assert len(await repo.list_activities(instance.id)) == 1


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("STATIONFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("STATIONFLOW_CONFIG", str(tmp_path / "none.yaml"))

    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    assert isinstance(
        get_repository(f"sqlite://{tmp_path / 'x.db'}"), SQLiteWorkflowRepository
    )
    with pytest.raises(ValueError):
        get_repository("mysql://nope")
