"""Workflow nodes that run another workflow as a child instance."""

import pytest

from stationflow.actions.http import HttpResult
from stationflow.models import Workflow
from stationflow.persistence import Status


def _parent(timeout_ms=None):
    config = {"kind": "workflow", "workflow_id": "payment"}
    if timeout_ms is not None:
        config["timeout_ms"] = timeout_ms
    return Workflow.model_validate(
        {
            "id": "order",
            "nodes": [
                {"id": "before", "config": {"kind": "noop"}},
                {"id": "pay", "config": config},
                {"id": "after", "config": {"kind": "noop"}},
            ],
            "edges": [
                {"source_id": "before", "target_id": "pay"},
                {"source_id": "pay", "target_id": "after"},
            ],
        }
    )


def _child(second):
    return Workflow.model_validate(
        {
            "id": "payment",
            "nodes": [{"id": "prepare", "config": {"kind": "noop"}}, second],
            "edges": [{"source_id": "prepare", "target_id": second["id"]}],
        }
    )


async def _child_of(engine, parent_id):
    children = [
        instance
        for instance in await engine.repository.list_instances("payment")
        if instance.parent_instance_id == parent_id
    ]
    assert len(children) == 1
    return children[0]


@pytest.mark.asyncio
async def test_child_output_resumes_parent(engine, drain):
    engine.actions.responses["http://pay/charge"] = HttpResult(
        success=True, status=200, data={"charged": True}
    )
    await engine.load_workflow(_parent())
    await engine.load_workflow(
        _child({"id": "charge", "config": {"kind": "http", "url": "http://pay/charge"}})
    )

    parent = await engine.start_instance("order", {"amount": 5})
    await drain(engine)

    child = await _child_of(engine, parent.id)
    assert child.status is Status.SUCCESS
    assert child.output == {"amount": 5, "charged": True}

    finished = await engine.repository.get_instance(parent.id)
    assert finished.status is Status.SUCCESS
    activities = {a.node_id: a for a in await engine.repository.list_activities(parent.id)}
    assert activities["pay"].output == child.output
    assert child.parent_activity_id == activities["pay"].id
    assert activities["after"].input == child.output
    assert engine.actions.calls[0]["body"] == {"amount": 5}


@pytest.mark.asyncio
async def test_child_failure_fails_parent(engine, drain):
    engine.actions.responses["http://pay/charge"] = HttpResult(
        success=False, status=402, data={"text": "declined"}
    )
    await engine.load_workflow(_parent())
    await engine.load_workflow(
        _child({"id": "charge", "config": {"kind": "http", "url": "http://pay/charge"}})
    )

    parent = await engine.start_instance("order", {"amount": 5})
    await drain(engine)

    child = await _child_of(engine, parent.id)
    assert child.status is Status.FAILED
    untouched = await engine.repository.get_instance(standalone.id)
    assert untouched.status is Status.RUNNING
    assert "HTTP 402" in child.error

    failed = await engine.repository.get_instance(parent.id)
    assert failed.status is Status.FAILED
    assert child.id in failed.error
    activities = {a.node_id: a for a in await engine.repository.list_activities(parent.id)}
    assert activities["pay"].status is Status.FAILED
    assert "after" not in activities


@pytest.mark.asyncio
async def test_nested_timeout_fails_parent_activity_and_child(engine, drain):
    await engine.load_workflow(_parent(timeout_ms=50))
    await engine.load_workflow(_child({"id": "approve", "config": {"kind": "hook"}}))
    standalone = await engine.start_instance("payment", {})

    parent = await engine.start_instance("order", {})
    await drain(engine)

    activities = {a.node_id: a for a in await engine.repository.list_activities(parent.id)}
    assert activities["pay"].status is Status.FAILED
    assert activities["pay"].error == "nested workflow timed out"
    assert (await engine.repository.get_instance(parent.id)).status is Status.FAILED

    child = await _child_of(engine, parent.id)
    assert child.status is Status.FAILED
    untouched = await engine.repository.get_instance(standalone.id)
    assert untouched.status is Status.RUNNING


@pytest.mark.asyncio
async def test_child_that_finishes_before_timeout_ignores_late_timer(engine, drain):
    await engine.load_workflow(_parent(timeout_ms=50))
    await engine.load_workflow(_child({"id": "approve", "config": {"kind": "hook"}}))

    parent = await engine.start_instance("order", {})
    await drain(engine, wait_for_timers=False)
    child = await _child_of(engine, parent.id)
    await engine.complete_hook("payment", "approve", child.id, {"ok": True})
    await drain(engine)

    assert (await engine.repository.get_instance(child.id)).status is Status.SUCCESS
    finished = await engine.repository.get_instance(parent.id)
    assert finished.status is Status.SUCCESS
    assert finished.output["body"] == {"ok": True}
