"""End-to-end scenarios on the in-memory stack."""

import asyncio

import pytest

from stationflow.actions.http import HttpResult
from stationflow.contracts import ActivationMessage
from stationflow.models import Workflow
from stationflow.persistence import Status


def _published_nodes(engine):
    return [
        ActivationMessage.from_json(body).node_id
        for topic, body in engine.transport.published
        if topic == engine.work_queue.topic
    ]


@pytest.mark.asyncio
async def test_http_timer_noop_completes_once_the_timer_fires(
    engine, drain, linear_workflow
):
    await engine.load_workflow(linear_workflow)
    instance = await engine.start_instance("linear", {"order": 1})

    await drain(engine, wait_for_timers=False)

    assert _published_nodes(engine) == ["call", "wait"]
    assert (await engine.repository.get_instance(instance.id)).status is Status.RUNNING

    await drain(engine)

    finished = await engine.repository.get_instance(instance.id)
    assert finished.status is Status.SUCCESS
    assert finished.pending_activations == 0
    activities = await engine.repository.list_activities(instance.id)
    assert [a.node_id for a in activities] == ["call", "wait", "done"]
    assert all(a.status is Status.SUCCESS for a in activities)
    assert finished.output["ok"] is True
    assert "firedAt" in finished.output
    assert engine.events.instances[-1].status is Status.SUCCESS


@pytest.mark.asyncio
async def test_join_waits_for_both_branches(engine, drain, parallel_workflow):
    await engine.load_workflow(parallel_workflow)
    instance = await engine.start_instance("parallel", {})
    await drain(engine)

    await engine.complete_hook("parallel", "b1", instance.id, {"branch": 1})
    await drain(engine)

    nodes = [a.node_id for a in await engine.repository.list_activities(instance.id)]
    assert "j" not in nodes
    assert (await engine.repository.get_instance(instance.id)).status is Status.RUNNING

    await engine.complete_hook("parallel", "b2", instance.id, {"branch": 2})
    await drain(engine)

    activities = await engine.repository.list_activities(instance.id)
    assert [a.node_id for a in activities].count("j") == 1
    assert (await engine.repository.get_instance(instance.id)).status is Status.SUCCESS


@pytest.mark.asyncio
async def test_concurrent_branch_completion_admits_join_once(
    engine, drain, parallel_workflow
):
    await engine.load_workflow(parallel_workflow)
    instance = await engine.start_instance("parallel", {})
    await drain(engine)

    await asyncio.gather(
        engine.complete_hook("parallel", "b1", instance.id, {}),
        engine.complete_hook("parallel", "b2", instance.id, {}),
    )
    await drain(engine)

    activities = await engine.repository.list_activities(instance.id)
    assert [a.node_id for a in activities].count("j") == 1
    assert [a.node_id for a in activities].count("after") == 1
    assert (await engine.repository.get_instance(instance.id)).status is Status.SUCCESS


@pytest.mark.asyncio
async def test_if_edge_matches_only_its_value(engine, drain):
    workflow = Workflow.model_validate(
        {
            "id": "route",
            "nodes": [
                {"id": "check", "config": {"kind": "noop"}},
                {"id": "ok", "config": {"kind": "noop"}},
            ],
            "edges": [
                {
                    "source_id": "check",
                    "target_id": "ok",
                    "kind": "if",
                    "condition": 'status = "ok"',
                }
            ],
        }
    )
    await engine.load_workflow(workflow)

    matched = await engine.start_instance("route", {"status": "ok"})
    missed = await engine.start_instance("route", {"status": "OK"})
    await drain(engine)

    matched_nodes = [a.node_id for a in await engine.repository.list_activities(matched.id)]
    missed_nodes = [a.node_id for a in await engine.repository.list_activities(missed.id)]
    assert matched_nodes == ["check", "ok"]
    assert missed_nodes == ["check"]
    assert (await engine.repository.get_instance(missed.id)).status is Status.SUCCESS


@pytest.mark.asyncio
async def test_hook_without_callback_keeps_instance_running(engine, drain):
    workflow = Workflow.model_validate(
        {
            "id": "wait-forever",
            "nodes": [
                {"id": "ask", "config": {"kind": "hook"}},
                {"id": "after", "config": {"kind": "noop"}},
            ],
            "edges": [{"source_id": "ask", "target_id": "after"}],
        }
    )
    await engine.load_workflow(workflow)
    instance = await engine.start_instance("wait-forever", {"q": 1})

    await drain(engine)
    await drain(engine)

    activities = await engine.repository.list_activities(instance.id)
    assert [(a.node_id, a.status) for a in activities] == [("ask", Status.RUNNING)]
    assert (await engine.repository.get_instance(instance.id)).status is Status.RUNNING


@pytest.mark.asyncio
async def test_failed_branch_fails_instance_and_stops_other_branches(engine, drain):
    engine.actions.responses["http://svc/down"] = HttpResult(
        success=False, status=500, data={"text": "down"}
    )
    workflow = Workflow.model_validate(
        {
            "id": "fragile",
            "nodes": [
                {"id": "start", "config": {"kind": "noop"}},
                {"id": "bad", "config": {"kind": "http", "url": "http://svc/down"}},
                {"id": "slow", "config": {"kind": "timer", "delay_ms": 20}},
                {"id": "after_slow", "config": {"kind": "noop"}},
            ],
            "edges": [
                {"source_id": "start", "target_id": "bad"},
                {"source_id": "start", "target_id": "slow"},
                {"source_id": "slow", "target_id": "after_slow"},
            ],
        }
    )
    await engine.load_workflow(workflow)
    instance = await engine.start_instance("fragile", {})

    await drain(engine)

    failed = await engine.repository.get_instance(instance.id)
    assert failed.status is Status.FAILED
    assert "bad" in failed.error
    nodes = [a.node_id for a in await engine.repository.list_activities(instance.id)]
    assert "after_slow" not in nodes


@pytest.mark.asyncio
async def test_loop_edge_revisits_node_until_condition_changes(engine, drain):
    responses = iter(
        [
            HttpResult(success=True, status=200, data={"done": "no"}),
            HttpResult(success=True, status=200, data={"done": "yes"}),
        ]
    )

    async def poll(url, method="POST", headers=None, body=None, timeout_ms=15000):
        return next(responses)

    engine.actions.execute = poll
    workflow = Workflow.model_validate(
        {
            "id": "poller",
            "nodes": [
                {"id": "start", "config": {"kind": "noop"}},
                {"id": "poll", "config": {"kind": "http", "url": "http://svc/status"}},
                {"id": "check", "config": {"kind": "noop"}},
                {"id": "finish", "config": {"kind": "noop"}},
            ],
            "edges": [
                {"source_id": "start", "target_id": "poll"},
                {"source_id": "poll", "target_id": "check"},
                {"source_id": "check", "target_id": "finish", "kind": "if", "condition": 'done = "yes"'},
                {"source_id": "check", "target_id": "poll", "kind": "if", "condition": 'done = "no"'},
            ],
        }
    )
    await engine.load_workflow(workflow)
    instance = await engine.start_instance("poller", {})

    await drain(engine)

    nodes = [a.node_id for a in await engine.repository.list_activities(instance.id)]
    assert nodes == ["start", "poll", "check", "poll", "check", "finish"]
    assert (await engine.repository.get_instance(instance.id)).status is Status.SUCCESS


@pytest.mark.asyncio
async def test_join_reached_twice_from_one_source_runs_once(engine, drain):
    workflow = Workflow.model_validate(
        {
            "id": "doubled",
            "nodes": [
                {"id": "a", "config": {"kind": "noop"}},
                {"id": "j", "config": {"kind": "join"}},
                {"id": "after", "config": {"kind": "noop"}},
            ],
            "edges": [
                {"source_id": "a", "target_id": "j"},
                {"source_id": "a", "target_id": "j"},
                {"source_id": "j", "target_id": "after"},
            ],
        }
    )
    await engine.load_workflow(workflow)
    instance = await engine.start_instance("doubled", {"v": 1})

    await drain(engine)

    nodes = [a.node_id for a in await engine.repository.list_activities(instance.id)]
    assert nodes == ["a", "j", "after"]
    finished = await engine.repository.get_instance(instance.id)
    assert finished.status is Status.SUCCESS
    assert finished.pending_activations == 0
