"""Shared fixtures for engine tests on the in-memory stack."""

import asyncio
from typing import Any, Dict, List

import pytest

from stationflow.actions.http import HttpResult
from stationflow.contracts import ActivationMessage, TimerMessage
from stationflow.engine import WorkflowEngine
from stationflow.events import RecordingEvents
from stationflow.models import Workflow
from stationflow.persistence import InMemoryWorkflowRepository
from stationflow.transports.inmemory import InMemoryTransport


class FakeHttpExecutor:
    """Records calls and answers from a per-URL table."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.responses: Dict[str, Any] = {}

    async def execute(
        self, url, method="POST", headers=None, body=None, timeout_ms=15000
    ) -> HttpResult:
        self.calls.append(
            {
                "url": url,
                "method": method,
                "headers": headers,
                "body": body,
                "timeout_ms": timeout_ms,
            }
        )
        response = self.responses.get(
            url, HttpResult(success=True, status=200, data={"ok": True})
        )
        if isinstance(response, Exception):
            raise response
        return response


def make_engine(**kwargs: Any) -> WorkflowEngine:
    kwargs.setdefault("actions", FakeHttpExecutor())
    kwargs.setdefault("events", RecordingEvents())
    return WorkflowEngine(InMemoryWorkflowRepository(), InMemoryTransport(), **kwargs)


async def drain_engine(
    engine: WorkflowEngine, wait_for_timers: bool = True, timeout: float = 5.0
) -> int:
    """Handle queued activations and fired timers until nothing is left.

    Returns the number of messages handled.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    handled = 0
    while True:
        body = engine.transport.get_nowait(engine.work_queue.topic)
        if body is not None:
            await engine.dispatcher.handle(ActivationMessage.from_json(body))
            handled += 1
            continue
        body = engine.timer_transport.get_nowait(engine.timers.fired_topic)
        if body is not None:
            await engine.timers.handle_fired(TimerMessage.from_json(body))
            handled += 1
            continue
        if wait_for_timers and engine.timer_transport.has_scheduled():
            if loop.time() > deadline:
                raise TimeoutError("timers did not fire in time")
            await asyncio.sleep(0.01)
            continue
        return handled


@pytest.fixture
def engine() -> WorkflowEngine:
    return make_engine()


@pytest.fixture
def engine_factory():
    return make_engine


@pytest.fixture
def drain():
    return drain_engine


@pytest.fixture
def linear_workflow() -> Workflow:
    """``call -> wait -> done``."""
    return Workflow.model_validate(
        {
            "id": "linear",
            "name": "Linear",
            "nodes": [
                {"id": "call", "config": {"kind": "http", "url": "http://svc/call"}},
                {"id": "wait", "config": {"kind": "timer", "delay_ms": 500}},
                {"id": "done", "config": {"kind": "noop"}},
            ],
            "edges": [
                {"source_id": "call", "target_id": "wait"},
                {"source_id": "wait", "target_id": "done"},
            ],
        }
    )


@pytest.fixture
def parallel_workflow() -> Workflow:
    """``start`` fans out to two hooks that meet at join ``j``."""
    return Workflow.model_validate(
        {
            "id": "parallel",
            "nodes": [
                {"id": "start", "config": {"kind": "noop"}},
                {"id": "b1", "config": {"kind": "hook"}},
                {"id": "b2", "config": {"kind": "hook"}},
                {
                    "id": "j",
                    "config": {
                        "kind": "join",
                        "conditions": [
                            'nodes.b1.status = "success"',
                            'nodes.b2.status = "success"',
                        ],
                    },
                },
                {"id": "after", "config": {"kind": "noop"}},
            ],
            "edges": [
                {"source_id": "start", "target_id": "b1"},
                {"source_id": "start", "target_id": "b2"},
                {"source_id": "b1", "target_id": "j"},
                {"source_id": "b2", "target_id": "j"},
                {"source_id": "j", "target_id": "after"},
            ],
        }
    )
