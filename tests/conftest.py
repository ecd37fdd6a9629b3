"""Shared fixtures: engines over in-memory stores and a scripted job worker."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

import flowkeeper.persistence as persistence
from flowkeeper.config import FlowkeeperConfig
from flowkeeper.contracts import DEFAULT_QUEUE, JobMessage
from flowkeeper.definition import WorkflowDefinition, WorkflowDefinitionRegistry
from flowkeeper.engine import WorkflowEngine
from flowkeeper.persistence import InMemoryRepositories
from flowkeeper.persistence.repository import Repositories
from flowkeeper.transports.inmemory import InMemoryTransport


class ScriptedWorker:
    """Consume published jobs and report outcomes the way a real worker would."""

    def __init__(self, engine: WorkflowEngine, topic: str = DEFAULT_QUEUE) -> None:
        self.engine = engine
        self.topic = topic

    async def take(self, kind: Optional[str] = None) -> List[JobMessage]:
        messages = await self.engine.transport.drain(self.topic)
        if kind is None:
            return messages
        rest = [m for m in messages if m.kind != kind]
        for message in rest:
            await self.engine.transport.publish(self.topic, message)
        return [m for m in messages if m.kind == kind]

    async def succeed(
        self, messages: Iterable[JobMessage], outputs: Optional[Dict[str, Any]] = None
    ) -> None:
        for message in messages:
            await self.engine.job_lifecycle.job_started(message.job_uuid, "worker-1")
            await self.engine.job_lifecycle.job_succeeded(message.job_uuid, outputs)

    async def fail(self, messages: Iterable[JobMessage], message_text: str = "boom") -> None:
        for message in messages:
            await self.engine.job_lifecycle.job_started(message.job_uuid, "worker-1")
            await self.engine.job_lifecycle.job_failed(
                message.job_uuid, "RuntimeError", message_text, "Traceback..."
            )

    async def run_step(self, outputs: Optional[Dict[str, Any]] = None) -> List[JobMessage]:
        messages = await self.take("step")
        await self.succeed(messages, outputs)
        return messages

    async def fail_step(self, message_text: str = "boom") -> List[JobMessage]:
        messages = await self.take("step")
        await self.fail(messages, message_text)
        return messages

    async def compensate(self, succeed: bool = True, message_text: str = "undo failed") -> List[JobMessage]:
        messages = await self.take("compensation")
        for message in messages:
            if succeed:
                await self.engine.compensation.record_success(
                    message.compensation_run_id, message.job_uuid
                )
            else:
                await self.engine.compensation.record_failure(
                    message.compensation_run_id, message_text, None, message.job_uuid
                )
        return messages


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for name in (
        "FLOWKEEPER_CONFIG",
        "FLOWKEEPER_DATABASE_URL",
        "DATABASE_URL",
        "FLOWKEEPER_TRANSPORT",
        "FLOWKEEPER_DEFINITIONS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence._repositories_instance = None
    yield
    persistence._repositories_instance = None


@pytest.fixture
def make_engine() -> Callable[..., WorkflowEngine]:
    def _make(
        *definitions: WorkflowDefinition,
        repositories: Optional[Repositories] = None,
        config: Optional[FlowkeeperConfig] = None,
    ) -> WorkflowEngine:
        return WorkflowEngine(
            WorkflowDefinitionRegistry(definitions),
            repositories=repositories or InMemoryRepositories(),
            transport=InMemoryTransport(),
            config=config or FlowkeeperConfig(),
        )

    return _make


@pytest.fixture
def worker() -> Callable[..., ScriptedWorker]:
    def _worker(engine: WorkflowEngine, topic: str = DEFAULT_QUEUE) -> ScriptedWorker:
        return ScriptedWorker(engine, topic)

    return _worker
