"""Shared test fixtures and configuration for pytest."""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from taskcore.conflicts import ConflictArbitrator
from taskcore.db import Database
from taskcore.events import CoreEvent, EventBus
from taskcore.runner import AgentResult, ProjectContext, deliver_output
from taskcore.task_queue import TaskQueue

GOOD_OUTPUT = (
    "Implemented the change as requested.\n\n"
    "```python\ndef login(user):\n    return session_for(user)\n```\n"
)


class FakeRunner:
    """Scripted agent runner.

    ``script[agent]`` is consumed in order; each entry is an output string,
    an ``AgentResult`` or an exception to raise. Agents listed in ``hold``
    block until their event is set or the run is cancelled.
    """

    def __init__(self) -> None:
        self.script: dict[str, list[object]] = {}
        self.default_output = GOOD_OUTPUT
        self.calls: list[tuple[str, str, str | None]] = []
        self.cancel_calls: list[str | None] = []
        self.hold: dict[str, asyncio.Event] = {}
        self.started = asyncio.Event()
        self._waiting: dict[str, asyncio.Event] = {}
        self._cancelled: set[str] = set()

    async def run(
        self,
        agent: str,
        instruction: str,
        context: ProjectContext | None = None,
        *,
        run_id: str | None = None,
        on_output=None,
    ) -> AgentResult:
        run_id = run_id or f"run-{len(self.calls)}"
        self.calls.append((agent, instruction, run_id))

        hold = self.hold.get(agent)
        if hold is not None:
            self._waiting[run_id] = hold
            self.started.set()
            try:
                await hold.wait()
            finally:
                self._waiting.pop(run_id, None)
            if run_id in self._cancelled:
                self._cancelled.discard(run_id)
                return AgentResult(success=False, output="", error="Agent run cancelled")

        queue = self.script.get(agent)
        item: object = queue.pop(0) if queue else self.default_output
        if isinstance(item, Exception):
            raise item
        result = item if isinstance(item, AgentResult) else AgentResult(success=True, output=str(item))
        if result.success:
            await deliver_output(on_output, result.output)
        return result

    async def cancel(self, run_id: str | None = None) -> bool:
        self.cancel_calls.append(run_id)
        targets = [run_id] if run_id is not None else list(self._waiting)
        cancelled = False
        for rid in targets:
            event = self._waiting.get(rid)
            if event is None:
                continue
            self._cancelled.add(rid)
            # Release only this run; a fresh event keeps later runs of the agent held.
            for agent, held in list(self.hold.items()):
                if held is event:
                    self.hold[agent] = asyncio.Event()
            event.set()
            cancelled = True
        return cancelled

    def agents_called(self) -> list[str]:
        return [agent for agent, _, _ in self.calls]


class Recorder:
    """Event listener that keeps everything it receives."""

    def __init__(self) -> None:
        self.events: list[CoreEvent] = []

    def __call__(self, event: CoreEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]

    def of(self, type_: str) -> list[CoreEvent]:
        return [e for e in self.events if e.type.value == type_]


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` (sync or async) until it is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest_asyncio.fixture
async def database(tmp_path: Path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'taskcore.db'}")
    await db.init_db()
    yield db
    await db.dispose()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> Recorder:
    rec = Recorder()
    bus.add_listener(rec)
    return rec


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def queue(database: Database, bus: EventBus, runner: FakeRunner) -> TaskQueue:
    return TaskQueue(database, bus, runner)


@pytest.fixture
def arbitrator(database: Database, bus: EventBus) -> ConflictArbitrator:
    return ConflictArbitrator(database, bus)
