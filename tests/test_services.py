import pytest
from conftest import FakeRunner

from taskcore.config import Settings
from taskcore.services import build_services


@pytest.mark.asyncio
async def test_build_services_wires_one_graph(tmp_path) -> None:
    settings = Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'services.db'}",
        poll_interval_seconds=1.5,
        auto_approve_threshold=85,
    )
    runner = FakeRunner()
    services = build_services(settings, runner)
    await services.database.init_db()

    config = services.autonomous_config("p1", max_idle_minutes=2.0, auto_approve_threshold=None)
    assert config.project_id == "p1"
    assert config.poll_interval_seconds == 1.5
    assert config.auto_approve_threshold == 85
    assert config.max_idle_minutes == 2.0
    assert services.redis_publisher is None

    task = await services.queue.enqueue("p1", "Write docs", task_type="documentation", agent_type="documentation")
    done = await services.queue.execute_task(task.id)
    assert done.status == "completed"
    assert runner.agents_called() == ["documentation"]

    await services.aclose()
