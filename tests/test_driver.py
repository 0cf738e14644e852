# tests/test_driver.py
"""
Driver: registry, fork/terminate/reap bookkeeping and shutdown sequencing.
"""

import signal
import asyncio
import pytest

from jobdriver.driver import Driver
from jobdriver.errors import ConfigurationError, DriverError
from jobdriver.job import JobMethod, JobSpec, TERMINATING, IDLE
from jobdriver.worker import run_child

from conftest import EchoWorker, FakeSpawner, make_spec

class AutoExitSpawner(FakeSpawner):
    """Children exit as soon as they receive one of `exit_on`."""

    def __init__(self, exit_on=(signal.SIGTERM, signal.SIGKILL)):
        super().__init__()
        self.exit_on = exit_on

    def kill(self, pid, sig):
        delivered = super().kill(pid, sig)
        if sig in self.exit_on:
            self.exit(pid, signal=int(sig))
        return delivered

# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------
def test_add_job_and_lookup(driver):
    driver.add_job(make_spec("b", 0, 1))
    driver.add_job(make_spec("a", 1, 2))
    assert driver.has_job("a") and not driver.has_job("c")
    assert driver.get_job("c") is None
    assert [j.name for j in driver.get_jobs()] == ["a", "b"]
    assert driver.get_job("a").methods[0].worker is not None

def test_add_job_identical_spec_is_idempotent(driver):
    worker = EchoWorker()
    job = driver.add_job(make_spec("a", 1, 2, worker=worker))
    again = driver.add_job(make_spec("a", 1, 2, worker=worker))
    assert job is again
    assert job.functions == ["a"]

def test_add_job_merges_methods(driver):
    worker = EchoWorker()
    driver.add_job(make_spec("grp", 1, 2, functions=["f1"], worker=worker))
    job = driver.add_job(make_spec("grp", 1, 2, functions=["f2"], worker=worker))
    assert job.functions == ["f1", "f2"]

def test_add_job_conflicting_bounds(driver):
    driver.add_job(make_spec("a", 1, 2))
    with pytest.raises(ConfigurationError, match="conflicting bounds"):
        driver.add_job(make_spec("a", 1, 3))
    assert driver.get_job("a").max_childs == 2

def test_add_job_conflicting_body_leaves_job_untouched(driver):
    driver.add_job(make_spec("a", 0, 1, functions=["f1"]))
    spec = JobSpec("a", 0, 1, [JobMethod("f2", EchoWorker.echo), JobMethod("f1", EchoWorker.upper)], EchoWorker())
    with pytest.raises(ConfigurationError):
        driver.add_job(spec)
    assert driver.get_job("a").functions == ["f1"]

@pytest.mark.parametrize(
    "spec",
    [
        JobSpec("a", None, 2, [JobMethod("a", EchoWorker.echo)]),
        JobSpec("a", 1, None, [JobMethod("a", EchoWorker.echo)]),
        JobSpec("a", 3, 2, [JobMethod("a", EchoWorker.echo)]),
        JobSpec("a", -1, 2, [JobMethod("a", EchoWorker.echo)]),
        JobSpec("a", 1, 2, []),
        JobSpec("", 1, 2, [JobMethod("a", EchoWorker.echo)]),
    ],
)
def test_add_job_rejects_malformed_specs(driver, spec):
    with pytest.raises(ConfigurationError):
        driver.add_job(spec)
    assert driver.get_jobs() == []

def test_function_served_by_two_jobs_is_rejected(driver):
    driver.add_job(make_spec("a", 0, 1, functions=["shared"]))
    with pytest.raises(ConfigurationError, match="already served"):
        driver.add_job(make_spec("b", 0, 1, functions=["shared"]))

# -----------------------------------------------------------------------------
# Fork / terminate / reap
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_request_fork_registers_starting_children(driver, fake_spawner):
    driver.add_job(make_spec("a", 0, 3))
    pids = await driver.request_fork("a", 2)
    job = driver.get_job("a")
    assert sorted(job.childs) == sorted(pids)
    assert all(c.status == "starting" for c in job.childs.values())
    assert driver.pids == {pid: "a" for pid in pids}

    target = fake_spawner.targets[pids[0]]
    assert target.func is run_child
    assert target.args[0] == "a"
    assert [m.name for m in target.args[1]] == ["a"]
    assert target.keywords["after_fork"] == driver._close_inherited

def test_close_inherited_releases_console_and_broker(driver, fake_broker):
    closed = []
    fake_broker.close_inherited_sockets = lambda: closed.append("broker")

    class StubConsole:
        def close_inherited_sockets(self):
            closed.append("console")

    driver._close_inherited()
    assert closed == ["broker"]

    driver.console = StubConsole()
    driver._close_inherited()
    assert closed == ["broker", "console", "broker"]

@pytest.mark.asyncio
async def test_fork_target_uses_client_factory(settings, fake_broker, fake_spawner):
    made = []
    driver = Driver(
        settings, broker=fake_broker, spawner=fake_spawner,
        worker_client_factory=lambda job, pid: made.append((job, pid)) or "client",
    )
    driver.add_job(make_spec("a", 0, 1))
    (pid,) = await driver.request_fork("a", 1)
    factory = fake_spawner.targets[pid].args[2]
    assert factory(4321) == "client"
    assert made == [("a", 4321)]

@pytest.mark.asyncio
async def test_fork_failure_leaves_pool_underprovisioned(driver, fake_spawner):
    driver.add_job(make_spec("a", 0, 3))
    fake_spawner.fail_spawn = True
    assert await driver.request_fork("a", 2) == []
    assert driver.get_job("a").count_childs() == 0

@pytest.mark.asyncio
async def test_fork_for_unknown_job(driver, fake_spawner):
    assert await driver.request_fork("ghost", 1) == []
    assert fake_spawner.spawned == []

@pytest.mark.asyncio
async def test_terminate_idle_picks_oldest_and_keeps_min(driver, fake_spawner):
    driver.add_job(make_spec("a", 1, 4))
    p1, p2, p3 = await driver.request_fork("a", 3)
    job = driver.get_job("a")
    job.apply_worker_state(p1, IDLE, since=300.0)
    job.apply_worker_state(p2, IDLE, since=100.0)
    job.apply_worker_state(p3, IDLE, since=200.0)

    victims = await driver.terminate_idle("a", count=5, idle_for=0)

    # three active, min 1: at most two may go
    assert victims == [p2, p3]
    assert fake_spawner.killed == [(p2, signal.SIGTERM), (p3, signal.SIGTERM)]
    assert job.childs[p2].status == TERMINATING
    assert job.childs[p1].status == IDLE

@pytest.mark.asyncio
async def test_terminate_already_dead_process_counts_as_success(driver, fake_spawner):
    driver.add_job(make_spec("a", 0, 2))
    (pid,) = await driver.request_fork("a", 1)
    driver.get_job("a").apply_worker_state(pid, IDLE, since=1.0)
    fake_spawner.gone.add(pid)

    assert await driver.terminate_idle("a", 1, 0) == [pid]
    assert driver.get_job("a").childs[pid].status == TERMINATING

@pytest.mark.asyncio
async def test_reap_removes_handle_and_forgets_telemetry(driver, fake_spawner, fake_broker):
    driver.add_job(make_spec("a", 0, 2))
    p1, p2 = await driver.request_fork("a", 2)
    fake_spawner.exit(p1, exitcode=1)
    fake_spawner.exit(99999, exitcode=0)

    exits = await driver.reap()

    assert [e.pid for e in exits] == [p1, 99999]
    assert list(driver.get_job("a").childs) == [p2]
    assert fake_broker.forgotten == [("a", p1)]
    assert p1 not in driver.pids

# -----------------------------------------------------------------------------
# Shutdown
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_shutdown_terminates_children_gracefully(settings, fake_broker):
    spawner = AutoExitSpawner()
    driver = Driver(settings, broker=fake_broker, spawner=spawner)
    driver.add_job(make_spec("a", 0, 3))
    driver.add_job(make_spec("b", 0, 3))
    await driver.request_fork("a", 2)
    await driver.request_fork("b", 1)

    await driver.shutdown()

    assert {sig for _, sig in spawner.killed} == {signal.SIGTERM}
    assert len(spawner.killed) == 3
    assert driver.pids == {}
    assert all(j.count_childs() == 0 for j in driver.get_jobs())
    assert fake_broker.closed
    assert await driver.request_fork("a", 1) == []

@pytest.mark.asyncio
async def test_shutdown_kills_stubborn_children(settings, fake_broker):
    spawner = AutoExitSpawner(exit_on=(signal.SIGKILL,))
    driver = Driver(settings, broker=fake_broker, spawner=spawner)
    driver.add_job(make_spec("a", 0, 3))
    (pid,) = await driver.request_fork("a", 1)

    await asyncio.wait_for(driver.shutdown(), 3)

    assert spawner.killed == [(pid, signal.SIGTERM), (pid, signal.SIGKILL)]
    assert driver.pids == {}

@pytest.mark.asyncio
async def test_shutdown_is_idempotent(settings, fake_broker):
    spawner = AutoExitSpawner()
    driver = Driver(settings, broker=fake_broker, spawner=spawner)
    driver.add_job(make_spec("a", 0, 3))
    await driver.request_fork("a", 2)

    await asyncio.gather(driver.shutdown(), driver.shutdown())
    await driver.shutdown()

    assert len(spawner.killed) == 2

# -----------------------------------------------------------------------------
# run()
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_run_requires_jobs(driver):
    with pytest.raises(ConfigurationError):
        await driver.run()

@pytest.mark.asyncio
async def test_run_until_shutdown_requested(settings, fake_broker):
    spawner = AutoExitSpawner()
    driver = Driver(settings, broker=fake_broker, spawner=spawner)
    driver.add_job(make_spec("a", 1, 2))

    task = asyncio.create_task(driver.run())
    for _ in range(100):
        await asyncio.sleep(0.01)
        if driver.get_job("a").count_childs() == 1:
            break
    assert driver.get_job("a").count_childs() == 1

    with pytest.raises(ConfigurationError):
        driver.add_job(make_spec("late", 0, 1))
    with pytest.raises(DriverError):
        await driver.run()

    driver.request_shutdown("test")
    await asyncio.wait_for(task, 3)
    assert driver.pids == {}
    assert fake_broker.closed
