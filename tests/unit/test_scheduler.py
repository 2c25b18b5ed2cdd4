"""Background scheduler: intervals, triggers, failures and the conflict policy."""

import asyncio

import pytest

from helpers import wait_for_events
from memini.daemon.scheduler import BackgroundScheduler
from memini.daemon.tasks import VARIABLE_UPDATE_EVENT, DaemonTaskDef, builtin_tasks
from memini.runtime.events import DaemonRunResult
from memini.utils.error_handler import ConfigurationError, ProtocolError, StateError


def make_def(name="watcher", interval=0.05, **kwargs):
    return DaemonTaskDef(name=name, persona="p", prompt=f"run {name}", interval_secs=interval, **kwargs)


class RecordingRunner:
    def __init__(self, outputs=None):
        self.outputs = list(outputs or [])
        self.runs = []

    async def __call__(self, definition):
        self.runs.append(definition.name)
        if self.outputs:
            output = self.outputs.pop(0)
            if isinstance(output, Exception):
                raise output
            return output
        return f"{definition.name} ok"


@pytest.fixture
def updates():
    return asyncio.Queue()


@pytest.mark.asyncio
async def test_interval_runs_report_results(updates):
    runner = RecordingRunner()
    scheduler = BackgroundScheduler(runner, updates)
    scheduler.start(make_def())

    events = await wait_for_events(updates, 2)

    assert all(isinstance(e, DaemonRunResult) and e.ok for e in events)
    assert events[0].message == "watcher ok"
    assert scheduler.is_running("WATCHER")
    await scheduler.shutdown()
    assert not scheduler.is_running("watcher")


@pytest.mark.asyncio
async def test_failure_is_reported_and_loop_continues(updates):
    runner = RecordingRunner([ProtocolError("bad tool args", "Tool arguments invalid"), RuntimeError("kaput"), ""])
    scheduler = BackgroundScheduler(runner, updates)
    scheduler.start(make_def())

    first, second, third = await wait_for_events(updates, 3)

    assert (first.ok, first.message) == (False, "Tool arguments invalid")
    assert (second.ok, second.message) == (False, "kaput")
    assert (third.ok, third.message) == (True, "No response received.")
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_trigger_wakes_before_interval(updates):
    runner = RecordingRunner()
    scheduler = BackgroundScheduler(runner, updates)
    scheduler.start(make_def(interval=60, trigger_variables=("deploy.*",)))
    scheduler.start(make_def(name="bystander", interval=60))

    assert scheduler.publish_event(VARIABLE_UPDATE_EVENT, "other") == []
    assert scheduler.publish_event(VARIABLE_UPDATE_EVENT, "deploy.request") == ["watcher"]

    (event,) = await wait_for_events(updates, 1)
    assert event.task_name == "watcher"
    assert runner.runs == ["watcher"]
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_paused_task_only_runs_when_woken(updates):
    runner = RecordingRunner()
    scheduler = BackgroundScheduler(runner, updates)
    scheduler.start(make_def(interval=0.01, paused=True))

    await asyncio.sleep(0.05)
    assert runner.runs == []

    assert scheduler.run_now("watcher") == "woken"
    (event,) = await wait_for_events(updates, 1)
    assert event.ok
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_name_conflicts_are_rejected(updates):
    scheduler = BackgroundScheduler(RecordingRunner(), updates, builtin_tasks())
    scheduler.start(make_def(interval=60))

    with pytest.raises(ConfigurationError, match="already running"):
        scheduler.start(make_def(name="Watcher", interval=60))
    with pytest.raises(ConfigurationError, match="conflicts with a built-in"):
        scheduler.start(make_def(name="Briefing", interval=60))
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_builtins_can_stop_but_not_be_removed(updates):
    scheduler = BackgroundScheduler(RecordingRunner(), updates, builtin_tasks())
    scheduler.start(scheduler.builtin("briefing"))
    assert scheduler.is_running("briefing")

    with pytest.raises(StateError, match="cannot be deleted"):
        scheduler.remove("briefing")
    assert scheduler.stop("briefing") is True
    assert scheduler.stop("briefing") is False
    await asyncio.sleep(0)
    assert not scheduler.is_running("briefing")
    assert scheduler.builtin("briefing") is not None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_stopped_task_never_runs_again(updates):
    runner = RecordingRunner()
    scheduler = BackgroundScheduler(runner, updates)
    scheduler.start(make_def(interval=0.02, trigger_variables=("deploy.*",)))
    await wait_for_events(updates, 2)

    assert scheduler.stop("watcher") is True
    await asyncio.sleep(0)
    runs_at_stop = len(runner.runs)

    assert scheduler.publish_event(VARIABLE_UPDATE_EVENT, "deploy.request") == []
    await asyncio.sleep(0.2)

    assert len(runner.runs) == runs_at_stop
    assert not scheduler.is_running("watcher")
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_run_now_oneshot_does_not_register(updates):
    runner = RecordingRunner()
    scheduler = BackgroundScheduler(runner, updates, builtin_tasks())

    assert scheduler.run_now("digest") == "oneshot"
    (event,) = await wait_for_events(updates, 1)
    assert event.task_name == "digest"
    assert not scheduler.is_running("digest")

    assert scheduler.run_now("adhoc", make_def(name="adhoc")) == "oneshot"
    await wait_for_events(updates, 1)

    with pytest.raises(StateError):
        scheduler.run_now("missing")
    await scheduler.shutdown()
