import asyncio

from backend.bunergy.sync import PERIODIC_JOB_ID, SyncScheduler


class Recorder:
    def __init__(self, fail: bool = False):
        self.calls = 0
        self.fail = fail

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("network down")


async def test_periodic_tick_pushes_full_state():
    push = Recorder()
    sync = SyncScheduler(push, interval=30, debounce=2)
    res = await sync.on_tick_30s()
    assert res == {"success": True, "channel": "periodic"}
    assert push.calls == 1
    assert sync.last_success_at is not None


async def test_periodic_tick_skipped_while_previous_in_flight():
    gate = asyncio.Event()
    calls = []

    async def slow_push():
        calls.append(1)
        await gate.wait()

    sync = SyncScheduler(slow_push, interval=30, debounce=2)
    first = asyncio.create_task(sync.on_tick_30s())
    await asyncio.sleep(0)
    second = await sync.on_tick_30s()
    assert second["error"] == "BUSY"

    gate.set()
    assert (await first)["success"] is True
    assert len(calls) == 1


async def test_offline_tick_is_skipped():
    push = Recorder()
    sync = SyncScheduler(push, interval=30, debounce=2, online=False)
    res = await sync.on_tick_30s()
    assert res["error"] == "OFFLINE"
    assert push.calls == 0


async def test_tap_burst_is_debounced():
    full, taps = Recorder(), Recorder()
    sync = SyncScheduler(full, taps, interval=30, debounce=0.05)
    for _ in range(5):
        sync.handle_store_change({"bz", "energy"}, "tap")
        await asyncio.sleep(0.01)
    assert sync.tap_sync_pending is True

    await asyncio.sleep(0.15)
    await sync.drain()
    assert taps.calls == 1
    assert full.calls == 0
    assert sync.tap_sync_pending is False


async def test_critical_action_pushes_immediately():
    push = Recorder()
    sync = SyncScheduler(push, interval=30, debounce=2)
    sync.handle_store_change({"bz", "boosters"}, "upgrade_booster")
    sync.handle_store_change({"energy"}, "regen")
    await sync.drain()
    assert push.calls == 1


async def test_manual_sync_reports_error():
    sync = SyncScheduler(Recorder(fail=True), interval=30, debounce=2)
    res = await sync.sync_now()
    assert res["success"] is False
    assert "network down" in res["error"]
    assert sync.last_error == "network down"


async def test_reconnect_triggers_full_sync():
    push = Recorder()
    sync = SyncScheduler(push, interval=30, debounce=2, online=False)
    assert sync.on_critical_action("convert") is None
    task = sync.set_online(True)
    assert task is not None
    await sync.drain()
    assert push.calls == 1
    assert sync.set_online(True) is None


async def test_start_and_stop_manage_jobs():
    sync = SyncScheduler(Recorder(), interval=30, debounce=2)
    sync.start()
    try:
        assert sync.active is True
        assert sync.scheduler.get_job(PERIODIC_JOB_ID) is not None
    finally:
        sync.stop()
    assert sync.active is False


async def test_fire_and_forget_swallows_errors():
    sync = SyncScheduler(Recorder(), interval=30, debounce=2)

    async def broken():
        raise RuntimeError("boom")

    sync.fire_and_forget(broken(), label="test")
    await sync.drain()


async def test_stop_keeps_in_flight_push_alive():
    gate = asyncio.Event()
    done = []

    async def slow_push():
        await gate.wait()
        done.append(1)

    sync = SyncScheduler(slow_push, interval=30, debounce=2)
    task = sync.on_critical_action("convert")
    await asyncio.sleep(0)
    sync.stop()
    assert task in sync._tasks

    gate.set()
    await sync.drain()
    assert done == [1]
    assert not sync._tasks
