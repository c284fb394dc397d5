import asyncio

import pytest

from backend.bunergy.local_store import MemoryStore
from backend.bunergy.remote_store import RemoteError, RemoteProfileStore
from backend.bunergy.rewards import reward_state_to_remote
from backend.bunergy.schemas import TelegramUser
from backend.bunergy.session import GAME_TICK_JOB_ID, GameSession
from backend.bunergy.sync import PERIODIC_JOB_ID

INVITER = TelegramUser(id=1001, first_name="Ivy", username="ivy")
INVITEE = TelegramUser(id=2002, first_name="Max")


class BrokenClient:
    async def select(self, *args, **kwargs):
        raise RemoteError("connection refused")

    async def upsert(self, *args, **kwargs):
        raise RemoteError("connection refused")

    async def update(self, *args, **kwargs):
        raise RemoteError("connection refused")


def _session(user, client, clock, port=None, **kwargs):
    remote = RemoteProfileStore(client, user.id) if client is not None else None
    return GameSession(user, port or MemoryStore(), remote, clock=clock, **kwargs)


async def test_local_only_boot(clock):
    session = _session(INVITER, None, clock)
    res = await session.boot()
    assert res == {"success": True, "first_launch": True, "remote_available": False, "changed": []}
    assert session.store.state.bz == 5000


async def test_remote_failure_falls_back_to_local(clock):
    session = _session(INVITER, BrokenClient(), clock)
    res = await session.boot()
    assert res["success"] is True
    assert res["remote_available"] is False
    session.store.tap()
    assert session.store.state.bz == 5010


async def test_first_boot_creates_remote_profile(table_client, clock):
    session = _session(INVITER, table_client, clock)
    res = await session.boot()
    assert res["remote_available"] is True

    profile = await session.remote.fetch_profile()
    assert profile["bz"] == 5000
    assert profile["username"] == "ivy"
    assert profile["referral_code"].startswith("REF")


async def test_new_device_picks_up_remote_progress(table_client, clock):
    first = _session(INVITER, table_client, clock)
    await first.boot()
    for _ in range(3):
        first.store.tap()
    first.store.parts["s1p1"].level = 4
    await first.push_full()
    await first.remote.push_build_parts(first.store.parts)

    second = _session(INVITER, table_client, clock)
    res = await second.boot()
    assert res["first_launch"] is True
    assert second.store.state.bz == first.store.state.bz
    assert second.store.state.total_taps == 3
    assert second.store.parts["s1p1"].level == 4


async def test_local_progress_survives_stale_remote(table_client, clock):
    port = MemoryStore()
    session = _session(INVITER, table_client, clock, port=port)
    await session.boot()

    # офлайн-прогресс: сервер не получил тапы
    for _ in range(5):
        session.store.tap()

    again = _session(INVITER, table_client, clock, port=port)
    await again.boot()
    assert again.store.state.bz == 5050
    assert again.store.state.total_taps == 5


async def test_referral_flow(table_client, clock):
    inviter = _session(INVITER, table_client, clock)
    await inviter.boot()
    code = (await inviter.remote.fetch_profile())["referral_code"]

    invitee = _session(INVITEE, table_client, clock, start_param=code)
    await invitee.boot()
    assert invitee.store.state.bz == 5500
    assert (await invitee.remote.fetch_profile())["referred_by"] == INVITER.id

    inviter_again = _session(INVITER, table_client, clock, port=inviter.port)
    await inviter_again.boot()
    assert inviter_again.store.state.bz == 6000
    assert inviter_again.store.state.xp == 1000
    assert inviter_again.store.state.referral_count == 1

    # бонус выдаётся один раз
    third = _session(INVITER, table_client, clock, port=inviter.port)
    await third.boot()
    assert third.store.state.bz == 6000


async def test_referral_share_flows_to_inviter(table_client, clock):
    inviter = _session(INVITER, table_client, clock)
    await inviter.boot()
    code = (await inviter.remote.fetch_profile())["referral_code"]
    invitee = _session(INVITEE, table_client, clock, start_param=code)
    await invitee.boot()

    for _ in range(10):
        invitee.store.tap()
    await invitee.push_full()
    await invitee.push_full()

    bz_before = inviter.store.state.bz
    res = await inviter.claim_referral_earnings()
    assert res == {"success": True, "amount": 20}
    assert inviter.store.state.bz == bz_before + 20
    assert (await inviter.claim_referral_earnings())["error"] == "NOTHING_TO_CLAIM"


async def test_claim_referral_earnings_offline(clock):
    session = _session(INVITER, None, clock)
    await session.boot()
    assert await session.claim_referral_earnings() == {"success": False, "error": "OFFLINE"}


async def test_rewards_reconciled_from_remote(table_client, clock):
    first = _session(INVITER, table_client, clock)
    await first.boot()
    first.daily.claim()
    first.nfts.purchase("early_adopter")
    await first.remote.push_daily_claims(first.daily.to_remote())
    await first.remote.push_nfts(first.nfts.to_remote())
    await first.remote.push_reward_state(reward_state_to_remote(first.store))

    second = _session(INVITER, table_client, clock)
    await second.boot()
    assert second.nfts.owned_ids() == {"early_adopter"}
    assert len(second.daily.claims()) == 1
    assert second.daily.claim()["error"] == "ALREADY_CLAIMED"


async def test_tick_regenerates_energy_and_finishes_builds(clock):
    session = _session(INVITER, None, clock)
    await session.boot()
    store = session.store
    store.state.bz = 1_000_000
    store.parts["s1p1"].level = 5
    store.parts["s1p2"].level = 3
    store.start_part_upgrade("s1p2")
    store.set_energy(100)

    await session.tick()
    clock.advance(15 * 60)
    await session.tick()
    assert store.state.energy == pytest.approx(100 + 0.4 * 15 * 60)
    assert store.parts["s1p2"].level == 4
    assert store.parts["s1p2"].upgrading is False


async def test_mount_mirrors_ledgers(table_client, clock):
    session = _session(INVITER, table_client, clock)
    await session.boot()
    sync = session.mount()
    try:
        assert sync.online is True
        assert sync.scheduler.get_job(PERIODIC_JOB_ID) is not None
        assert sync.scheduler.get_job(GAME_TICK_JOB_ID) is not None

        session.nfts.purchase("early_adopter")
        await sync.drain()
        owned = await session.remote.load_nfts()
        assert [n.nft_id for n in owned] == ["early_adopter"]

        assert (await session.sync_now())["success"] is True
    finally:
        session.unmount()
    assert session.sync is None
    assert await session.sync_now() == {"success": False, "error": "NOT_MOUNTED"}


async def test_mount_offline_when_remote_down(clock):
    session = _session(INVITER, BrokenClient(), clock)
    await session.boot()
    sync = session.mount()
    try:
        assert sync.online is False
        assert (await session.sync_now())["error"] == "OFFLINE"
    finally:
        session.unmount()


async def test_mount_requires_boot(clock):
    with pytest.raises(RuntimeError):
        _session(INVITER, None, clock).mount()


class SlowEarningsClient:
    """Обёртка над SQL-клиентом: запись referral_earnings отвечает с задержкой."""

    def __init__(self, inner, fail=False):
        self.inner = inner
        self.fail = fail
        self._lock = asyncio.Lock()

    async def _earnings_write(self):
        await asyncio.sleep(0.05)
        if self.fail:
            raise RemoteError("timeout")

    async def select(self, *args, **kwargs):
        async with self._lock:
            return await self.inner.select(*args, **kwargs)

    async def upsert(self, table, rows):
        if table == "referral_earnings":
            await self._earnings_write()
        async with self._lock:
            return await self.inner.upsert(table, rows)

    async def update(self, table, values, filters):
        if table == "referral_earnings":
            await self._earnings_write()
        async with self._lock:
            return await self.inner.update(table, values, filters)

    async def close(self):
        pass


class SwitchableClient:
    """Сервер, который можно «выключить»."""

    def __init__(self, inner, down=True):
        self.inner = inner
        self.down = down
        self.closed = False

    def _check(self):
        if self.down:
            raise RemoteError("connection refused")

    async def select(self, *args, **kwargs):
        self._check()
        return await self.inner.select(*args, **kwargs)

    async def upsert(self, *args, **kwargs):
        self._check()
        return await self.inner.upsert(*args, **kwargs)

    async def update(self, *args, **kwargs):
        self._check()
        return await self.inner.update(*args, **kwargs)

    async def close(self):
        self.closed = True


async def test_overlapping_pushes_credit_share_once(table_client, clock):
    inviter = _session(INVITER, table_client, clock)
    await inviter.boot()
    code = (await inviter.remote.fetch_profile())["referral_code"]
    invitee = _session(INVITEE, SlowEarningsClient(table_client), clock, start_param=code)
    await invitee.boot()

    for _ in range(10):
        invitee.store.tap()
    await asyncio.gather(invitee.push_full(), invitee.push_full())

    assert await inviter.claim_referral_earnings() == {"success": True, "amount": 20}


async def test_failed_share_write_is_retried(table_client, clock):
    inviter = _session(INVITER, table_client, clock)
    await inviter.boot()
    code = (await inviter.remote.fetch_profile())["referral_code"]
    client = SlowEarningsClient(table_client)
    invitee = _session(INVITEE, client, clock, start_param=code)
    await invitee.boot()

    for _ in range(10):
        invitee.store.tap()
    client.fail = True
    with pytest.raises(RemoteError):
        await invitee.push_full()
    client.fail = False
    await invitee.push_full()

    assert await inviter.claim_referral_earnings() == {"success": True, "amount": 20}


async def test_offline_boot_reconciles_on_reconnect(table_client, clock):
    first = _session(INVITER, table_client, clock)
    await first.boot()
    first.store.state.bz = 1_005_000
    first.store.state.xp = 60_000
    await first.push_full()

    client = SwitchableClient(table_client, down=True)
    second = _session(INVITER, client, clock)
    res = await second.boot()
    assert res["remote_available"] is False
    sync = second.mount()
    try:
        assert sync.online is False
        client.down = False
        await sync.set_online(True)
        await sync.drain()
    finally:
        second.unmount()

    assert second.remote_available is True
    assert second.store.state.bz == 1_005_000
    assert second.store.state.xp == 60_000
    profile = await second.remote.fetch_profile()
    assert profile["bz"] == 1_005_000
    assert profile["xp"] == 60_000


async def test_taps_before_reconcile_do_not_overwrite_remote(table_client, clock):
    first = _session(INVITER, table_client, clock)
    await first.boot()
    first.store.state.bz = 200_000
    await first.push_full()

    client = SwitchableClient(table_client, down=True)
    second = _session(INVITER, client, clock)
    await second.boot()
    second.store.tap()
    client.down = False
    await second.push_taps()

    profile = await second.remote.fetch_profile()
    assert profile["bz"] == 200_000
    assert profile["total_taps"] == 1


async def test_close_releases_transport(clock, table_client):
    client = SwitchableClient(table_client, down=False)
    session = _session(INVITER, client, clock)
    await session.boot()
    session.mount()
    await session.close()
    assert session.sync is None
    assert client.closed is True
