"""Tests for the expired-entitlement sweep."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from paybridge.services.database import Entitlement, EntitlementStore, utcnow
from paybridge.services.sweep import EntitlementSweep
from tests.helpers import STEAMID, FakeRcon


async def _entitlement(
    expires_in: timedelta | None, revoke: str = f"loverustvip.revoke {STEAMID}", txn_id: str = "abc123", **extra
):
    now = utcnow()
    return await Entitlement.create(
        owner_id=STEAMID,
        sku="vip_30d",
        txn_id=txn_id,
        grant_command=f"loverustvip.grant {STEAMID} 30d",
        revoke_command=revoke,
        granted_at=now - timedelta(days=30),
        expires_at=now + expires_in if expires_in is not None else None,
        **extra,
    )


def _sweep(rcon: FakeRcon, **kwargs) -> EntitlementSweep:
    return EntitlementSweep(rcon, EntitlementStore(), **kwargs)


class TestSweepTick:
    async def test_expired_entitlement_is_revoked(self, db, fake_rcon):
        entry = await _entitlement(timedelta(minutes=-1))

        report = await _sweep(fake_rcon).run_once()

        assert report.revoked == 1
        assert fake_rcon.commands == [f"loverustvip.revoke {STEAMID}"]
        await entry.refresh_from_db()
        assert entry.revoked_at is not None
        assert entry.attempts == 1

    async def test_future_entitlement_is_untouched(self, db, fake_rcon):
        entry = await _entitlement(timedelta(days=1))

        report = await _sweep(fake_rcon).run_once()

        assert report.due == 0
        assert fake_rcon.sent == []
        await entry.refresh_from_db()
        assert entry.revoked_at is None
        assert entry.attempts == 0

    async def test_permanent_entitlement_is_never_due(self, db, fake_rcon):
        await _entitlement(None)
        assert (await _sweep(fake_rcon).run_once()).due == 0

    async def test_revoked_entitlement_is_not_revisited(self, db, fake_rcon):
        sweep = _sweep(fake_rcon)
        await _entitlement(timedelta(minutes=-1))
        await sweep.run_once()
        await sweep.run_once()
        assert len(fake_rcon.sent) == 1

    async def test_failed_revoke_retries_every_tick(self, db):
        rcon = FakeRcon(fail_on=["revoke"])
        sweep = _sweep(rcon)
        entry = await _entitlement(timedelta(minutes=-1))

        first = await sweep.run_once()
        second = await sweep.run_once()

        assert first.failed == 1 and second.failed == 1
        assert len(rcon.sent) == 2
        await entry.refresh_from_db()
        assert entry.revoked_at is None
        assert entry.attempts == 2
        assert "simulated failure" in entry.last_error

        rcon.fail_on = []
        assert (await sweep.run_once()).revoked == 1
        await entry.refresh_from_db()
        assert entry.revoked_at is not None
        assert entry.last_error is None

    async def test_one_failure_does_not_block_others(self, db):
        rcon = FakeRcon(fail_on=["bad"])
        await _entitlement(timedelta(minutes=-2), revoke="bad revoke")
        good = await _entitlement(timedelta(minutes=-1), revoke="good revoke")

        report = await _sweep(rcon).run_once()

        assert (report.revoked, report.failed) == (1, 1)
        await good.refresh_from_db()
        assert good.revoked_at is not None

    async def test_renewed_entitlement_is_not_revoked_early(self, db, fake_rcon):
        older = await _entitlement(timedelta(minutes=-1))
        newer = await _entitlement(timedelta(days=29), txn_id="renewal")

        report = await _sweep(fake_rcon).run_once()

        assert report.superseded == 1
        assert fake_rcon.sent == []
        await older.refresh_from_db()
        await newer.refresh_from_db()
        assert older.revoked_at is not None
        assert newer.revoked_at is None

    async def test_renewal_only_shields_matching_revoke(self, db, fake_rcon):
        await _entitlement(timedelta(minutes=-1))
        await _entitlement(timedelta(days=29), revoke=f"oxide.revoke user {STEAMID} vip.rainbow")

        report = await _sweep(fake_rcon).run_once()

        assert report.revoked == 1
        assert fake_rcon.commands == [f"loverustvip.revoke {STEAMID}"]

    async def test_both_due_revokes_once(self, db, fake_rcon):
        await _entitlement(timedelta(minutes=-2))
        await _entitlement(timedelta(minutes=-1))

        report = await _sweep(fake_rcon).run_once()

        assert (report.superseded, report.revoked) == (1, 1)
        assert fake_rcon.commands == [f"loverustvip.revoke {STEAMID}"]

    async def test_unavailable_rcon_skips_without_marking(self, db):
        rcon = FakeRcon(configured=False)
        entry = await _entitlement(timedelta(minutes=-1))

        report = await _sweep(rcon).run_once()

        assert report.skipped == 1
        assert rcon.sent == []
        await entry.refresh_from_db()
        assert entry.revoked_at is None
        assert entry.attempts == 0

    async def test_backoff_defers_next_attempt(self, db):
        rcon = FakeRcon(fail_on=["revoke"])
        sweep = _sweep(rcon, backoff_base=60, backoff_max=600)
        entry = await _entitlement(timedelta(minutes=-1))

        now = utcnow()
        await sweep.run_once(now)
        await entry.refresh_from_db()
        assert entry.next_attempt_at - now == timedelta(seconds=60)

        assert (await sweep.run_once(now + timedelta(seconds=30))).due == 0
        assert (await sweep.run_once(now + timedelta(seconds=61))).due == 1
        await entry.refresh_from_db()
        assert entry.attempts == 2
        assert entry.next_attempt_at - (now + timedelta(seconds=61)) == timedelta(seconds=120)

    def test_backoff_is_capped(self):
        sweep = EntitlementSweep(FakeRcon(), backoff_base=60, backoff_max=600)
        assert sweep._retry_after(10) == timedelta(seconds=600)
        assert sweep._retry_after(5000) == timedelta(seconds=600)
        assert EntitlementSweep(FakeRcon())._retry_after(3) is None


class TestSweepLoop:
    async def test_loop_runs_ticks_until_stopped(self, db, fake_rcon):
        await _entitlement(timedelta(minutes=-1))
        sweep = _sweep(fake_rcon, interval=0.01)

        sweep.start()
        assert sweep.running
        for _ in range(100):
            if fake_rcon.sent:
                break
            await asyncio.sleep(0.01)
        await sweep.stop()

        assert not sweep.running
        assert fake_rcon.commands == [f"loverustvip.revoke {STEAMID}"]

    async def test_tick_errors_do_not_kill_loop(self, fake_rcon):
        calls = []

        class BrokenStore(EntitlementStore):
            async def due(self, now=None):
                calls.append(now)
                raise RuntimeError("database is gone")

        sweep = EntitlementSweep(fake_rcon, BrokenStore(), interval=0.01)
        sweep.start()
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        assert sweep.running
        await sweep.stop()
        assert len(calls) >= 2
