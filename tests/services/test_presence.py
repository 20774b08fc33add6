"""Tests for offline detection and the presence monitor."""

import asyncio
from datetime import timedelta

from cyberhub.db.models import ComputerStatus, EventType, utcnow
from cyberhub.services import PresenceMonitor


class TestCheckOfflineComputers:
    async def test_recent_heartbeat_stays_online(self, computers, computer):
        assert await computers.check_offline_computers() == 0
        assert (await computers.get(computer.id)).status == ComputerStatus.AVAILABLE

    async def test_silent_computer_marked_once(self, db, computers, computer):
        later = utcnow() + timedelta(seconds=31)
        assert await computers.check_offline_computers(now=later) == 1
        assert await computers.check_offline_computers(now=later) == 0

        assert (await computers.get(computer.id)).status == ComputerStatus.OFFLINE
        [event] = await db.event.find_many({"type": EventType.COMPUTER_DISCONNECTED})
        assert event.computer_id == computer.id
        assert event.payload == {"reason": "heartbeat timeout"}

    async def test_threshold_follows_settings(self, computers, computer, settings):
        settings.presence.offline_after_seconds = 300
        assert await computers.check_offline_computers(now=utcnow() + timedelta(seconds=31)) == 0


class TestPresenceMonitor:
    async def test_run_once_counts_sweeps(self, computers, computer):
        monitor = PresenceMonitor(computers, interval_seconds=60)
        assert await monitor.run_once() == 0
        assert monitor.sweeps == 1

    async def test_run_once_survives_errors(self, db, computers):
        monitor = PresenceMonitor(computers)
        await db.disconnect()
        assert await monitor.run_once() == 0
        assert monitor.sweeps == 1

    async def test_start_and_stop(self, computers):
        monitor = PresenceMonitor(computers, interval_seconds=0.01)
        monitor.start()
        monitor.start()
        assert monitor.running
        for _ in range(100):
            if monitor.sweeps >= 2:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()
        assert not monitor.running
        assert monitor.sweeps >= 2

    async def test_stop_without_start(self, computers):
        await PresenceMonitor(computers).stop()
