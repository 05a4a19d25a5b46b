import asyncio
import unittest
from datetime import timedelta

from app.models.counter import AggregatedCounter, Counter
from app.models.job import JobRecord
from app.models.job_parameter import JobParameter
from app.models.job_state import JobState
from app.models.structures import HashEntry, ListEntry, SetEntry
from core.distributed_lock import DistributedLock
from core.exceptions import ConfigurationError
from core.expiration_manager import SWEEPER_LOCK, ExpirationManager
from core.model import Model
from core.state_machine import JobStateMachine
from tests.unit.storage_case import FakeClock, StorageTestCase, fast_polling, make_options


class TestExpirationManager(StorageTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.clock = FakeClock()
        self.manager = ExpirationManager(self.options, clock=self.clock)

    async def add_job(self, expire_at):
        async with Model.transaction() as session:
            job = JobRecord(
                invocation_data="{}",
                arguments="{}",
                created_at=self.clock.now,
                expire_at=expire_at,
            )
            session.add(job)
            await session.flush()
            return job.id

    async def test_removes_only_expired_jobs(self):
        """Past expire_at is removed; future and NULL are kept."""
        now = self.clock.now
        expired = await self.add_job(now - timedelta(hours=1))
        future = await self.add_job(now + timedelta(hours=1))
        persistent = await self.add_job(None)

        removed = await self.manager.run_once()

        self.assertEqual(removed["jobs"], 1)
        self.assertIsNone(await Model.find(JobRecord, expired))
        self.assertIsNotNone(await Model.find(JobRecord, future))
        self.assertIsNotNone(await Model.find(JobRecord, persistent))

    async def test_job_removal_cascades(self):
        machine = JobStateMachine(self.options, clock=self.clock)
        job_id = await machine.create_job("{}", "{}", parameters={"RetryCount": "1"})
        await machine.append_state(job_id, "Processing")
        await machine.append_state(job_id, "Succeeded")

        self.clock.advance(self.options.job_expiration_timeout + 1)
        await self.manager.run_once()

        self.assertIsNone(await Model.find(JobRecord, job_id))
        self.assertEqual(await Model.count(JobParameter, JobParameter.job_id == job_id), 0)
        self.assertEqual(await Model.count(JobState, JobState.job_id == job_id), 0)

    async def test_sweeps_every_expiring_table(self):
        past = self.clock.now - timedelta(minutes=1)
        async with Model.transaction() as session:
            session.add(AggregatedCounter(key="stats:old", value=1, expire_at=past))
            session.add(AggregatedCounter(key="stats:kept", value=1, expire_at=None))
            session.add(ListEntry(key="log", value="a", expire_at=past))
            session.add(ListEntry(key="log-kept", value="b", expire_at=None))
            session.add(SetEntry(key="schedule", value="1", score=0, expire_at=past))
            session.add(SetEntry(key="schedule-kept", value="2", score=0, expire_at=None))
            session.add(HashEntry(key="recurring", field="cron", value="* * * * *", expire_at=past))
            session.add(HashEntry(key="recurring-kept", field="cron", value="0 * * * *", expire_at=None))

        removed = await self.manager.run_once()

        self.assertEqual(removed["aggregated_counters"], 1)
        self.assertEqual(removed["lists"], 1)
        self.assertEqual(removed["sets"], 1)
        self.assertEqual(removed["hashes"], 1)
        for model in (AggregatedCounter, ListEntry, SetEntry, HashEntry):
            self.assertEqual(await Model.count(model), 1)

    async def test_deletes_in_batches(self):
        manager = ExpirationManager(make_options(delete_batch_size=2), clock=self.clock)
        for _ in range(5):
            await self.add_job(self.clock.now - timedelta(seconds=1))

        removed = await manager.run_once()

        self.assertEqual(removed["jobs"], 5)
        self.assertEqual(await Model.count(JobRecord), 0)

    async def test_folds_counters_before_sweeping(self):
        async with Model.transaction() as session:
            session.add(Counter(key="stats:succeeded", value=1))
            session.add(Counter(key="stats:succeeded", value=1))

        await self.manager.run_once()

        self.assertEqual(await Model.count(Counter), 0)
        self.assertEqual(await Model.count(AggregatedCounter), 1)

    async def test_skips_pass_while_another_sweeper_holds_lock(self):
        lock = DistributedLock(self.options, polling=fast_polling())
        await self.add_job(self.clock.now - timedelta(seconds=1))

        async with lock.hold(SWEEPER_LOCK):
            self.assertIsNone(await self.manager.run_exclusive())
        self.assertEqual(await Model.count(JobRecord), 1)

        removed = await self.manager.run_exclusive()
        self.assertEqual(removed["jobs"], 1)

    async def test_run_until_cancelled(self):
        await self.add_job(self.clock.now - timedelta(seconds=1))
        cancel = asyncio.Event()

        task = asyncio.create_task(self.manager.run(cancel))
        await asyncio.sleep(0.2)
        cancel.set()
        await asyncio.wait_for(task, timeout=2)

        self.assertGreaterEqual(self.manager.passes, 1)
        self.assertEqual(await Model.count(JobRecord), 0)


class TestExpirationManagerConfiguration(unittest.TestCase):
    def test_requires_configured_storage(self):
        with self.assertRaises(ConfigurationError):
            ExpirationManager(make_options())


if __name__ == '__main__':
    unittest.main()
