import asyncio
import unittest

from app.models.distributed_lock import DistributedLockRow
from app.models.queue_entry import QueueEntry
from core.distributed_lock import DistributedLock
from core.exceptions import DequeueTimeoutError, OperationCancelled
from core.model import Model
from core.polling import PollingPolicy
from core.queue.database_queue import DatabaseQueue
from core.state_machine import JobStateMachine
from tests.unit.storage_case import FakeClock, StorageTestCase, fast_polling, make_options


class TestDatabaseQueue(StorageTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.queue = DatabaseQueue(self.options, polling=fast_polling())

    async def test_enqueue_and_dequeue(self):
        await self.queue.enqueue(1, "default")
        self.assertEqual(await self.queue.size("default"), 1)

        fetched = await self.queue.dequeue(["default"], timeout=0)
        self.assertEqual(fetched.job_id, 1)
        self.assertEqual(fetched.queue, "default")
        self.assertIsNotNone(fetched.fetch_token)

        # Claimed entries are invisible to other fetchers
        self.assertEqual(await self.queue.size("default"), 0)
        self.assertEqual(await self.queue.fetched_count("default"), 1)

        self.assertTrue(await fetched.remove_from_queue())
        self.assertEqual(await Model.count(QueueEntry), 0)

    async def test_claims_in_fifo_order(self):
        for job_id in (10, 11, 12):
            await self.queue.enqueue(job_id)

        claimed = []
        for _ in range(3):
            fetched = await self.queue.dequeue(["default"], timeout=0)
            claimed.append(fetched.job_id)
        self.assertEqual(claimed, [10, 11, 12])

    async def test_queues_are_checked_in_priority_order(self):
        await self.queue.enqueue(1, "low")
        await self.queue.enqueue(2, "high")

        first = await self.queue.dequeue(["high", "low"], timeout=0)
        second = await self.queue.dequeue(["high", "low"], timeout=0)

        self.assertEqual((first.job_id, first.queue), (2, "high"))
        self.assertEqual((second.job_id, second.queue), (1, "low"))

    async def test_other_queues_are_ignored(self):
        await self.queue.enqueue(1, "emails")

        with self.assertRaises(DequeueTimeoutError):
            await self.queue.dequeue(["default"], timeout=0)

    async def test_zero_timeout_on_empty_queue(self):
        """An empty queue with a zero timeout fails immediately."""
        loop = asyncio.get_running_loop()
        started = loop.time()

        with self.assertRaises(DequeueTimeoutError) as ctx:
            await self.queue.dequeue(["default"], timeout=0)

        self.assertIsInstance(ctx.exception, TimeoutError)
        self.assertEqual(ctx.exception.queues, ["default"])
        self.assertLess(loop.time() - started, 1)

    async def test_empty_queue_list_is_rejected(self):
        with self.assertRaises(ValueError):
            await self.queue.dequeue([], timeout=0)

    async def test_dequeue_waits_for_new_entries(self):
        consumer = asyncio.create_task(self.queue.dequeue(["default"], timeout=2))
        await asyncio.sleep(0.05)
        self.assertFalse(consumer.done())

        await self.queue.enqueue(7)
        fetched = await consumer
        self.assertEqual(fetched.job_id, 7)

    async def test_cancel_while_polling(self):
        """Cancellation ends the wait within one poll interval."""
        queue = DatabaseQueue(self.options, polling=PollingPolicy(interval=0.2, max_interval=0.2, jitter=0))
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel.set)

        started = loop.time()
        with self.assertRaises(OperationCancelled):
            await queue.dequeue(["default"], timeout=10, cancel=cancel)
        self.assertLess(loop.time() - started, 0.2 + 0.5)

    async def test_concurrent_fetchers_claim_each_entry_once(self):
        """N fetchers racing over M entries claim exactly M distinct entries."""
        entries = 12
        for job_id in range(1, entries + 1):
            await self.queue.enqueue(job_id)

        async def fetcher():
            queue = DatabaseQueue(self.options, polling=fast_polling())
            claimed = []
            while True:
                try:
                    fetched = await queue.dequeue(["default"], timeout=0)
                except DequeueTimeoutError:
                    return claimed
                claimed.append(fetched.entry_id)

        results = await asyncio.gather(*(fetcher() for _ in range(5)))
        claimed = [entry_id for result in results for entry_id in result]

        # Drain anything a fetcher gave up on after losing races
        while True:
            try:
                fetched = await self.queue.dequeue(["default"], timeout=0)
            except DequeueTimeoutError:
                break
            claimed.append(fetched.entry_id)

        self.assertEqual(len(claimed), entries)
        self.assertEqual(len(set(claimed)), entries)
        self.assertEqual(await self.queue.fetched_count("default"), entries)

    async def test_expired_claim_is_fetched_again(self):
        clock = FakeClock()
        queue = DatabaseQueue(self.options, polling=fast_polling(), clock=clock)
        await queue.enqueue(1)

        first = await queue.dequeue(["default"], timeout=0)
        with self.assertRaises(DequeueTimeoutError):
            await queue.dequeue(["default"], timeout=0)

        clock.advance(self.options.invisibility_timeout + 1)
        second = await queue.dequeue(["default"], timeout=0)

        self.assertEqual(second.entry_id, first.entry_id)
        self.assertNotEqual(second.fetch_token, first.fetch_token)

        # The first worker lost its claim
        self.assertFalse(await first.remove_from_queue())
        self.assertFalse(await first.requeue())
        self.assertEqual(await Model.count(QueueEntry), 1)

        self.assertTrue(await second.remove_from_queue())
        self.assertEqual(await Model.count(QueueEntry), 0)

    async def test_requeue_makes_entry_available(self):
        await self.queue.enqueue(1)
        fetched = await self.queue.dequeue(["default"], timeout=0)

        self.assertTrue(await fetched.requeue())
        self.assertEqual(await self.queue.size("default"), 1)

        again = await self.queue.dequeue(["default"], timeout=0)
        self.assertEqual(again.entry_id, fetched.entry_id)

    async def test_context_exit_requeues_unacknowledged_entry(self):
        await self.queue.enqueue(1)

        async with await self.queue.dequeue(["default"], timeout=0) as fetched:
            pass

        self.assertTrue(fetched.requeued)
        self.assertEqual(await self.queue.size("default"), 1)

    async def test_context_exit_keeps_acknowledged_entry_removed(self):
        await self.queue.enqueue(1)

        async with await self.queue.dequeue(["default"], timeout=0) as fetched:
            await fetched.remove_from_queue()

        self.assertFalse(fetched.requeued)
        self.assertEqual(await Model.count(QueueEntry), 0)

    async def test_job_link_tolerates_missing_job(self):
        await self.queue.enqueue(999)
        fetched = await self.queue.dequeue(["default"], timeout=0)

        self.assertIsNone(await fetched.job.resolve())

    async def test_job_link_resolves_existing_job(self):
        machine = JobStateMachine(self.options)
        job_id = await machine.create_job('{"class": "x.Y"}', "{}")
        await self.queue.enqueue(job_id)

        fetched = await self.queue.dequeue(["default"], timeout=0)
        record = await fetched.job.resolve()
        self.assertEqual(record.id, job_id)

    async def test_serialized_claims_release_queue_lock(self):
        queue = DatabaseQueue(self.options, polling=fast_polling(), serialize_claims=True)
        await queue.enqueue(1)

        fetched = await queue.dequeue(["default"], timeout=0)
        self.assertEqual(fetched.job_id, 1)
        self.assertEqual(await Model.count(DistributedLockRow), 0)

    async def test_locked_queue_respects_zero_timeout(self):
        """A queue locked by another fetcher does not stretch a zero-timeout dequeue."""
        options = make_options(lock_timeout=3)
        holder = await DistributedLock(options).acquire("queue:default", timeout=0)
        queue = DatabaseQueue(options, polling=fast_polling(), serialize_claims=True)
        await queue.enqueue(1)

        loop = asyncio.get_running_loop()
        started = loop.time()
        with self.assertRaises(DequeueTimeoutError):
            await queue.dequeue(["default"], timeout=0)
        self.assertLess(loop.time() - started, 0.5)

        await holder.release()
        fetched = await queue.dequeue(["default"], timeout=0)
        self.assertEqual(fetched.job_id, 1)

    async def test_locked_queue_wait_is_bounded_by_timeout(self):
        options = make_options(lock_timeout=3)
        holder = await DistributedLock(options).acquire("queue:default", timeout=0)
        queue = DatabaseQueue(options, polling=fast_polling(), serialize_claims=True)

        loop = asyncio.get_running_loop()
        started = loop.time()
        with self.assertRaises(DequeueTimeoutError):
            await queue.dequeue(["default"], timeout=0.2)
        self.assertLess(loop.time() - started, 1)

        await holder.release()

    async def test_cancel_while_waiting_for_queue_lock(self):
        options = make_options(lock_timeout=3)
        holder = await DistributedLock(options).acquire("queue:default", timeout=0)
        queue = DatabaseQueue(options, polling=fast_polling(), serialize_claims=True)
        cancel = asyncio.Event()

        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel.set)
        started = loop.time()
        with self.assertRaises(OperationCancelled):
            await queue.dequeue(["default"], timeout=10, cancel=cancel)
        self.assertLess(loop.time() - started, 0.5)

        await holder.release()

    async def test_expired_claims_count_as_waiting(self):
        clock = FakeClock()
        queue = DatabaseQueue(self.options, polling=fast_polling(), clock=clock)
        await queue.enqueue(1)
        await queue.dequeue(["default"], timeout=0)

        self.assertEqual(await queue.size("default"), 0)
        self.assertEqual(await queue.fetched_count("default"), 1)

        clock.advance(self.options.invisibility_timeout + 1)
        self.assertEqual(await queue.size("default"), 1)
        self.assertEqual(await queue.fetched_count("default"), 0)

    async def test_queues_lists_distinct_names(self):
        await self.queue.enqueue(1, "emails")
        await self.queue.enqueue(2, "default")
        await self.queue.enqueue(3, "emails")

        self.assertEqual(await self.queue.queues(), ["default", "emails"])


if __name__ == '__main__':
    unittest.main()
