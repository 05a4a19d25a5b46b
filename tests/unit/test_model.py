import os
import unittest
from unittest.mock import patch

from sqlalchemy.exc import IntegrityError, OperationalError

from app.models.distributed_lock import DistributedLockRow
from app.models.job import JobRecord
from bootstrap.app import Application
from core.exceptions import ConfigurationError, TransientStoreError
from core.model import Model, _is_transient, utc_now
from tests.unit.storage_case import StorageTestCase


class TestModel(StorageTestCase):
    async def test_transaction_commits(self):
        async with Model.transaction() as session:
            session.add(JobRecord(invocation_data="{}", arguments="{}"))

        self.assertEqual(await Model.count(JobRecord), 1)

    async def test_transaction_rolls_back_on_error(self):
        with self.assertRaises(RuntimeError):
            async with Model.transaction() as session:
                session.add(JobRecord(invocation_data="{}", arguments="{}"))
                await session.flush()
                raise RuntimeError("abort")

        self.assertEqual(await Model.count(JobRecord), 0)

    async def test_integrity_errors_propagate(self):
        now = utc_now()
        async with Model.transaction() as session:
            session.add(DistributedLockRow(resource="r", created_at=now, owner="a"))

        with self.assertRaises(IntegrityError):
            async with Model.transaction() as session:
                session.add(DistributedLockRow(resource="r", created_at=now, owner="b"))

    async def test_transient_errors_are_translated(self):
        with self.assertRaises(TransientStoreError):
            async with Model.transaction():
                raise OperationalError("SELECT 1", {}, Exception("server has gone away"))

    async def test_find_and_count(self):
        async with Model.transaction() as session:
            job = JobRecord(invocation_data="{}", arguments="{}", state_name="Enqueued")
            session.add(job)
            await session.flush()
            job_id = job.id

        self.assertEqual((await Model.find(JobRecord, job_id)).state_name, "Enqueued")
        self.assertIsNone(await Model.find(JobRecord, job_id + 1))
        self.assertEqual(await Model.count(JobRecord, JobRecord.state_name == "Failed"), 0)


class TestModelConfiguration(unittest.IsolatedAsyncioTestCase):
    def test_empty_connection_string(self):
        with self.assertRaises(ConfigurationError):
            Model.configure("")

    def test_ensure_configured(self):
        with self.assertRaises(ConfigurationError):
            Model.ensure_configured("QueueWorker")

    async def test_transaction_requires_configuration(self):
        with self.assertRaises(ConfigurationError):
            async with Model.transaction():
                pass

    def test_is_transient(self):
        self.assertTrue(_is_transient(OperationalError("SELECT 1", {}, Exception("lost"))))
        self.assertFalse(_is_transient(IntegrityError("INSERT", {}, Exception("duplicate"))))
        self.assertFalse(_is_transient(ValueError("nope")))


class TestDatabaseUrl(unittest.TestCase):
    @patch.dict(os.environ, {"DB_URL": "sqlite+aiosqlite:///jobs.db"})
    def test_explicit_url(self):
        self.assertEqual(Application.database_url(), "sqlite+aiosqlite:///jobs.db")

    @patch.dict(os.environ, {
        "DB_URL": "",
        "DB_HOST": "db",
        "DB_PORT": "3307",
        "DB_NAME": "jobs",
        "DB_USER": "worker",
        "DB_PASS": "secret",
    })
    def test_mysql_url_from_parts(self):
        self.assertEqual(Application.database_url(), "mysql+aiomysql://worker:secret@db:3307/jobs")


if __name__ == '__main__':
    unittest.main()
