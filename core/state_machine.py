import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.job import JobRecord
from app.models.job_parameter import JobParameter
from app.models.job_state import JobState
from core.exceptions import JobNotFoundError
from core.model import Model, utc_now
from core.options import StorageOptions

logger = logging.getLogger("RowQueue.StateMachine")

StateData = Union[str, Dict[str, Any], None]

# Column widths of job_states.name and job_states.reason
STATE_NAME_LENGTH = 20
REASON_LENGTH = 100


def serialize_data(data: StateData) -> Optional[str]:
    """State data is stored as an opaque JSON blob; strings pass through untouched."""
    if data is None or isinstance(data, str):
        return data
    return json.dumps(data, default=str)


class JobStateMachine:
    """
    Records job state transitions.

    Every transition appends a row to job_states and, in the same transaction,
    mirrors the new state's id and name onto the job. Entering a terminal
    state schedules the job for expiration; entering any other state clears
    the expiration again. One worker at a time is assumed to own a job, so
    concurrent transitions of the same job are not arbitrated here.
    """

    def __init__(
        self,
        options: Optional[StorageOptions] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        Model.ensure_configured("JobStateMachine")
        self.options = options or StorageOptions.from_env()
        self.clock = clock

    @asynccontextmanager
    async def _session(self, session: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with Model.transaction() as own_session:
            yield own_session

    def is_terminal(self, state_name: str) -> bool:
        return state_name in self.options.terminal_states

    async def create_job(
        self,
        invocation_data: str,
        arguments: str,
        parameters: Optional[Dict[str, Optional[str]]] = None,
        expire_in: Optional[timedelta] = None,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Create a job without a state.

        ``expire_in`` lets producers create a job that is swept unless a later
        non-terminal transition persists it.
        """
        now = self.clock()
        async with self._session(session) as s:
            job = JobRecord(
                invocation_data=invocation_data,
                arguments=arguments,
                created_at=now,
                expire_at=now + expire_in if expire_in is not None else None,
            )
            s.add(job)
            await s.flush()

            for name, value in (parameters or {}).items():
                s.add(JobParameter(job_id=job.id, name=name, value=value))
            await s.flush()

        logger.debug(f"Job {job.id} created")
        return job.id

    async def append_state(
        self,
        job_id: int,
        state_name: str,
        reason: Optional[str] = None,
        data: StateData = None,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Append a state to the job's history and make it the current state.

        Returns:
            The id of the new job_states row

        Raises:
            JobNotFoundError: if the job does not exist
            ValueError: if the state name is empty or longer than the column allows
        """
        if not state_name or len(state_name) > STATE_NAME_LENGTH:
            raise ValueError(
                f"State name must be 1 to {STATE_NAME_LENGTH} characters, got '{state_name}'"
            )

        now = self.clock()
        async with self._session(session) as s:
            job = await s.get(JobRecord, job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            state = JobState(
                job_id=job_id,
                name=state_name,
                reason=reason[:REASON_LENGTH] if reason else reason,
                created_at=now,
                data=serialize_data(data),
            )
            s.add(state)
            await s.flush()

            job.state_id = state.id
            job.state_name = state_name
            if self.is_terminal(state_name):
                job.expire_at = now + timedelta(seconds=self.options.job_expiration_timeout)
            else:
                job.expire_at = None
            await s.flush()

        logger.debug(f"Job {job_id} moved to state '{state_name}'")
        return state.id

    async def current_state(self, job_id: int) -> Optional[str]:
        """Get the name of the job's current state, or None if it has none."""
        async with Model.transaction() as session:
            result = await session.execute(
                select(JobRecord.state_name).where(JobRecord.id == job_id)
            )
            return result.scalar_one_or_none()

    async def state_history(self, job_id: int) -> List[JobState]:
        """Get every state the job went through, oldest first."""
        async with Model.transaction() as session:
            result = await session.execute(
                select(JobState)
                .where(JobState.job_id == job_id)
                .order_by(JobState.created_at, JobState.id)
            )
            return list(result.scalars().all())

    async def get_job(self, job_id: int) -> Optional[JobRecord]:
        return await Model.find(JobRecord, job_id)

    async def set_parameter(self, job_id: int, name: str, value: Optional[str]) -> None:
        async with Model.transaction() as session:
            result = await session.execute(
                select(JobParameter).where(
                    JobParameter.job_id == job_id,
                    JobParameter.name == name,
                )
            )
            parameter = result.scalars().first()
            if parameter is not None:
                parameter.value = value
                return

            if await session.get(JobRecord, job_id) is None:
                raise JobNotFoundError(job_id)
            session.add(JobParameter(job_id=job_id, name=name, value=value))

    async def get_parameter(self, job_id: int, name: str) -> Optional[str]:
        async with Model.transaction() as session:
            result = await session.execute(
                select(JobParameter.value).where(
                    JobParameter.job_id == job_id,
                    JobParameter.name == name,
                )
            )
            return result.scalar_one_or_none()
