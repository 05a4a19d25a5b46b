from sqlalchemy import Column, Integer, String, Text, DateTime, Index
from core.model import Base, utc_now


class JobRecord(Base):
    """Model for jobs table - one unit of deferred work and its current state."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Points at the latest job_states row; no FK to avoid a cycle with job_states
    state_id = Column(Integer, nullable=True)
    state_name = Column(String(20), nullable=True, index=True)
    invocation_data = Column(Text, nullable=False)
    arguments = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    expire_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("jobs_expire_at_index", "expire_at"),
    )

    def __repr__(self):
        return f"<JobRecord(id={self.id}, state='{self.state_name}', expire_at='{self.expire_at}')>"
