from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from core.model import Base, utc_now


class JobState(Base):
    """Model for job_states table - append-only history of job transitions."""

    __tablename__ = "job_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        Integer,
        ForeignKey("jobs.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(20), nullable=False)
    reason = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    data = Column(Text, nullable=True)

    def __repr__(self):
        return f"<JobState(id={self.id}, job_id={self.job_id}, name='{self.name}')>"
