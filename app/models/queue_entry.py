from sqlalchemy import Column, Integer, String, DateTime, Index
from core.model import Base


class QueueEntry(Base):
    """Model for job_queue table - a job placed on a named queue, awaiting a worker."""

    __tablename__ = "job_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Weak reference: the job may be gone by the time the entry is fetched
    job_id = Column(Integer, nullable=False)
    queue = Column(String(50), nullable=False, default="default")
    fetched_at = Column(DateTime, nullable=True)
    fetch_token = Column(String(36), nullable=True)

    # Composite index for efficient job fetching
    __table_args__ = (
        Index("job_queue_queue_fetched_at_index", "queue", "fetched_at"),
    )

    def __repr__(self):
        return f"<QueueEntry(id={self.id}, job_id={self.job_id}, queue='{self.queue}')>"
