from sqlalchemy import Column, DateTime, String
from core.model import Base


class DistributedLockRow(Base):
    """Model for distributed_locks table - one row per currently held resource."""

    __tablename__ = "distributed_locks"

    # The primary key makes "insert if absent" atomic in every dialect
    resource = Column(String(100), primary_key=True)
    created_at = Column(DateTime, nullable=False)
    owner = Column(String(36), nullable=False)

    def __repr__(self):
        return f"<DistributedLockRow(resource='{self.resource}', created_at='{self.created_at}')>"
