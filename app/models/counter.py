from sqlalchemy import Column, DateTime, Integer, String
from core.model import Base


class Counter(Base):
    """Model for counters table - raw increment/decrement events awaiting aggregation."""

    __tablename__ = "counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, index=True)
    value = Column(Integer, nullable=False)
    expire_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Counter(key='{self.key}', value={self.value})>"


class AggregatedCounter(Base):
    """Model for aggregated_counters table - running totals folded from raw counters."""

    __tablename__ = "aggregated_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, unique=True)
    value = Column(Integer, nullable=False)
    expire_at = Column(DateTime, nullable=True, index=True)

    def __repr__(self):
        return f"<AggregatedCounter(key='{self.key}', value={self.value})>"
