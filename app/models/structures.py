from sqlalchemy import Column, DateTime, Float, Integer, String, Text, UniqueConstraint
from core.model import Base


class HashEntry(Base):
    """Model for hashes table - one field of a keyed hash."""

    __tablename__ = "hashes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False)
    field = Column(String(40), nullable=False)
    value = Column(Text, nullable=True)
    expire_at = Column(DateTime, nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint("key", "field", name="hashes_key_field_unique"),
    )


class SetEntry(Base):
    """Model for sets table - one scored member of a keyed set."""

    __tablename__ = "sets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False)
    value = Column(String(256), nullable=False)
    score = Column(Float, nullable=False, default=0.0)
    expire_at = Column(DateTime, nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint("key", "value", name="sets_key_value_unique"),
    )


class ListEntry(Base):
    """Model for lists table - one element of a keyed list."""

    __tablename__ = "lists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, index=True)
    value = Column(Text, nullable=True)
    expire_at = Column(DateTime, nullable=True, index=True)


class Server(Base):
    """Model for servers table - heartbeat records of worker processes."""

    __tablename__ = "servers"

    id = Column(String(100), primary_key=True)
    data = Column(Text, nullable=False)
    last_heartbeat = Column(DateTime, nullable=True)
