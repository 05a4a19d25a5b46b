from sqlalchemy import Column, ForeignKey, Integer, String, Text, UniqueConstraint
from core.model import Base


class JobParameter(Base):
    """Model for job_parameters table - named values attached to a job."""

    __tablename__ = "job_parameters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        Integer,
        ForeignKey("jobs.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(40), nullable=False)
    value = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("job_id", "name", name="job_parameters_job_id_name_unique"),
    )

    def __repr__(self):
        return f"<JobParameter(job_id={self.job_id}, name='{self.name}')>"
