"""Import all models so SQLAlchemy metadata knows about them."""
from advisor.models.base import Base
from advisor.models.job import JobRecord, JobProgressRecord

__all__ = ["Base", "JobRecord", "JobProgressRecord"]
