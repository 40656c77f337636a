import uuid

from sqlalchemy import Column, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from cadence.database import Base


class QueueJob(Base):
    __tablename__ = "queue_jobs"
    __table_args__ = (UniqueConstraint("queue", "job_id", name="uq_queue_jobs_queue_job_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    queue = Column(Text, nullable=False)
    job_id = Column(Text, nullable=False)
    payload_json = Column(JSONB, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    run_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    last_error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
