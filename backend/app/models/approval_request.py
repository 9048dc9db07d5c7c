"""
Approval Request database model.

A requester asks for an edit or delete of a finalized record; an approver
applies or discards it against the snapshot captured at request time.
"""

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Text, JSON, Index, text
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.core.exceptions import PENDING_APPROVAL_INDEX
from backend.app.models.enums import (
    ApprovalEntityType, ApprovalRequestType, ApprovalStatus, enum_column
)


class ApprovalRequest(Base):
    """
    Approval request model.

    At most one pending request may exist per (entity_type, entity_id); the
    partial unique index enforces it even under concurrent inserts.
    """
    __tablename__ = "approval_requests"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        Index(
            PENDING_APPROVAL_INDEX,
            "entity_type",
            "entity_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    entity_type = Column(enum_column(ApprovalEntityType), nullable=False)
    entity_id = Column(Integer, nullable=False)
    request_type = Column(enum_column(ApprovalRequestType), nullable=False)

    requested_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reason = Column(Text, nullable=False)

    request_data = Column(JSON, nullable=True)  # Edit only
    original_entity_data = Column(JSON, nullable=False)  # Snapshot before any status flip

    status = Column(enum_column(ApprovalStatus), default=ApprovalStatus.PENDING, nullable=False, index=True)

    # Decision
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    requested_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<ApprovalRequest(id={self.id}, {self.entity_type.value}:{self.entity_id}, "
            f"type='{self.request_type.value}', status='{self.status.value}')>"
        )
