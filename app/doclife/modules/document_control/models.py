from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.doclife.models import Base

# Draft -> In Approval -> Released -> Obsolete
STATUS_DRAFT = "Draft"
STATUS_IN_APPROVAL = "In Approval"
STATUS_RELEASED = "Released"
STATUS_OBSOLETE = "Obsolete"
VALID_STATUSES = (STATUS_DRAFT, STATUS_IN_APPROVAL, STATUS_RELEASED, STATUS_OBSOLETE)

APPROVER_PENDING = "Pending"
APPROVER_APPROVED = "Approved"
APPROVER_REJECTED = "Rejected"


class DocumentVersion(Base):
    """
    One row per version of a controlled document.

    All rows sharing `document_number` form a lineage. The production flag is
    fixed for the lineage and decides the label family (vA.. vs v1..).
    """

    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "document_number", "version", name="uq_document_number_version"),
        Index("idx_document_versions_lineage", "tenant_id", "document_number"),
        Index("idx_document_versions_status", "tenant_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    document_type_id: Mapped[int] = mapped_column(
        ForeignKey("document_types.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    document_number: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. "FORM-00007"
    version: Mapped[str] = mapped_column(String(16), nullable=False)  # e.g. "vA", "v3"
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_DRAFT)
    is_production: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    project_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    released_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Prototype version this Production lineage was promoted from.
    promoted_from_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_versions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    approvers: Mapped[list["Approver"]] = relationship(
        "Approver",
        back_populates="version",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Approver.id",
    )

    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment",
        back_populates="version",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Attachment.id",
    )

    @property
    def display_number(self) -> str:
        return f"{self.document_number}{self.version}"

    def __repr__(self) -> str:
        return f"<DocumentVersion {self.display_number} {self.status}>"


class Approver(Base):
    __tablename__ = "approvers"
    __table_args__ = (
        UniqueConstraint("document_version_id", "user_id", name="uq_approver_version_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    document_version_id: Mapped[int] = mapped_column(
        ForeignKey("document_versions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=APPROVER_PENDING)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    version: Mapped[DocumentVersion] = relationship("DocumentVersion", back_populates="approvers", lazy="selectin")


class Attachment(Base):
    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_version_id: Mapped[int] = mapped_column(
        ForeignKey("document_versions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    version: Mapped[DocumentVersion] = relationship("DocumentVersion", back_populates="attachments", lazy="selectin")
