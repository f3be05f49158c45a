"""SQLAlchemy ORM models for the invoice pipeline.

Every table is tenant-scoped. Invoices and their lines belong to the
uploading tenant; templates belong to a tenant + supplier pair; confirmed
product matches belong to a tenant and, when known, a supplier.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from invoicing.shared.db import Base, utcnow


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"
    ERROR = "error"


class ExtractionMethod(str, Enum):
    """How the line items of a successful run were obtained."""

    TEMPLATE = "template"
    AI = "ai"
    MANUAL = "manual"


class Invoice(Base):
    """One uploaded supplier invoice."""

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    uploaded_by: Mapped[int | None] = mapped_column(Integer)
    upload_source: Mapped[str] = mapped_column(String(20), default="web")

    # Raw file
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(100), nullable=False)
    storage_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    ocr_text: Mapped[str | None] = mapped_column(Text)

    # Extracted header
    supplier_name: Mapped[str | None] = mapped_column(String(255))
    supplier_tax_id: Mapped[str | None] = mapped_column(String(32), index=True)
    invoice_number: Mapped[str | None] = mapped_column(String(100))
    invoice_date: Mapped[date | None] = mapped_column(Date)
    total_net: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    total_tax: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    total_gross: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))

    # Processing state
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.PENDING.value
    )
    status_changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    extraction_method: Mapped[str | None] = mapped_column(String(20))
    template_id: Mapped[int | None] = mapped_column(ForeignKey("invoice_templates.id"))
    match_score: Mapped[float | None] = mapped_column(Float)
    ai_attempts: Mapped[int] = mapped_column(Integer, default=0)
    reconciliation: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Failure state
    error_kind: Mapped[str | None] = mapped_column(String(20))
    error_message: Mapped[str | None] = mapped_column(Text)
    last_failed_at: Mapped[datetime | None] = mapped_column(DateTime)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    # Review
    approved_at: Mapped[datetime | None] = mapped_column(DateTime)
    approved_by: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    lines: Mapped[list["InvoiceLine"]] = relationship(
        back_populates="invoice",
        order_by="InvoiceLine.line_number",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("ix_invoices_status_changed", "status", "status_changed_at"),)


class InvoiceLine(Base):
    """One line item of an invoice, ordered by line_number."""

    __tablename__ = "invoice_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    unit: Mapped[str | None] = mapped_column(String(20))
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    line_total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    discount_pct: Mapped[Decimal | None] = mapped_column(Numeric(7, 2))
    product_id: Mapped[int | None] = mapped_column(Integer)
    match_confidence: Mapped[int | None] = mapped_column(Integer)
    corrected: Mapped[bool] = mapped_column(Boolean, default=False)

    invoice: Mapped[Invoice] = relationship(back_populates="lines")


class Template(Base):
    """A learned extraction recipe for one tenant + supplier layout."""

    __tablename__ = "invoice_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    supplier_tax_id: Mapped[str | None] = mapped_column(String(32))
    supplier_name: Mapped[str] = mapped_column(String(255), nullable=False)
    supplier_key: Mapped[str] = mapped_column(String(255), nullable=False)
    family: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    zone_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)
    times_used: Mapped[int] = mapped_column(Integer, default=0)
    times_successful: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_from_ai: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_templates_tenant_tax_id", "tenant_id", "supplier_tax_id"),
        Index("ix_templates_tenant_key", "tenant_id", "supplier_key"),
    )


class ProcessingMetric(Base):
    """Immutable audit record of one processing attempt."""

    __tablename__ = "processing_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    upload_source: Mapped[str] = mapped_column(String(20))
    extraction_method: Mapped[str | None] = mapped_column(String(20))
    template_id: Mapped[int | None] = mapped_column(Integer)
    match_score: Mapped[float | None] = mapped_column(Float)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    ai_attempts: Mapped[int] = mapped_column(Integer, default=0)
    lines_extracted: Mapped[int] = mapped_column(Integer, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    ai_model: Mapped[str | None] = mapped_column(String(100))
    error_kind: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class IntegrationLog(Base):
    """Groups the catalog changes caused by approving one invoice."""

    __tablename__ = "integration_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="processing")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    items: Mapped[list["IntegrationLogItem"]] = relationship(
        back_populates="log", cascade="all, delete-orphan", order_by="IntegrationLogItem.id"
    )


class IntegrationLogItem(Base):
    """One field-level catalog change."""

    __tablename__ = "integration_log_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    log_id: Mapped[int] = mapped_column(
        ForeignKey("integration_logs.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_name: Mapped[str] = mapped_column(String(255), nullable=False)
    field_changed: Mapped[str] = mapped_column(String(50), nullable=False)
    old_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    new_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    log: Mapped[IntegrationLog] = relationship(back_populates="items")


class ProductMatchHistory(Base):
    """A reviewer-confirmed link from an invoice line description to a product."""

    __tablename__ = "product_match_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    description_key: Mapped[str] = mapped_column(String(500), nullable=False)
    supplier_key: Mapped[str | None] = mapped_column(String(255))
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    initial_confidence: Mapped[int | None] = mapped_column(Integer)
    confirmed_by: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_product_match_tenant_key", "tenant_id", "description_key"),
    )
