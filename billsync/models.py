# billsync/models.py
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .db import Base
from .time_utils import utcnow


class Store(Base):
    __tablename__ = "stores"
    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)     # owning admin
    name = Column(String, nullable=False)
    store_code = Column(String, nullable=False)
    address = Column(Text, nullable=True)
    phone = Column(String, nullable=True)
    gstin = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    is_synced = Column(Boolean, nullable=False, default=True, index=True)
    deleted = Column(Boolean, nullable=False, default=False, index=True)


class Employee(Base):
    __tablename__ = "employees"
    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)     # admin who owns the store
    store_id = Column(String(36), nullable=False, index=True)
    employee_code = Column(String(4), nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, default="")
    phone = Column(String, nullable=True)
    role = Column(String, nullable=False, default="employee")     # "admin" | "employee"
    password_hash = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    is_synced = Column(Boolean, nullable=False, default=True, index=True)
    deleted = Column(Boolean, nullable=False, default=False, index=True)
    __table_args__ = (
        UniqueConstraint("store_id", "employee_code", name="uq_employees_store_code"),
    )


class Product(Base):
    __tablename__ = "products"
    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    store_id = Column(String(36), nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    sku = Column(String, nullable=True)
    category = Column(String, nullable=True)
    price = Column(Float, nullable=False, default=0.0)
    cost_price = Column(Float, nullable=True)
    stock_quantity = Column(Float, nullable=False, default=0.0)
    unit = Column(String, nullable=False, default="piece")
    hsn_code = Column(String, nullable=True)
    gst_rate = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    is_synced = Column(Boolean, nullable=False, default=False, index=True)
    deleted = Column(Boolean, nullable=False, default=False, index=True)


class Customer(Base):
    __tablename__ = "customers"
    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    store_id = Column(String(36), nullable=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    gstin = Column(String, nullable=True)
    billing_address = Column(Text, nullable=True)
    shipping_address = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    is_synced = Column(Boolean, nullable=False, default=False, index=True)
    deleted = Column(Boolean, nullable=False, default=False, index=True)


class Invoice(Base):
    __tablename__ = "invoices"
    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    store_id = Column(String(36), nullable=True, index=True)
    customer_id = Column(String(36), nullable=True, index=True)   # lookup only, no FK
    employee_code = Column(String(4), nullable=True)
    invoice_number = Column(String, nullable=False, index=True)
    invoice_date = Column(String(10), nullable=False)              # YYYY-MM-DD
    due_date = Column(String(10), nullable=True)
    status = Column(String, nullable=False, default="draft")       # draft|sent|paid|cancelled
    is_gst_invoice = Column(Boolean, nullable=False, default=True)
    is_same_state = Column(Boolean, nullable=False, default=True)  # CGST+SGST vs IGST
    subtotal = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    cgst_amount = Column(Float, nullable=False, default=0.0)
    sgst_amount = Column(Float, nullable=False, default=0.0)
    igst_amount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)
    notes = Column(Text, nullable=True)
    terms = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    is_synced = Column(Boolean, nullable=False, default=False, index=True)
    deleted = Column(Boolean, nullable=False, default=False, index=True)
    __table_args__ = (
        UniqueConstraint("store_id", "invoice_number", name="uq_invoices_store_number"),
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"
    id = Column(String(36), primary_key=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=True, index=True)     # lookup only
    description = Column(String, nullable=False)
    quantity = Column(Float, nullable=False, default=1.0)
    unit_price = Column(Float, nullable=False, default=0.0)
    discount_percent = Column(Float, nullable=False, default=0.0)
    gst_rate = Column(Float, nullable=False, default=0.0)
    hsn_code = Column(String, nullable=True)
    line_total = Column(Float, nullable=False, default=0.0)
    gst_amount = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class SyncQueueEntry(Base):
    __tablename__ = "sync_queue"
    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String, nullable=False)    # product|customer|invoice
    entity_id = Column(String(36), nullable=False)
    action = Column(String, nullable=False)         # create|update|delete
    data = Column(Text, nullable=False)             # JSON payload
    created_at = Column(DateTime, nullable=False, default=utcnow)
    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")  # pending|blocked
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)


Index("ix_sync_queue_entity", SyncQueueEntry.entity_type, SyncQueueEntry.entity_id, SyncQueueEntry.id)
Index("ix_sync_queue_status_created", SyncQueueEntry.status, SyncQueueEntry.created_at)


class AuthSession(Base):
    __tablename__ = "auth_session"
    id = Column(String, primary_key=True, default="current_session")
    user_id = Column(String(36), nullable=False)
    email = Column(String, nullable=False)
    role = Column(String, nullable=False)
    store_id = Column(String(36), nullable=True)
    employee_code = Column(String(4), nullable=True)
    issued_at = Column(BigInteger, nullable=False)   # epoch ms
    expires_at = Column(BigInteger, nullable=False)  # epoch ms
    signature = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class InvoiceSequence(Base):
    __tablename__ = "invoice_sequences"
    id = Column(String, primary_key=True)            # "<store_id>-<YYYYMMDD>"
    store_id = Column(String(36), nullable=False)
    date = Column(String(8), nullable=False)
    sequence = Column(Integer, nullable=False, default=0)
    __table_args__ = (
        UniqueConstraint("store_id", "date", name="uq_invoice_sequences_store_date"),
    )


class OfflineCredential(Base):
    __tablename__ = "offline_credentials"
    email = Column(String, primary_key=True)
    user_id = Column(String(36), nullable=True)
    password_hash = Column(String, nullable=False)
    role = Column(String, nullable=False, default="admin")
    store_id = Column(String(36), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
