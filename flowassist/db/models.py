"""
SQLAlchemy Models for Database
==============================

Complete schema for the cabinet back office including:
- Multi-tenant organization (Tenants, Users, Memberships)
- Clients, matters and assignments
- Timesheet entries and expenses
- Invoices, credit notes and supplier purchases
- Client documents
- Messaging, to-dos and agenda
- Audit log and auth bookkeeping

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
from datetime import datetime
from sqlalchemy import (
    Column, String, Text, Integer, Boolean, Date, DateTime, Enum, ForeignKey,
    BigInteger, UniqueConstraint, Index, JSON, CheckConstraint
)
from sqlalchemy.orm import relationship, declarative_base
import uuid

# Use JSON for cross-database compatibility (works with both PostgreSQL and SQLite)
JSONB = JSON

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class GlobalRole(str, enum.Enum):
    """Platform-level roles"""
    SYSADMIN = "sysadmin"
    USER = "user"


class TenantRole(str, enum.Enum):
    """Roles inside a cabinet"""
    OWNER = "owner"
    ASSISTANT = "assistant"
    COLLABORATOR = "collaborator"
    CLIENT = "client"


class MatterStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class BillingType(str, enum.Enum):
    TIME_BASED = "time_based"
    FLAT_FEE = "flat_fee"


class InvoiceStatus(str, enum.Enum):
    """Invoice lifecycle status"""
    DRAFT = "draft"
    ISSUED = "issued"
    CANCELLED = "cancelled"


class TodoStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class DocumentCategory(str, enum.Enum):
    """Client document folders"""
    FACTURES = "factures"
    COMPTABLE = "comptable"
    FISCAL = "fiscal"
    JURIDIQUE = "juridique"
    SOCIAL = "social"
    DIVERS = "divers"


class PaymentMode(int, enum.Enum):
    """Supplier payment modes (codes used on the purchase ledger)"""
    CASH = 1
    CHECK = 2
    DIRECT_DEBIT = 3
    TRANSFER = 4
    BILL = 5
    COMPENSATION = 6
    OTHER = 7


# =============================================================================
# ORGANIZATION MODELS
# =============================================================================

class Tenant(Base):
    """Cabinet (isolated customer organization)"""
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    logo_url = Column(String(500), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    members = relationship("TenantMember", back_populates="tenant", cascade="all, delete-orphan")
    settings = relationship("CabinetSettings", back_populates="tenant", uselist=False, cascade="all, delete-orphan")


class User(Base):
    """User profile (login identity shared across tenants)"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)
    global_role = Column(Enum(GlobalRole), default=GlobalRole.USER, nullable=False)
    rate_cents = Column(Integer, nullable=True)  # hourly rate, HT
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_login = Column(DateTime, nullable=True)

    # Relationships
    memberships = relationship("TenantMember", back_populates="user", cascade="all, delete-orphan")


class TenantMember(Base):
    """User membership in a tenant with a role"""
    __tablename__ = "tenant_members"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(Enum(TenantRole), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_member"),
    )

    tenant = relationship("Tenant", back_populates="members")
    user = relationship("User", back_populates="memberships")


class CabinetSettings(Base):
    """Per-tenant cabinet identity, default rate and numbering sequences"""
    __tablename__ = "cabinet_settings"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True)
    name = Column(String(255), nullable=False, default="Cabinet")
    address = Column(Text, nullable=True)
    iban = Column(String(64), nullable=True)
    mentions = Column(Text, nullable=True)  # legal mentions printed on invoices
    rate_cabinet_cents = Column(Integer, nullable=False, default=0)
    vat_default = Column(Integer, nullable=False, default=20)
    invoice_seq_year = Column(Integer, nullable=False, default=lambda: datetime.utcnow().year)
    invoice_seq_next = Column(Integer, nullable=False, default=1)
    credit_seq_year = Column(Integer, nullable=False, default=lambda: datetime.utcnow().year)
    credit_seq_next = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="settings")


# =============================================================================
# CLIENTS & MATTERS
# =============================================================================

class Client(Base):
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    address = Column(Text, nullable=True)
    billing_email = Column(String(255), nullable=True)
    vat_number = Column(String(100), nullable=True)
    contact_name = Column(String(255), nullable=True)
    contact_phone = Column(String(50), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_client_tenant_code"),
    )

    matters = relationship("Matter", back_populates="client")


class Matter(Base):
    """Matter / dossier: a client engagement"""
    __tablename__ = "matters"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    code = Column(String(50), nullable=False)
    label = Column(String(255), nullable=False)
    status = Column(Enum(MatterStatus), default=MatterStatus.OPEN, nullable=False)
    rate_cents = Column(Integer, nullable=True)
    vat_rate = Column(Integer, nullable=False, default=20)
    billing_type = Column(Enum(BillingType), default=BillingType.TIME_BASED, nullable=False)
    flat_fee_cents = Column(Integer, nullable=True)
    max_amount_ht_cents = Column(Integer, nullable=True)  # budget cap for time-based matters
    intervention_nature = Column(String(255), nullable=True)
    client_sector = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_matter_tenant_code"),
        CheckConstraint("vat_rate IN (0, 20)", name="ck_matter_vat_rate"),
    )

    client = relationship("Client", back_populates="matters")
    assignments = relationship("Assignment", back_populates="matter", cascade="all, delete-orphan")


class Assignment(Base):
    """Collaborator staffed on a matter for a date range"""
    __tablename__ = "assignments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    matter_id = Column(String(36), ForeignKey("matters.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    matter = relationship("Matter", back_populates="assignments")


class ClientUser(Base):
    """Portal login attached to a client"""
    __tablename__ = "client_users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("client_id", "user_id", name="uq_client_user"),
    )


class ClientUserMatter(Base):
    """Restricts a portal user to specific matters"""
    __tablename__ = "client_user_matters"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    matter_id = Column(String(36), ForeignKey("matters.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "matter_id", name="uq_client_user_matter"),
    )


# =============================================================================
# TIME & EXPENSES
# =============================================================================

class TimesheetEntry(Base):
    __tablename__ = "timesheet_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    matter_id = Column(String(36), ForeignKey("matters.id", ondelete="RESTRICT"), nullable=False)
    date = Column(Date, nullable=False)
    minutes_rounded = Column(Integer, nullable=False)
    description = Column(Text, nullable=False, default="")
    billable = Column(Boolean, default=True, nullable=False)
    locked = Column(Boolean, default=False, nullable=False)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("minutes_rounded > 0", name="ck_entry_minutes_positive"),
        Index("ix_timesheet_tenant_matter_date", "tenant_id", "matter_id", "date"),
    )


class Expense(Base):
    """Out-of-pocket cost re-billed to the client"""
    __tablename__ = "expenses"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    matter_id = Column(String(36), ForeignKey("matters.id", ondelete="RESTRICT"), nullable=False)
    expense_date = Column(Date, nullable=False)
    nature = Column(String(255), nullable=False)
    amount_ttc_cents = Column(Integer, nullable=False)
    billable = Column(Boolean, default=True, nullable=False)
    locked = Column(Boolean, default=False, nullable=False)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# BILLING
# =============================================================================

class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    matter_id = Column(String(36), ForeignKey("matters.id", ondelete="RESTRICT"), nullable=False)
    number = Column(String(20), nullable=True)  # assigned on issue
    status = Column(Enum(InvoiceStatus), default=InvoiceStatus.DRAFT, nullable=False)
    period_from = Column(Date, nullable=False)
    period_to = Column(Date, nullable=False)
    issue_date = Column(Date, nullable=True)
    lines = Column(JSONB, default=list)
    total_ht_cents = Column(Integer, nullable=False, default=0)
    total_vat_cents = Column(Integer, nullable=False, default=0)
    total_ttc_cents = Column(Integer, nullable=False, default=0)
    paid = Column(Boolean, default=False, nullable=False)
    payment_date = Column(Date, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_invoice_tenant_number"),
    )

    matter = relationship("Matter")
    credit_notes = relationship("CreditNote", back_populates="invoice")


class CreditNote(Base):
    """Avoir: total or partial reversal of an issued invoice"""
    __tablename__ = "credit_notes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=False)
    number = Column(String(20), nullable=False)
    issue_date = Column(Date, nullable=False)
    reason = Column(Text, nullable=True)
    total_ht_cents = Column(Integer, nullable=False)
    total_vat_cents = Column(Integer, nullable=False)
    total_ttc_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_credit_note_tenant_number"),
    )

    invoice = relationship("Invoice", back_populates="credit_notes")


class Purchase(Base):
    """Supplier invoice recorded on the purchase ledger"""
    __tablename__ = "purchases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    supplier = Column(String(255), nullable=False)
    invoice_number = Column(String(100), nullable=False)
    designation = Column(Text, nullable=False)
    amount_ht_cents = Column(Integer, nullable=False)
    amount_tva_cents = Column(Integer, nullable=False)
    amount_ttc_cents = Column(Integer, nullable=False)
    num_if = Column(String(50), nullable=True)  # supplier tax id
    ice = Column(String(50), nullable=True)  # supplier company id
    rate = Column(Integer, nullable=True)
    prorata = Column(Integer, nullable=True)
    payment_mode = Column(Integer, nullable=False)
    payment_date = Column(Date, nullable=True)
    invoice_date = Column(Date, nullable=False)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("payment_mode BETWEEN 1 AND 7", name="ck_purchase_payment_mode"),
    )


# =============================================================================
# DOCUMENTS
# =============================================================================

class Document(Base):
    """File shared with a client, optionally tied to one of its matters"""
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    matter_id = Column(String(36), ForeignKey("matters.id", ondelete="SET NULL"), nullable=True)
    category = Column(Enum(DocumentCategory), default=DocumentCategory.DIVERS, nullable=False)
    file_name = Column(String(500), nullable=False)
    storage_key = Column(String(1000), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(100), nullable=False)
    uploaded_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_documents_tenant_client", "tenant_id", "client_id"),
    )


# =============================================================================
# COLLABORATION
# =============================================================================

class Todo(Base):
    __tablename__ = "todos"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    assigned_to = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    title = Column(String(500), nullable=False)
    deadline = Column(Date, nullable=False)
    status = Column(Enum(TodoStatus), default=TodoStatus.PENDING, nullable=False)
    blocked_reason = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TodoAttachment(Base):
    """File attached to a to-do; the total per to-do is capped"""
    __tablename__ = "todo_attachments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    todo_id = Column(String(36), ForeignKey("todos.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name = Column(String(500), nullable=False)
    storage_key = Column(String(1000), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(100), nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Message(Base):
    """Internal message; a null recipient means broadcast to the cabinet"""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    recipient_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    content = Column(Text, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    reply_to = Column(String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class MessageRead(Base):
    """Per-user read receipt for broadcast messages"""
    __tablename__ = "message_reads"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    message_id = Column(String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    read_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_read"),
    )


class AgendaEntry(Base):
    __tablename__ = "agenda_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    entry_date = Column(Date, nullable=False)
    note = Column(Text, nullable=False)
    reminder_sent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# AUDIT & AUTH BOOKKEEPING
# =============================================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(36), nullable=True)
    details = Column(JSONB, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_audit_tenant_entity", "tenant_id", "entity_type", "entity_id"),
    )


class TokenBlacklist(Base):
    """Revoked JWTs (durable copy of the Redis blacklist)"""
    __tablename__ = "token_blacklist"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    jti = Column(String(64), nullable=False, unique=True)
    token_type = Column(String(20), nullable=False, default="access")
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
