"""
Database Package - PostgreSQL with SQLAlchemy
==============================================

Relational store for the cabinet back office.
"""

from .models import (
    Base,
    Tenant, User, TenantMember, CabinetSettings,
    Client, Matter, Assignment, ClientUser, ClientUserMatter,
    TimesheetEntry, Expense,
    Invoice, CreditNote, Purchase,
    Document,
    Todo, TodoAttachment, Message, MessageRead, AgendaEntry,
    AuditLog, TokenBlacklist, PasswordResetToken,
    GlobalRole, TenantRole, MatterStatus, BillingType, InvoiceStatus,
    TodoStatus, DocumentCategory, PaymentMode,
)
from .session import get_db, get_db_session, init_db, get_engine, reset_engine

__all__ = [
    # Base
    "Base",
    # Organization
    "Tenant", "User", "TenantMember", "CabinetSettings",
    # Clients & matters
    "Client", "Matter", "Assignment", "ClientUser", "ClientUserMatter",
    # Time & expenses
    "TimesheetEntry", "Expense",
    # Billing
    "Invoice", "CreditNote", "Purchase",
    # Documents
    "Document",
    # Collaboration
    "Todo", "TodoAttachment", "Message", "MessageRead", "AgendaEntry",
    # Audit & auth
    "AuditLog", "TokenBlacklist", "PasswordResetToken",
    # Enums
    "GlobalRole", "TenantRole", "MatterStatus", "BillingType", "InvoiceStatus",
    "TodoStatus", "DocumentCategory", "PaymentMode",
    # Session
    "get_db", "get_db_session", "init_db", "get_engine", "reset_engine",
]
