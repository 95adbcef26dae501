from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import CITEXT, INET
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# SQLite only autoincrements INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')
Username = Text().with_variant(CITEXT(), 'postgresql')
IPAddress = String(64).with_variant(INET(), 'postgresql')


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamps on every backend; SQLite stores naive UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == 'sqlite':
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    ADMIN = 'ADMIN'
    CLERK = 'CLERK'


class TicketStatus(str, Enum):
    WAITING = 'WAITING'
    CALLED = 'CALLED'
    SERVING = 'SERVING'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


ACTIVE_TICKET_STATUSES = (TicketStatus.CALLED, TicketStatus.SERVING)
TERMINAL_TICKET_STATUSES = (TicketStatus.COMPLETED, TicketStatus.CANCELLED)


class SessionEndReason(str, Enum):
    RELEASED = 'RELEASED'
    LOGOUT = 'LOGOUT'
    FORCED = 'FORCED'


class Branch(Base):
    __tablename__ = 'branches'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    address: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(String(32))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    username: Mapped[str] = mapped_column(Username, nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    full_name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    branch_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('branches.id'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())


class Counter(Base):
    __tablename__ = 'counters'
    __table_args__ = (
        UniqueConstraint('branch_id', 'number', name='counters_branch_number_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())


class CounterSession(Base):
    __tablename__ = 'counter_sessions'
    __table_args__ = (
        # At most one open session per counter and per principal.
        Index(
            'uq_counter_sessions_open_counter',
            'counter_id',
            unique=True,
            postgresql_where=text('ended_at IS NULL'),
            sqlite_where=text('ended_at IS NULL'),
        ),
        Index(
            'uq_counter_sessions_open_principal',
            'principal_id',
            unique=True,
            postgresql_where=text('ended_at IS NULL'),
            sqlite_where=text('ended_at IS NULL'),
        ),
        Index('ix_counter_sessions_principal_ended', 'principal_id', 'ended_at'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    counter_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('counters.id'), nullable=False)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    ended_by_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    end_reason: Mapped[SessionEndReason | None] = mapped_column(
        SQLEnum(SessionEndReason, name='counter_session_end_reason')
    )


class BranchTicketSequence(Base):
    __tablename__ = 'branch_ticket_sequences'

    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('branches.id', ondelete='CASCADE'), primary_key=True)
    business_date: Mapped[date] = mapped_column(Date, primary_key=True)
    last_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())


class Ticket(Base):
    __tablename__ = 'tickets'
    __table_args__ = (
        UniqueConstraint('branch_id', 'business_date', 'number', name='tickets_branch_day_number_key'),
        Index('ix_tickets_branch_status_created', 'branch_id', 'status', 'created_at'),
        # A counter session holds at most one called/serving ticket.
        Index(
            'uq_tickets_active_per_session',
            'counter_session_id',
            unique=True,
            postgresql_where=text("status IN ('CALLED', 'SERVING')"),
            sqlite_where=text("status IN ('CALLED', 'SERVING')"),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('branches.id'), nullable=False)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TicketStatus] = mapped_column(
        SQLEnum(TicketStatus, name='ticket_status'),
        nullable=False,
        default=TicketStatus.WAITING,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    called_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    serving_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    counter_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('counters.id'))
    counter_session_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('counter_sessions.id'))
    service_duration_seconds: Mapped[int | None] = mapped_column(Integer)


class AuthEvent(Base):
    __tablename__ = 'auth_events'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    attempted_username: Mapped[str] = mapped_column(Username, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    ip: Mapped[str | None] = mapped_column(IPAddress)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    counter_session_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('counter_sessions.id'))
    ticket_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('tickets.id'))
    ip: Mapped[str | None] = mapped_column(IPAddress)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('token_digest', name='uq_web_sessions_token_digest'),
        Index('ix_web_sessions_principal_revoked', 'principal_id', 'revoked_at'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    token_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(IPAddress)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
