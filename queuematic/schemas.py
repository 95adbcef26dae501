from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from queuematic.models import PrincipalRole, SessionEndReason, TicketStatus


class TicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    branch_id: int
    business_date: date
    number: int
    status: TicketStatus
    created_at: datetime
    called_at: datetime | None = None
    serving_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    counter_id: int | None = None
    counter_number: int | None = None
    counter_session_id: int | None = None
    service_duration_seconds: int | None = None


class CounterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    branch_id: int
    number: int
    active: bool


class CounterSessionOut(BaseModel):
    id: int
    counter_id: int
    counter_number: int
    branch_id: int
    branch_name: str
    principal_id: int
    started_at: datetime
    ended_at: datetime | None = None
    end_reason: SessionEndReason | None = None
    current_ticket: TicketOut | None = None


class LastUsedCounterOut(BaseModel):
    counter_id: int
    counter_number: int
    branch_id: int
    branch_name: str
    last_used_at: datetime


class CounterOccupantOut(BaseModel):
    session_id: int
    principal_id: int
    username: str
    full_name: str | None = None
    started_at: datetime
    current_ticket: TicketOut | None = None


class CounterBoardRowOut(BaseModel):
    id: int
    number: int
    active: bool
    occupant: CounterOccupantOut | None = None


class CallNextOut(BaseModel):
    ticket: TicketOut | None = None
    none_waiting: bool = False


class ServingTicketOut(BaseModel):
    number: int
    status: TicketStatus
    counter_number: int | None = None
    called_at: datetime | None = None


class CompletedTicketOut(BaseModel):
    number: int
    counter_number: int | None = None
    completed_at: datetime | None = None
    service_duration_seconds: int | None = None


class BranchStatusOut(BaseModel):
    branch_id: int
    branch_name: str
    business_date: date
    waiting_count: int
    called_count: int
    serving_count: int
    completed_today: int
    last_completed_number: int | None = None
    current_serving: list[ServingTicketOut] = Field(default_factory=list)
    last_called: ServingTicketOut | None = None
    recent_completed: list[CompletedTicketOut] = Field(default_factory=list)
    avg_service_seconds: int
    estimated_wait_seconds: int
    active_counters: int
    can_take_number: bool


class BranchDisplayOut(BaseModel):
    branch_id: int
    branch_name: str
    currently_serving: list[ServingTicketOut] = Field(default_factory=list)
    waiting_numbers: list[int] = Field(default_factory=list)
    last_called: ServingTicketOut | None = None
    recent_completed: list[CompletedTicketOut] = Field(default_factory=list)
    active_counters: int
    completed_today: int
    generated_at: datetime


class ServiceRecordOut(BaseModel):
    ticket_id: int
    number: int
    counter_number: int | None = None
    called_at: datetime | None = None
    completed_at: datetime | None = None
    service_duration_seconds: int | None = None


class WorkHistoryOut(BaseModel):
    principal_id: int
    business_date: date
    total_completed: int
    total_service_seconds: int = 0
    avg_service_seconds: int | None = None
    first_completed_at: datetime | None = None
    last_completed_at: datetime | None = None
    records: list[ServiceRecordOut] = Field(default_factory=list)


class BranchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    address: str | None = None
    phone: str | None = None
    active: bool


class PrincipalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    full_name: str | None = None
    role: PrincipalRole
    branch_id: int | None = None
    active: bool
    last_login_at: datetime | None = None


class IssueTicketIn(BaseModel):
    branch_id: int = Field(gt=0)


class CallNextIn(BaseModel):
    counter_id: int = Field(gt=0)


class StartSessionIn(BaseModel):
    counter_id: int = Field(gt=0)


class EndSessionIn(BaseModel):
    force: bool = False


class LoginIn(BaseModel):
    username: str = Field(min_length=1, max_length=120)
    password: str = Field(min_length=1, max_length=512)


class LoginOut(BaseModel):
    token: str
    user: PrincipalOut
    session: CounterSessionOut | None = None


class BranchIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    address: str | None = None
    phone: str | None = Field(default=None, max_length=32)


class BranchUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    address: str | None = None
    phone: str | None = Field(default=None, max_length=32)
    active: bool | None = None


class CounterIn(BaseModel):
    branch_id: int = Field(gt=0)
    number: int = Field(gt=0)


class CounterUpdateIn(BaseModel):
    number: int | None = Field(default=None, gt=0)
    active: bool | None = None


class PrincipalIn(BaseModel):
    username: str = Field(min_length=3, max_length=120)
    password: str = Field(min_length=8, max_length=512)
    full_name: str | None = None
    role: PrincipalRole = PrincipalRole.CLERK
    branch_id: int | None = None


class PrincipalUpdateIn(BaseModel):
    full_name: str | None = None
    branch_id: int | None = None
    active: bool | None = None
    password: str | None = Field(default=None, min_length=8, max_length=512)


class StaleCleanupOut(BaseModel):
    cancelled: int
    before: date


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_principal_id: int | None = None
    action: str
    counter_session_id: int | None = None
    ticket_id: int | None = None
    ip: str | None = None
    metadata: dict = Field(default_factory=dict, validation_alias='meta')
    created_at: datetime

    @field_validator('ip', mode='before')
    @classmethod
    def _stringify_ip(cls, value):
        # INET columns come back as ipaddress objects on Postgres.
        return str(value) if value is not None else None
