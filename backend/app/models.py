import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import EmailStr, field_validator
from sqlalchemy import DateTime, JSON, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.agent.artifacts import WidgetDSL, WidgetType


USERNAME_PATTERN = re.compile(r"^[a-z0-9_]+$")


def get_datetime_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class UserTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class PortfolioSource(str, Enum):
    ZERODHA = "zerodha"
    CSV = "csv"


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class NotificationType(str, Enum):
    FORK = "fork"
    FOLLOW = "follow"
    SYSTEM = "system"
    REFRESH = "refresh"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


# Shared properties
class UserBase(SQLModel):
    email: EmailStr = Field(unique=True, index=True, max_length=255)
    is_active: bool = True
    full_name: str | None = Field(default=None, max_length=255)


class UserRegister(SQLModel):
    email: EmailStr = Field(max_length=255)
    password: str = Field(min_length=8, max_length=128)
    full_name: str | None = Field(default=None, max_length=255)


class UserLogin(SQLModel):
    email: EmailStr = Field(max_length=255)
    password: str = Field(min_length=1, max_length=128)


# Database model, database table inferred from class name
class User(UserBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    hashed_password: str
    tier: UserTier = Field(default=UserTier.FREE)
    username: str | None = Field(default=None, unique=True, index=True, max_length=30)
    bio: str | None = Field(default=None, max_length=280)
    avatar_url: str | None = Field(default=None, max_length=2048)
    zerodha_user_id: str | None = Field(default=None, max_length=64)
    zerodha_access_token: str | None = Field(default=None, max_length=512)
    zerodha_token_expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )

    @property
    def zerodha_connected(self) -> bool:
        expires_at = as_utc(self.zerodha_token_expires_at)
        return bool(
            self.zerodha_access_token
            and expires_at is not None
            and expires_at > get_datetime_utc()
        )


# Properties to return via API, id is always required
class UserPublic(UserBase):
    id: uuid.UUID
    tier: UserTier
    username: str | None = None
    avatar_url: str | None = None
    zerodha_connected: bool = False
    created_at: datetime | None = None


# Generic message
class Message(SQLModel):
    message: str


class SuccessResponse(SQLModel):
    success: bool = True


# JSON payload containing access token
class Token(SQLModel):
    access_token: str
    token_type: str = "bearer"


class AuthResponse(Token):
    user: UserPublic


# Contents of JWT token
class TokenPayload(SQLModel):
    sub: str
    email: str | None = None
    tier: UserTier = UserTier.FREE
    iat: int
    exp: int


class ZerodhaLoginResponse(SQLModel):
    auth_url: str
    state: str


class ZerodhaCallback(SQLModel):
    request_token: str = Field(min_length=1)
    state: str = Field(min_length=1)


class ZerodhaCallbackResponse(SQLModel):
    success: bool = True
    zerodha_user_id: str
    connected: bool = True


class ZerodhaStatus(SQLModel):
    connected: bool
    zerodha_user_id: str | None = None
    token_expires_at: datetime | None = None


# Portfolio

class PortfolioBase(SQLModel):
    source: PortfolioSource
    last_sync: datetime = Field(sa_type=DateTime(timezone=True))  # type: ignore
    total_value: float = Field(default=0, ge=0)
    total_pnl: float = 0
    currency: str = Field(default="INR", max_length=8)


class Portfolio(PortfolioBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, unique=True, index=True, ondelete="CASCADE"
    )
    holdings: list[dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class PortfolioPublic(PortfolioBase):
    user_id: uuid.UUID
    holdings: list[dict[str, Any]]


class PortfolioSyncResponse(SQLModel):
    success: bool = True
    portfolio: PortfolioPublic
    synced_at: datetime


class CsvRowError(SQLModel):
    row: int
    message: str


class CsvImportResponse(SQLModel):
    success: bool = True
    imported: int
    errors: list[CsvRowError] = []
    portfolio: PortfolioPublic


class CsvTemplate(SQLModel):
    template: str
    headers: list[str]


class HoldingsPage(SQLModel):
    data: list[dict[str, Any]]
    count: int
    limit: int
    offset: int


# Widgets

class WidgetBase(SQLModel):
    title: str = Field(min_length=1, max_length=255)
    type: WidgetType
    visibility: Visibility = Visibility.PRIVATE


class WidgetCreate(WidgetBase):
    config: WidgetDSL


class WidgetUpdate(SQLModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    config: WidgetDSL | None = None
    visibility: Visibility | None = None


class Widget(WidgetBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, index=True, ondelete="CASCADE"
    )
    config: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    fork_count: int = Field(default=0, ge=0)
    forked_from: uuid.UUID | None = Field(default=None, index=True)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class WidgetPublic(WidgetBase):
    id: uuid.UUID
    owner_id: uuid.UUID
    config: dict[str, Any]
    fork_count: int
    forked_from: uuid.UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WidgetsPublic(SQLModel):
    data: list[WidgetPublic]
    count: int


class WidgetWithData(SQLModel):
    widget: WidgetPublic
    data: dict[str, Any] | None = None


class CreatorWidgetPublic(WidgetPublic):
    creator_username: str | None = None
    creator_name: str | None = None


class CreatorWidgetsPublic(SQLModel):
    data: list[CreatorWidgetPublic]
    count: int


class Fork(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("original_widget_id", "forking_user_id"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    original_widget_id: uuid.UUID = Field(
        foreign_key="widget.id", nullable=False, index=True, ondelete="CASCADE"
    )
    forked_widget_id: uuid.UUID = Field(
        foreign_key="widget.id", nullable=False, ondelete="CASCADE"
    )
    forking_user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE"
    )
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class ForkResponse(SQLModel):
    forked_widget: WidgetPublic
    added_to_dashboard: bool


class ForkEntry(SQLModel):
    forked_widget_id: uuid.UUID
    forking_user_id: uuid.UUID
    forking_username: str | None = None
    forked_at: datetime | None = None


class ForksPublic(SQLModel):
    data: list[ForkEntry]
    count: int


# Dashboard

class LayoutPosition(SQLModel):
    x: int = Field(default=0, ge=0)
    y: int = Field(default=0, ge=0)
    w: int = Field(default=4, ge=1)
    h: int = Field(default=3, ge=1)


class WidgetLayout(SQLModel):
    widget_id: uuid.UUID
    position: LayoutPosition = Field(default_factory=LayoutPosition)
    visible: bool = True


class Dashboard(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, unique=True, index=True, ondelete="CASCADE"
    )
    layout: list[dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class DashboardPublic(SQLModel):
    user_id: uuid.UUID
    layout: list[WidgetLayout]
    updated_at: datetime | None = None


class DashboardWithWidgets(SQLModel):
    dashboard: DashboardPublic
    widgets: list[WidgetWithData]


class DashboardUpdate(SQLModel):
    layout: list[WidgetLayout]


class DashboardAddWidget(SQLModel):
    widget_id: uuid.UUID
    position: LayoutPosition | None = None


class DashboardRemoveWidget(SQLModel):
    widget_id: uuid.UUID


class RefreshedWidget(SQLModel):
    widget_id: uuid.UUID
    data: dict[str, Any] | None = None


class DashboardRefresh(SQLModel):
    refreshed_at: datetime
    widgets: list[RefreshedWidget]


# Social

class Notification(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, index=True, ondelete="CASCADE"
    )
    type: NotificationType
    title: str = Field(max_length=255)
    message: str = Field(max_length=1000)
    read: bool = Field(default=False, index=True)
    data: dict[str, Any] | None = Field(default=None, sa_type=JSON)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class NotificationPublic(SQLModel):
    id: int
    type: NotificationType
    title: str
    message: str
    read: bool
    data: dict[str, Any] | None = None
    created_at: datetime | None = None


class NotificationsPublic(SQLModel):
    data: list[NotificationPublic]
    unread_count: int
    count: int


class MarkAllReadResponse(SQLModel):
    success: bool = True
    marked_count: int


class Follow(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("follower_id", "followee_id"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    follower_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, index=True, ondelete="CASCADE"
    )
    followee_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, index=True, ondelete="CASCADE"
    )
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class FollowResponse(SQLModel):
    success: bool = True
    follower_count: int


class ProfileUpdate(SQLModel):
    username: str | None = Field(default=None, min_length=3, max_length=30)
    bio: str | None = Field(default=None, max_length=280)
    avatar_url: str | None = Field(default=None, max_length=2048)
    full_name: str | None = Field(default=None, max_length=255)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str | None) -> str | None:
        if value is not None and not USERNAME_PATTERN.match(value):
            raise ValueError("Username may only contain lowercase letters, digits and underscores")
        return value


class PublicProfile(SQLModel):
    user_id: uuid.UUID
    username: str | None = None
    full_name: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    follower_count: int = 0
    total_forks_received: int = 0
    joined_at: datetime | None = None
    public_widgets: list[WidgetPublic] = []


class ProfileSearchResult(SQLModel):
    widgets: list[WidgetPublic] = []
    profiles: list[PublicProfile] = []
    count: int


# Chat

class ChatMessage(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, index=True, ondelete="CASCADE"
    )
    role: str = Field(max_length=16)  # user, assistant, system
    content: str
    dsl: dict[str, Any] | None = Field(default=None, sa_type=JSON)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class ChatMessagePublic(SQLModel):
    role: str
    content: str
    created_at: datetime | None = None


class ChatHistory(SQLModel):
    data: list[ChatMessagePublic]
    count: int


class DSLAuditLog(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, index=True, ondelete="CASCADE"
    )
    prompt: str
    dsl: dict[str, Any] | None = Field(default=None, sa_type=JSON)
    valid: bool = False
    error: str | None = None
    model: str | None = Field(default=None, max_length=64)
    latency_ms: int | None = None
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


# Subscriptions

class Subscription(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, unique=True, index=True, ondelete="CASCADE"
    )
    tier: UserTier = UserTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    payment_provider: str | None = Field(default=None, max_length=32)
    billing_cycle: BillingCycle | None = None
    amount_cents: int | None = None
    currency: str = Field(default="INR", max_length=8)
    current_period_start: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    current_period_end: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    cancel_at_period_end: bool = False
    checkout_session_id: str | None = Field(default=None, index=True, max_length=64)
    pending_billing_cycle: BillingCycle | None = None
    queries_used: int = Field(default=0, ge=0)
    usage_period_start: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )


class SubscriptionPublic(SQLModel):
    user_id: uuid.UUID
    tier: UserTier
    status: SubscriptionStatus
    payment_provider: str | None = None
    billing_cycle: BillingCycle | None = None
    amount_cents: int | None = None
    currency: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool


class QueryUsage(SQLModel):
    used: int
    limit: int | None
    remaining: int | None
    reset_date: datetime


class CurrentSubscription(SQLModel):
    subscription: SubscriptionPublic
    query_usage: QueryUsage


class UsageResponse(SQLModel):
    usage: QueryUsage
    tier: UserTier


class PlanPrice(SQLModel):
    monthly: int
    annual: int
    currency: str


class PlanFeatures(SQLModel):
    queries: str
    advanced_queries: bool
    widgets: str
    csv_import: bool
    public_profile: bool
    priority_support: bool


class PricingPlan(SQLModel):
    tier: UserTier
    name: str
    price: PlanPrice
    features: PlanFeatures


class UpgradeRequest(SQLModel):
    billing_cycle: BillingCycle


class UpgradeResponse(SQLModel):
    checkout_url: str
    session_id: str


class CancelRequest(SQLModel):
    reason: str | None = Field(default=None, max_length=500)
    feedback: str | None = Field(default=None, max_length=2000)


class CancelResponse(SQLModel):
    success: bool = True
    cancel_at_period_end: bool
    period_end: datetime | None = None


class WebhookAck(SQLModel):
    received: bool = True
