import uuid
from typing import Any

from sqlalchemy import String, cast
from sqlmodel import Session, col, func, or_, select

from app.core.security import get_password_hash, verify_password
from app.models import (
    ChatMessage,
    Dashboard,
    DSLAuditLog,
    Follow,
    Fork,
    LayoutPosition,
    Notification,
    NotificationType,
    Portfolio,
    PortfolioSource,
    Subscription,
    User,
    UserRegister,
    Visibility,
    Widget,
    WidgetCreate,
    WidgetLayout,
    WidgetUpdate,
    get_datetime_utc,
)
from app.portfolio.holdings import NormalizedPortfolio, dump_holdings


def create_user(*, session: Session, user_create: UserRegister) -> User:
    db_obj = User.model_validate(
        user_create, update={"hashed_password": get_password_hash(user_create.password)}
    )
    session.add(db_obj)
    session.commit()
    session.refresh(db_obj)
    return db_obj


def get_user_by_email(*, session: Session, email: str) -> User | None:
    statement = select(User).where(User.email == email)
    return session.exec(statement).first()


def get_user_by_username(*, session: Session, username: str) -> User | None:
    statement = select(User).where(User.username == username)
    return session.exec(statement).first()


# Dummy hash to use for timing attack prevention when user is not found
# This is an Argon2 hash of a random password, used to ensure constant-time comparison
DUMMY_HASH = "$argon2id$v=19$m=65536,t=3,p=4$MjQyZWE1MzBjYjJlZTI0Yw$YTU4NGM5ZTZmYjE2NzZlZjY0ZWY3ZGRkY2U2OWFjNjk"


def authenticate(*, session: Session, email: str, password: str) -> User | None:
    db_user = get_user_by_email(session=session, email=email)
    if not db_user:
        verify_password(password, DUMMY_HASH)
        return None
    verified, updated_password_hash = verify_password(password, db_user.hashed_password)
    if not verified:
        return None
    if updated_password_hash:
        db_user.hashed_password = updated_password_hash
        session.add(db_user)
        session.commit()
        session.refresh(db_user)
    return db_user


# Portfolio

def get_portfolio(*, session: Session, user_id: uuid.UUID) -> Portfolio | None:
    return session.exec(select(Portfolio).where(Portfolio.user_id == user_id)).first()


def save_portfolio(
    *, session: Session, user_id: uuid.UUID, normalized: NormalizedPortfolio
) -> Portfolio:
    db_portfolio = get_portfolio(session=session, user_id=user_id)
    if db_portfolio is None:
        db_portfolio = Portfolio(user_id=user_id, source=PortfolioSource(normalized.source), last_sync=normalized.last_sync)
    db_portfolio.source = PortfolioSource(normalized.source)
    db_portfolio.last_sync = normalized.last_sync
    db_portfolio.total_value = normalized.total_value
    db_portfolio.total_pnl = normalized.total_pnl
    db_portfolio.currency = normalized.currency
    db_portfolio.holdings = dump_holdings(normalized.holdings)
    session.add(db_portfolio)
    session.commit()
    session.refresh(db_portfolio)
    return db_portfolio


# Widgets

def create_widget(
    *,
    session: Session,
    widget_in: WidgetCreate,
    owner_id: uuid.UUID,
    forked_from: uuid.UUID | None = None,
) -> Widget:
    db_widget = Widget.model_validate(
        widget_in,
        update={
            "owner_id": owner_id,
            "config": widget_in.config.to_config(),
            "forked_from": forked_from,
        },
    )
    session.add(db_widget)
    session.commit()
    session.refresh(db_widget)
    return db_widget


def update_widget(*, session: Session, db_widget: Widget, widget_in: WidgetUpdate) -> Widget:
    update_data: dict[str, Any] = {}
    if widget_in.title is not None:
        update_data["title"] = widget_in.title
    if widget_in.visibility is not None:
        update_data["visibility"] = widget_in.visibility
    if widget_in.config is not None:
        update_data["config"] = widget_in.config.to_config()
        update_data["type"] = widget_in.config.type
    update_data["updated_at"] = get_datetime_utc()
    db_widget.sqlmodel_update(update_data)
    session.add(db_widget)
    session.commit()
    session.refresh(db_widget)
    return db_widget


def list_widgets(
    *,
    session: Session,
    owner_id: uuid.UUID,
    visibility: Visibility | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Widget], int]:
    conditions = [Widget.owner_id == owner_id]
    if visibility is not None:
        conditions.append(Widget.visibility == visibility)

    count = session.exec(select(func.count()).select_from(Widget).where(*conditions)).one()
    statement = (
        select(Widget)
        .where(*conditions)
        .order_by(col(Widget.created_at).desc())
        .offset(offset)
        .limit(limit)
    )
    return list(session.exec(statement).all()), count


def delete_widget(*, session: Session, db_widget: Widget) -> None:
    widget_id = db_widget.id
    for fork in session.exec(
        select(Fork).where(
            or_(Fork.original_widget_id == widget_id, Fork.forked_widget_id == widget_id)
        )
    ).all():
        session.delete(fork)
    for forked in session.exec(select(Widget).where(Widget.forked_from == widget_id)).all():
        forked.forked_from = None
        session.add(forked)
    referencing = select(Dashboard).where(cast(Dashboard.layout, String).contains(str(widget_id)))
    for dashboard in session.exec(referencing).all():
        layout = [item for item in dashboard.layout if item.get("widget_id") != str(widget_id)]
        if len(layout) != len(dashboard.layout):
            dashboard.layout = layout
            dashboard.updated_at = get_datetime_utc()
            session.add(dashboard)
    session.delete(db_widget)
    session.commit()


def get_fork(*, session: Session, original_id: uuid.UUID, user_id: uuid.UUID) -> Fork | None:
    statement = select(Fork).where(
        Fork.original_widget_id == original_id, Fork.forking_user_id == user_id
    )
    return session.exec(statement).first()


def fork_widget(*, session: Session, original: Widget, user_id: uuid.UUID) -> Widget:
    """Copy a public widget for `user_id`; the copy starts private and re-binds to the forker's data."""
    forked = Widget(
        owner_id=user_id,
        title=original.title,
        type=original.type,
        visibility=Visibility.PRIVATE,
        config=dict(original.config),
        forked_from=original.id,
    )
    session.add(forked)
    session.flush()
    session.add(Fork(original_widget_id=original.id, forked_widget_id=forked.id, forking_user_id=user_id))
    original.fork_count = (original.fork_count or 0) + 1
    session.add(original)
    session.commit()
    session.refresh(forked)
    return forked


def total_forks_received(*, session: Session, owner_id: uuid.UUID) -> int:
    statement = select(func.coalesce(func.sum(Widget.fork_count), 0)).where(Widget.owner_id == owner_id)
    return int(session.exec(statement).one())


# Dashboard

def get_or_create_dashboard(*, session: Session, user_id: uuid.UUID) -> Dashboard:
    dashboard = session.exec(select(Dashboard).where(Dashboard.user_id == user_id)).first()
    if dashboard is None:
        dashboard = Dashboard(user_id=user_id, layout=[])
        session.add(dashboard)
        session.commit()
        session.refresh(dashboard)
    return dashboard


def dashboard_layout(dashboard: Dashboard) -> list[WidgetLayout]:
    return [WidgetLayout.model_validate(item) for item in dashboard.layout]


def save_dashboard_layout(
    *, session: Session, dashboard: Dashboard, layout: list[WidgetLayout]
) -> Dashboard:
    # JSON columns are only flushed on reassignment, never on in-place mutation.
    dashboard.layout = [item.model_dump(mode="json") for item in layout]
    dashboard.updated_at = get_datetime_utc()
    session.add(dashboard)
    session.commit()
    session.refresh(dashboard)
    return dashboard


def next_free_position(layout: list[WidgetLayout], width: int = 4, height: int = 3) -> LayoutPosition:
    bottom = max((item.position.y + item.position.h for item in layout), default=0)
    return LayoutPosition(x=0, y=bottom, w=width, h=height)


def add_widget_to_dashboard(
    *,
    session: Session,
    dashboard: Dashboard,
    widget_id: uuid.UUID,
    position: LayoutPosition | None = None,
) -> Dashboard:
    layout = dashboard_layout(dashboard)
    for item in layout:
        if item.widget_id == widget_id:
            item.visible = True
            if position is not None:
                item.position = position
            break
    else:
        layout.append(
            WidgetLayout(widget_id=widget_id, position=position or next_free_position(layout))
        )
    return save_dashboard_layout(session=session, dashboard=dashboard, layout=layout)


# Notifications

def create_notification(
    *,
    session: Session,
    user_id: uuid.UUID,
    type: NotificationType,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> Notification:
    notification = Notification(
        user_id=user_id, type=type, title=title, message=message, data=data
    )
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification


# Social

def follower_count(*, session: Session, user_id: uuid.UUID) -> int:
    statement = select(func.count()).select_from(Follow).where(Follow.followee_id == user_id)
    return session.exec(statement).one()


def get_follow(*, session: Session, follower_id: uuid.UUID, followee_id: uuid.UUID) -> Follow | None:
    statement = select(Follow).where(
        Follow.follower_id == follower_id, Follow.followee_id == followee_id
    )
    return session.exec(statement).first()


# Subscriptions

def get_or_create_subscription(*, session: Session, user_id: uuid.UUID) -> Subscription:
    subscription = session.exec(
        select(Subscription).where(Subscription.user_id == user_id)
    ).first()
    if subscription is None:
        subscription = Subscription(user_id=user_id, usage_period_start=get_datetime_utc())
        session.add(subscription)
        session.commit()
        session.refresh(subscription)
    return subscription


# Chat

def add_chat_message(
    *,
    session: Session,
    user_id: uuid.UUID,
    role: str,
    content: str,
    dsl: dict[str, Any] | None = None,
) -> ChatMessage:
    message = ChatMessage(user_id=user_id, role=role, content=content, dsl=dsl)
    session.add(message)
    session.commit()
    session.refresh(message)
    return message


def recent_chat_messages(*, session: Session, user_id: uuid.UUID, limit: int) -> list[ChatMessage]:
    statement = (
        select(ChatMessage)
        .where(ChatMessage.user_id == user_id)
        .order_by(col(ChatMessage.created_at).desc())
        .limit(limit)
    )
    return list(reversed(session.exec(statement).all()))


def create_dsl_audit_log(*, session: Session, audit: DSLAuditLog) -> DSLAuditLog:
    session.add(audit)
    session.commit()
    session.refresh(audit)
    return audit
