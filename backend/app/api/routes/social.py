import logging
import uuid
from datetime import timedelta
from typing import Annotated, Any, Literal

from fastapi import APIRouter, BackgroundTasks, Query
from sqlmodel import Session, col, func, or_, select

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.core.errors import already_exists, invalid_argument, not_found
from app.models import (
    CreatorWidgetPublic,
    CreatorWidgetsPublic,
    Follow,
    FollowResponse,
    Fork,
    MarkAllReadResponse,
    Notification,
    NotificationPublic,
    NotificationsPublic,
    ProfileSearchResult,
    ProfileUpdate,
    PublicProfile,
    User,
    UserPublic,
    Visibility,
    Widget,
    WidgetPublic,
    get_datetime_utc,
)
from app.notifications import notify_new_follower

router = APIRouter(prefix="/social", tags=["social"])
logger = logging.getLogger(__name__)

TRENDING_WINDOWS = {"7d": timedelta(days=7), "30d": timedelta(days=30), "all": None}


def _public_profile(session: Session, user: User, *, with_widgets: bool = False) -> PublicProfile:
    widgets: list[WidgetPublic] = []
    if with_widgets:
        widgets = [
            WidgetPublic.model_validate(w)
            for w in session.exec(
                select(Widget)
                .where(Widget.owner_id == user.id, Widget.visibility == Visibility.PUBLIC)
                .order_by(col(Widget.fork_count).desc())
            ).all()
        ]
    return PublicProfile(
        user_id=user.id,
        username=user.username,
        full_name=user.full_name,
        bio=user.bio,
        avatar_url=user.avatar_url,
        follower_count=crud.follower_count(session=session, user_id=user.id),
        total_forks_received=crud.total_forks_received(session=session, owner_id=user.id),
        joined_at=user.created_at,
        public_widgets=widgets,
    )


@router.get("/profiles/{username}", response_model=PublicProfile)
def read_profile(session: SessionDep, current_user: CurrentUser, username: str) -> Any:
    user = crud.get_user_by_username(session=session, username=username.lower())
    if not user or not user.is_active:
        raise not_found("Profile not found", {"username": username})
    return _public_profile(session, user, with_widgets=True)


@router.put("/profile", response_model=UserPublic)
def update_profile(session: SessionDep, current_user: CurrentUser, body: ProfileUpdate) -> Any:
    update_data = body.model_dump(exclude_unset=True)
    username = update_data.get("username")
    if username and username != current_user.username:
        existing = crud.get_user_by_username(session=session, username=username)
        if existing and existing.id != current_user.id:
            raise already_exists("User", username)
    current_user.sqlmodel_update(update_data)
    session.add(current_user)
    session.commit()
    session.refresh(current_user)
    return current_user


@router.get("/trending", response_model=CreatorWidgetsPublic)
def read_trending(
    session: SessionDep,
    current_user: CurrentUser,
    timeframe: Literal["7d", "30d", "all"] = "7d",
    limit: Annotated[int, Query(ge=1, le=50)] = 20,
) -> Any:
    """Public widgets ranked by the number of forks made within `timeframe`."""
    forks = func.count(col(Fork.id)).label("forks")
    statement = (
        select(Widget, User, forks)
        .join(Fork, col(Fork.original_widget_id) == Widget.id)
        .join(User, col(User.id) == Widget.owner_id)
        .where(Widget.visibility == Visibility.PUBLIC)
    )
    window = TRENDING_WINDOWS[timeframe]
    if window is not None:
        statement = statement.where(col(Fork.created_at) >= get_datetime_utc() - window)
    statement = (
        statement.group_by(col(Widget.id), col(User.id))
        .order_by(forks.desc(), col(Widget.fork_count).desc())
        .limit(limit)
    )

    data = [
        CreatorWidgetPublic.model_validate(
            widget, update={"creator_username": user.username, "creator_name": user.full_name}
        )
        for widget, user, _ in session.exec(statement).all()
    ]
    return CreatorWidgetsPublic(data=data, count=len(data))


@router.get("/search", response_model=ProfileSearchResult)
def search(
    session: SessionDep,
    current_user: CurrentUser,
    q: Annotated[str, Query(min_length=1, max_length=100)],
    type: Literal["all", "widgets", "profiles"] = "all",
    limit: Annotated[int, Query(ge=1, le=50)] = 20,
) -> Any:
    pattern = f"%{q.strip()}%"
    widgets: list[WidgetPublic] = []
    profiles: list[PublicProfile] = []
    if type in ("all", "widgets"):
        widgets = [
            WidgetPublic.model_validate(w)
            for w in session.exec(
                select(Widget)
                .where(Widget.visibility == Visibility.PUBLIC, col(Widget.title).ilike(pattern))
                .order_by(col(Widget.fork_count).desc())
                .limit(limit)
            ).all()
        ]
    if type in ("all", "profiles"):
        profiles = [
            _public_profile(session, user)
            for user in session.exec(
                select(User)
                .where(
                    col(User.username).is_not(None),
                    col(User.is_active).is_(True),
                    or_(col(User.username).ilike(pattern), col(User.full_name).ilike(pattern)),
                )
                .limit(limit)
            ).all()
        ]
    return ProfileSearchResult(widgets=widgets, profiles=profiles, count=len(widgets) + len(profiles))


@router.post("/follow/{user_id}", response_model=FollowResponse)
def follow(
    session: SessionDep,
    current_user: CurrentUser,
    user_id: uuid.UUID,
    background_tasks: BackgroundTasks,
) -> Any:
    if user_id == current_user.id:
        raise invalid_argument("You cannot follow yourself", {"reason": "self_follow"})
    if not session.get(User, user_id):
        raise not_found("User not found", {"user_id": str(user_id)})
    if crud.get_follow(session=session, follower_id=current_user.id, followee_id=user_id):
        raise already_exists("Follow", str(user_id))
    session.add(Follow(follower_id=current_user.id, followee_id=user_id))
    session.commit()
    background_tasks.add_task(notify_new_follower, user_id, current_user.id)
    return FollowResponse(follower_count=crud.follower_count(session=session, user_id=user_id))


@router.delete("/follow/{user_id}", response_model=FollowResponse)
def unfollow(session: SessionDep, current_user: CurrentUser, user_id: uuid.UUID) -> Any:
    existing = crud.get_follow(session=session, follower_id=current_user.id, followee_id=user_id)
    if not existing:
        raise not_found("You are not following this user", {"user_id": str(user_id)})
    session.delete(existing)
    session.commit()
    return FollowResponse(follower_count=crud.follower_count(session=session, user_id=user_id))


@router.get("/notifications", response_model=NotificationsPublic)
def read_notifications(
    session: SessionDep,
    current_user: CurrentUser,
    unread_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> Any:
    conditions = [Notification.user_id == current_user.id]
    if unread_only:
        conditions.append(col(Notification.read).is_(False))

    count = session.exec(select(func.count()).select_from(Notification).where(*conditions)).one()
    unread_count = session.exec(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == current_user.id, col(Notification.read).is_(False))
    ).one()
    notifications = session.exec(
        select(Notification)
        .where(*conditions)
        .order_by(col(Notification.created_at).desc(), col(Notification.id).desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return NotificationsPublic(
        data=[NotificationPublic.model_validate(n) for n in notifications],
        unread_count=unread_count,
        count=count,
    )


@router.post("/notifications/read-all", response_model=MarkAllReadResponse)
def mark_all_notifications_read(session: SessionDep, current_user: CurrentUser) -> Any:
    unread = session.exec(
        select(Notification).where(
            Notification.user_id == current_user.id, col(Notification.read).is_(False)
        )
    ).all()
    for notification in unread:
        notification.read = True
        session.add(notification)
    session.commit()
    return MarkAllReadResponse(marked_count=len(unread))


@router.post("/notifications/{notification_id}/read", response_model=NotificationPublic)
def mark_notification_read(
    session: SessionDep, current_user: CurrentUser, notification_id: int
) -> Any:
    notification = session.get(Notification, notification_id)
    if not notification or notification.user_id != current_user.id:
        raise not_found("Notification not found", {"notification_id": notification_id})
    notification.read = True
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification
