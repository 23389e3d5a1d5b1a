import logging
import uuid

from sqlmodel import Session

from app.core.db import engine
from app.crud import create_notification
from app.models import NotificationType, User, Widget

logger = logging.getLogger(__name__)


def notify_widget_forked(original_widget_id: uuid.UUID, forking_user_id: uuid.UUID) -> None:
    """Tell a widget's owner that someone forked it. Runs after the response is sent."""
    with Session(engine) as session:
        widget = session.get(Widget, original_widget_id)
        forker = session.get(User, forking_user_id)
        if widget is None or forker is None:
            logger.warning(
                "Skipping fork notification: widget %s or user %s no longer exists",
                original_widget_id,
                forking_user_id,
            )
            return

        who = forker.username or forker.full_name or "Someone"
        create_notification(
            session=session,
            user_id=widget.owner_id,
            type=NotificationType.FORK,
            title="Your widget was forked",
            message=f"{who} forked \"{widget.title}\"",
            data={
                "widget_id": str(widget.id),
                "forking_user_id": str(forker.id),
                "fork_count": widget.fork_count,
            },
        )


def notify_new_follower(followee_id: uuid.UUID, follower_id: uuid.UUID) -> None:
    with Session(engine) as session:
        follower = session.get(User, follower_id)
        if follower is None or session.get(User, followee_id) is None:
            return
        who = follower.username or follower.full_name or "Someone"
        create_notification(
            session=session,
            user_id=followee_id,
            type=NotificationType.FOLLOW,
            title="New follower",
            message=f"{who} started following you",
            data={"follower_id": str(follower.id)},
        )
