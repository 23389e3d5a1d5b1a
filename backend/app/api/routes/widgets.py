import logging
import uuid
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Query
from sqlmodel import Session, col, func, select

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.core.errors import already_exists, invalid_argument, not_found, permission_denied
from app.models import (
    Fork,
    ForkEntry,
    ForkResponse,
    ForksPublic,
    SuccessResponse,
    User,
    Visibility,
    Widget,
    WidgetCreate,
    WidgetPublic,
    WidgetsPublic,
    WidgetUpdate,
    WidgetWithData,
)
from app.notifications import notify_widget_forked
from app.portfolio.service import compute_widget_data

router = APIRouter(prefix="/widgets", tags=["widgets"])
logger = logging.getLogger(__name__)


def _get_widget_or_404(session: Session, widget_id: uuid.UUID) -> Widget:
    widget = session.get(Widget, widget_id)
    if not widget:
        raise not_found("Widget not found", {"widget_id": str(widget_id)})
    return widget


def _get_owned_widget(session: Session, widget_id: uuid.UUID, user_id: uuid.UUID) -> Widget:
    widget = _get_widget_or_404(session, widget_id)
    if widget.owner_id != user_id:
        raise permission_denied("You can only modify your own widgets", {"reason": "not_owner"})
    return widget


@router.post("/", response_model=WidgetPublic)
def create_widget(session: SessionDep, current_user: CurrentUser, widget_in: WidgetCreate) -> Any:
    if widget_in.type != widget_in.config.type:
        raise invalid_argument(
            "Widget type must match config.type",
            {"type": widget_in.type.value, "config_type": widget_in.config.type.value},
        )
    widget = crud.create_widget(session=session, widget_in=widget_in, owner_id=current_user.id)
    logger.info("User %s created widget %s", current_user.id, widget.id)
    return widget


@router.get("/", response_model=WidgetsPublic)
def read_widgets(
    session: SessionDep,
    current_user: CurrentUser,
    visibility: Visibility | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> Any:
    widgets, count = crud.list_widgets(
        session=session,
        owner_id=current_user.id,
        visibility=visibility,
        limit=limit,
        offset=offset,
    )
    return WidgetsPublic(data=[WidgetPublic.model_validate(w) for w in widgets], count=count)


@router.get("/{widget_id}", response_model=WidgetWithData)
def read_widget(session: SessionDep, current_user: CurrentUser, widget_id: uuid.UUID) -> Any:
    """A public widget, or one of your own, with data computed against your portfolio."""
    widget = _get_widget_or_404(session, widget_id)
    if widget.visibility != Visibility.PUBLIC and widget.owner_id != current_user.id:
        raise permission_denied("This widget is private", {"reason": "private_widget"})
    portfolio = crud.get_portfolio(session=session, user_id=current_user.id)
    return WidgetWithData(
        widget=WidgetPublic.model_validate(widget),
        data=compute_widget_data(portfolio, current_user.id, widget.config),
    )


@router.put("/{widget_id}", response_model=WidgetPublic)
def update_widget(
    session: SessionDep, current_user: CurrentUser, widget_id: uuid.UUID, widget_in: WidgetUpdate
) -> Any:
    widget = _get_owned_widget(session, widget_id, current_user.id)
    return crud.update_widget(session=session, db_widget=widget, widget_in=widget_in)


@router.delete("/{widget_id}", response_model=SuccessResponse)
def delete_widget(session: SessionDep, current_user: CurrentUser, widget_id: uuid.UUID) -> Any:
    widget = _get_owned_widget(session, widget_id, current_user.id)
    crud.delete_widget(session=session, db_widget=widget)
    logger.info("User %s deleted widget %s", current_user.id, widget_id)
    return SuccessResponse()


@router.post("/{widget_id}/fork", response_model=ForkResponse)
def fork_widget(
    session: SessionDep,
    current_user: CurrentUser,
    widget_id: uuid.UUID,
    background_tasks: BackgroundTasks,
) -> Any:
    """
    Copy a public widget into the caller's account and dashboard.

    The copy is private and re-binds to the caller's own holdings. The
    original's owner is notified after the response is sent.
    """
    original = _get_widget_or_404(session, widget_id)
    if original.visibility != Visibility.PUBLIC:
        raise permission_denied("Only public widgets can be forked", {"reason": "private_widget"})
    if original.owner_id == current_user.id:
        raise invalid_argument("You cannot fork your own widget", {"reason": "own_widget"})
    if crud.get_fork(session=session, original_id=original.id, user_id=current_user.id):
        raise already_exists("Fork", str(original.id))

    forked = crud.fork_widget(session=session, original=original, user_id=current_user.id)
    dashboard = crud.get_or_create_dashboard(session=session, user_id=current_user.id)
    crud.add_widget_to_dashboard(session=session, dashboard=dashboard, widget_id=forked.id)
    background_tasks.add_task(notify_widget_forked, original.id, current_user.id)
    logger.info("User %s forked widget %s into %s", current_user.id, original.id, forked.id)
    return ForkResponse(forked_widget=WidgetPublic.model_validate(forked), added_to_dashboard=True)


@router.get("/{widget_id}/forks", response_model=ForksPublic)
def read_widget_forks(
    session: SessionDep,
    current_user: CurrentUser,
    widget_id: uuid.UUID,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> Any:
    widget = _get_widget_or_404(session, widget_id)
    if widget.visibility != Visibility.PUBLIC and widget.owner_id != current_user.id:
        raise permission_denied("This widget is private", {"reason": "private_widget"})

    count = session.exec(
        select(func.count()).select_from(Fork).where(Fork.original_widget_id == widget_id)
    ).one()
    rows = session.exec(
        select(Fork, User)
        .join(User, col(User.id) == Fork.forking_user_id)
        .where(Fork.original_widget_id == widget_id)
        .order_by(col(Fork.created_at).desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return ForksPublic(
        data=[
            ForkEntry(
                forked_widget_id=fork.forked_widget_id,
                forking_user_id=fork.forking_user_id,
                forking_username=user.username,
                forked_at=fork.created_at,
            )
            for fork, user in rows
        ],
        count=count,
    )
