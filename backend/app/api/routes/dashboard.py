import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter
from sqlmodel import Session, col, select

from app import crud
from app.api.deps import CurrentUser, SessionDep
from app.core.errors import invalid_argument, not_found, permission_denied
from app.models import (
    Dashboard,
    DashboardAddWidget,
    DashboardPublic,
    DashboardRefresh,
    DashboardRemoveWidget,
    DashboardUpdate,
    DashboardWithWidgets,
    RefreshedWidget,
    Widget,
    WidgetPublic,
    WidgetWithData,
)
from app.portfolio.service import compute_widget_data

router = APIRouter(prefix="/dashboard", tags=["dashboard"])
logger = logging.getLogger(__name__)


def _dashboard_public(dashboard: Dashboard) -> DashboardPublic:
    return DashboardPublic(
        user_id=dashboard.user_id,
        layout=crud.dashboard_layout(dashboard),
        updated_at=dashboard.updated_at,
    )


def _visible_widgets(session: Session, dashboard: Dashboard) -> list[Widget]:
    ids = [item.widget_id for item in crud.dashboard_layout(dashboard) if item.visible]
    if not ids:
        return []
    by_id = {w.id: w for w in session.exec(select(Widget).where(col(Widget.id).in_(ids))).all()}
    return [by_id[widget_id] for widget_id in ids if widget_id in by_id]


@router.get("/", response_model=DashboardWithWidgets)
def read_dashboard(session: SessionDep, current_user: CurrentUser) -> Any:
    dashboard = crud.get_or_create_dashboard(session=session, user_id=current_user.id)
    portfolio = crud.get_portfolio(session=session, user_id=current_user.id)
    return DashboardWithWidgets(
        dashboard=_dashboard_public(dashboard),
        widgets=[
            WidgetWithData(
                widget=WidgetPublic.model_validate(widget),
                data=compute_widget_data(portfolio, current_user.id, widget.config),
            )
            for widget in _visible_widgets(session, dashboard)
        ],
    )


@router.put("/", response_model=DashboardPublic)
def update_dashboard(session: SessionDep, current_user: CurrentUser, body: DashboardUpdate) -> Any:
    """Replace the whole layout. Every entry must reference one of the caller's widgets, once."""
    ids = [item.widget_id for item in body.layout]
    if len(ids) != len(set(ids)):
        raise invalid_argument("Layout contains duplicate widgets", {"reason": "duplicate_widget"})
    if ids:
        owned = set(
            session.exec(
                select(Widget.id).where(col(Widget.id).in_(ids), Widget.owner_id == current_user.id)
            ).all()
        )
        foreign = [str(widget_id) for widget_id in ids if widget_id not in owned]
        if foreign:
            raise permission_denied(
                "Layout references widgets you do not own",
                {"reason": "not_owner", "widget_ids": foreign},
            )

    dashboard = crud.get_or_create_dashboard(session=session, user_id=current_user.id)
    dashboard = crud.save_dashboard_layout(session=session, dashboard=dashboard, layout=body.layout)
    return _dashboard_public(dashboard)


@router.post("/add-widget", response_model=DashboardPublic)
def add_widget(session: SessionDep, current_user: CurrentUser, body: DashboardAddWidget) -> Any:
    widget = session.get(Widget, body.widget_id)
    if not widget:
        raise not_found("Widget not found", {"widget_id": str(body.widget_id)})
    if widget.owner_id != current_user.id:
        raise permission_denied(
            "Fork a widget before adding it to your dashboard", {"reason": "not_owner"}
        )
    dashboard = crud.get_or_create_dashboard(session=session, user_id=current_user.id)
    dashboard = crud.add_widget_to_dashboard(
        session=session, dashboard=dashboard, widget_id=widget.id, position=body.position
    )
    return _dashboard_public(dashboard)


@router.post("/remove-widget", response_model=DashboardPublic)
def remove_widget(session: SessionDep, current_user: CurrentUser, body: DashboardRemoveWidget) -> Any:
    # Hidden, not deleted: the widget itself and its position are kept.
    dashboard = crud.get_or_create_dashboard(session=session, user_id=current_user.id)
    layout = crud.dashboard_layout(dashboard)
    for item in layout:
        if item.widget_id == body.widget_id:
            item.visible = False
            break
    else:
        raise not_found("Widget is not on your dashboard", {"widget_id": str(body.widget_id)})
    dashboard = crud.save_dashboard_layout(session=session, dashboard=dashboard, layout=layout)
    return _dashboard_public(dashboard)


@router.post("/refresh", response_model=DashboardRefresh)
def refresh_dashboard(session: SessionDep, current_user: CurrentUser) -> Any:
    dashboard = crud.get_or_create_dashboard(session=session, user_id=current_user.id)
    portfolio = crud.get_portfolio(session=session, user_id=current_user.id)
    widgets = [
        RefreshedWidget(
            widget_id=widget.id,
            data=compute_widget_data(portfolio, current_user.id, widget.config),
        )
        for widget in _visible_widgets(session, dashboard)
    ]
    logger.info("Refreshed %s dashboard widgets for user %s", len(widgets), current_user.id)
    return DashboardRefresh(refreshed_at=datetime.now(timezone.utc), widgets=widgets)
