from fastapi import APIRouter

from app.api.routes import (
    chat,
    dashboard,
    login,
    portfolio,
    social,
    subscriptions,
    utils,
    widgets,
    zerodha,
)
from app.core.config import settings

api_router = APIRouter()
api_router.include_router(utils.router)
api_router.include_router(login.router)
api_router.include_router(zerodha.router)
api_router.include_router(portfolio.router)
api_router.include_router(chat.router)
api_router.include_router(widgets.router)
api_router.include_router(dashboard.router)
api_router.include_router(subscriptions.router)

if settings.ENABLE_SOCIAL_FEATURES:
    api_router.include_router(social.router)
