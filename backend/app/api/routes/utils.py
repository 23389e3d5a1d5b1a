from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

router = APIRouter(tags=["utils"])

SERVICES = ("auth", "portfolio", "widgets", "chat", "subscriptions")


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    timestamp: datetime


@router.get("/utils/health-check/")
async def health_check() -> bool:
    return True


def _service_health(service: str):
    async def health() -> HealthResponse:
        return HealthResponse(service=service, timestamp=datetime.now(timezone.utc))

    health.__name__ = f"{service}_health"
    return health


for _service in SERVICES:
    router.add_api_route(
        f"/{_service}/health",
        _service_health(_service),
        methods=["GET"],
        response_model=HealthResponse,
    )
