import json
import logging
import time
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field
from sqlmodel import col, func, select

from app import crud
from app.agent.artifacts import ClarificationRequest, WidgetDSL
from app.agent.dsl_executor import execute_cached, validate_dsl
from app.agent.query_agent import QueryAgent
from app.api.deps import CurrentUser, SessionDep
from app.billing.usage import ensure_can_query, increment_query_count
from app.core.errors import APIError, invalid_argument, llm_error
from app.models import ChatHistory, ChatMessage, ChatMessagePublic, DSLAuditLog, QueryUsage
from app.portfolio.service import get_portfolio_or_404, portfolio_holdings, portfolio_version

router = APIRouter(prefix="/chat", tags=["chat"])
logger = logging.getLogger(__name__)

HISTORY_CONTEXT_MESSAGES = 10


class ContextMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class ChatQueryContext(BaseModel):
    previous_messages: list[ContextMessage] | None = None


class ChatQueryRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    context: ChatQueryContext | None = None


class GeneratedWidget(BaseModel):
    title: str
    dsl: dict[str, Any]
    data: dict[str, Any] | None = None


class ChatQueryResponse(BaseModel):
    message: ChatMessagePublic
    widget: GeneratedWidget | None = None
    clarification_needed: ClarificationRequest | None = None
    query_count: QueryUsage


class DSLRequest(BaseModel):
    dsl: dict[str, Any]


class DSLValidationResponse(BaseModel):
    valid: bool
    errors: list[dict[str, str]] = Field(default_factory=list)


class DSLExecutionResponse(BaseModel):
    data: dict[str, Any]
    executed_at: datetime
    cache_hit: bool


class Suggestion(BaseModel):
    text: str
    category: Literal["performance", "allocation", "analysis"]
    popularity: int


class SuggestionsResponse(BaseModel):
    suggestions: list[Suggestion]


BASE_SUGGESTIONS = [
    Suggestion(text="Show my sector allocation as a pie chart", category="allocation", popularity=95),
    Suggestion(text="What are my top 5 gainers?", category="performance", popularity=90),
    Suggestion(text="Which holdings are losing money?", category="performance", popularity=85),
    Suggestion(text="How much have I invested each month?", category="analysis", popularity=70),
    Suggestion(text="Show returns by asset type", category="analysis", popularity=60),
]


def _parse_dsl_or_400(raw: dict[str, Any]) -> WidgetDSL:
    errors = validate_dsl(raw)
    if errors:
        raise invalid_argument(
            "Widget DSL validation failed",
            {"reason": "dsl_validation_failed", "errors": errors},
        )
    return WidgetDSL.model_validate(raw)


@router.post("/query", response_model=ChatQueryResponse)
async def chat_query(
    session: SessionDep, current_user: CurrentUser, payload: ChatQueryRequest
) -> Any:
    """Natural-language question -> widget DSL -> data, counted against the monthly quota."""
    ensure_can_query(session, current_user)
    portfolio = crud.get_portfolio(session=session, user_id=current_user.id)

    if payload.context and payload.context.previous_messages is not None:
        history = [m.model_dump() for m in payload.context.previous_messages]
    else:
        history = [
            {"role": m.role, "content": m.content}
            for m in crud.recent_chat_messages(
                session=session, user_id=current_user.id, limit=HISTORY_CONTEXT_MESSAGES
            )
            if m.role in ("user", "assistant")
        ]

    agent = QueryAgent()
    audit = DSLAuditLog(user_id=current_user.id, prompt=payload.message, model=agent.llm.model_name)
    started = time.perf_counter()
    try:
        plan = await agent.run(
            payload.message,
            history=history,
            holdings=portfolio.holdings if portfolio else None,
        )
    except APIError:
        raise
    except Exception as exc:
        audit.error = str(exc)[:2000]
        audit.latency_ms = int((time.perf_counter() - started) * 1000)
        crud.create_dsl_audit_log(session=session, audit=audit)
        logger.error("Query agent failed for user %s: %s", current_user.id, exc)
        raise llm_error(exc)

    audit.latency_ms = int((time.perf_counter() - started) * 1000)
    audit.dsl = plan.dsl
    usage = increment_query_count(session, current_user)

    dsl_errors = validate_dsl(plan.dsl) if plan.dsl is not None else []
    audit.valid = plan.dsl is not None and not dsl_errors
    audit.error = json.dumps(dsl_errors) if dsl_errors else None
    crud.create_dsl_audit_log(session=session, audit=audit)
    if dsl_errors:
        raise invalid_argument(
            "The generated widget did not pass validation. Try rephrasing your question.",
            {"reason": "dsl_validation_failed", "errors": dsl_errors},
        )

    widget = None
    if plan.dsl is not None:
        dsl = WidgetDSL.model_validate(plan.dsl)
        data = None
        if portfolio is not None:
            data, _ = execute_cached(
                dsl,
                portfolio_holdings(portfolio),
                user_id=str(current_user.id),
                portfolio_version=portfolio_version(portfolio),
            )
        widget = GeneratedWidget(
            title=plan.title or payload.message[:80],
            dsl=dsl.to_config(),
            data=data,
        )

    crud.add_chat_message(
        session=session, user_id=current_user.id, role="user", content=payload.message
    )
    assistant = crud.add_chat_message(
        session=session,
        user_id=current_user.id,
        role="assistant",
        content=plan.reply,
        dsl=widget.dsl if widget else None,
    )
    return ChatQueryResponse(
        message=ChatMessagePublic.model_validate(assistant),
        widget=widget,
        clarification_needed=plan.clarification,
        query_count=usage,
    )


@router.post("/validate-dsl", response_model=DSLValidationResponse)
def validate_dsl_endpoint(current_user: CurrentUser, payload: DSLRequest) -> Any:
    errors = validate_dsl(payload.dsl)
    return DSLValidationResponse(valid=not errors, errors=errors)


@router.post("/execute-dsl", response_model=DSLExecutionResponse)
def execute_dsl_endpoint(
    session: SessionDep, current_user: CurrentUser, payload: DSLRequest
) -> Any:
    dsl = _parse_dsl_or_400(payload.dsl)
    portfolio = get_portfolio_or_404(session, current_user.id)
    data, cache_hit = execute_cached(
        dsl,
        portfolio_holdings(portfolio),
        user_id=str(current_user.id),
        portfolio_version=portfolio_version(portfolio),
    )
    return DSLExecutionResponse(
        data=data, executed_at=datetime.now(timezone.utc), cache_hit=cache_hit
    )


@router.get("/suggestions", response_model=SuggestionsResponse)
def read_suggestions(session: SessionDep, current_user: CurrentUser) -> Any:
    suggestions = list(BASE_SUGGESTIONS)
    holdings = portfolio_holdings(crud.get_portfolio(session=session, user_id=current_user.id))
    if holdings:
        largest = max(holdings, key=lambda h: h.value)
        suggestions.insert(
            0,
            Suggestion(
                text=f"How is {largest.symbol} performing against my average price?",
                category="performance",
                popularity=80,
            ),
        )
        sectors = {h.sector for h in holdings if h.sector}
        if sectors:
            top_sector = max(
                sectors, key=lambda s: sum(h.value for h in holdings if h.sector == s)
            )
            suggestions.insert(
                1,
                Suggestion(
                    text=f"Show P&L of my {top_sector} holdings",
                    category="analysis",
                    popularity=75,
                ),
            )
    return SuggestionsResponse(suggestions=suggestions)


@router.get("/history", response_model=ChatHistory)
def read_history(
    session: SessionDep,
    current_user: CurrentUser,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> Any:
    count = session.exec(
        select(func.count()).select_from(ChatMessage).where(ChatMessage.user_id == current_user.id)
    ).one()
    messages = session.exec(
        select(ChatMessage)
        .where(ChatMessage.user_id == current_user.id)
        .order_by(col(ChatMessage.created_at).desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return ChatHistory(
        data=[ChatMessagePublic.model_validate(m) for m in reversed(messages)],
        count=count,
    )
