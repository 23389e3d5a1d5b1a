from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from sqlmodel import select

from app import crud
from app.agent.artifacts import ClarificationRequest, QueryPlan
from app.billing.usage import month_start
from app.core.config import settings
from app.models import DSLAuditLog

API = settings.API_V1_STR

GAINERS_DSL = {"type": "table", "query": {"operation": "sort", "field": "pnl", "limit": 2}}


@contextmanager
def mocked_agent(plan: QueryPlan | None = None, error: Exception | None = None):
    agent = MagicMock()
    agent.llm.model_name = "gpt-4o"
    agent.run = AsyncMock(return_value=plan, side_effect=error)
    with patch("app.api.routes.chat.QueryAgent", return_value=agent):
        yield agent


def _ask(client, headers, message="What are my top gainers?", **extra):
    return client.post(f"{API}/chat/query", headers=headers, json={"message": message, **extra})


def test_query_returns_widget_with_data(client, db, user, auth_headers, seed_portfolio):
    seed_portfolio(user)
    plan = QueryPlan(reply="Here are your top gainers.", title="Top gainers", dsl=GAINERS_DSL)

    with mocked_agent(plan) as agent:
        response = _ask(client, auth_headers)

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["message"]["role"] == "assistant"
    assert body["message"]["content"] == "Here are your top gainers."
    assert body["widget"]["title"] == "Top gainers"
    assert [row["symbol"] for row in body["widget"]["data"]["rows"]] == ["NIFTYBEES", "INFY"]
    assert body["clarification_needed"] is None
    assert body["query_count"]["used"] == 1
    assert body["query_count"]["remaining"] == settings.FREE_TIER_QUERY_LIMIT - 1

    assert agent.run.await_args.kwargs["holdings"][0]["symbol"] == "INFY"

    audit = db.exec(select(DSLAuditLog)).one()
    assert audit.valid is True
    assert audit.prompt == "What are my top gainers?"
    assert audit.model == "gpt-4o"
    assert audit.latency_ms is not None

    history = client.get(f"{API}/chat/history", headers=auth_headers).json()
    assert [m["role"] for m in history["data"]] == ["user", "assistant"]
    assert history["count"] == 2


def test_stored_history_is_sent_to_the_agent(client, auth_headers):
    with mocked_agent(QueryPlan(reply="First answer")):
        _ask(client, auth_headers, message="First question")

    with mocked_agent(QueryPlan(reply="Second answer")) as agent:
        _ask(client, auth_headers, message="Second question")

    assert agent.run.await_args.kwargs["history"] == [
        {"role": "user", "content": "First question"},
        {"role": "assistant", "content": "First answer"},
    ]


def test_explicit_context_overrides_stored_history(client, auth_headers):
    context = {"previous_messages": [{"role": "user", "content": "Only this"}]}

    with mocked_agent(QueryPlan(reply="ok")) as agent:
        _ask(client, auth_headers, context=context)

    assert agent.run.await_args.kwargs["history"] == [{"role": "user", "content": "Only this"}]


def test_clarification_without_widget(client, auth_headers):
    plan = QueryPlan(
        reply="Could you clarify?",
        clarification=ClarificationRequest(question="Which time period?", options=["1M", "1Y"]),
    )

    with mocked_agent(plan):
        body = _ask(client, auth_headers, message="How did I do?").json()

    assert body["widget"] is None
    assert body["clarification_needed"] == {"question": "Which time period?", "options": ["1M", "1Y"]}


def test_widget_without_portfolio_has_no_data(client, auth_headers):
    with mocked_agent(QueryPlan(reply="Here you go", title="Gainers", dsl=GAINERS_DSL)):
        body = _ask(client, auth_headers).json()

    assert body["widget"]["dsl"]["query"]["operation"] == "sort"
    assert body["widget"]["data"] is None


def test_free_tier_limit(client, db, user, auth_headers):
    subscription = crud.get_or_create_subscription(session=db, user_id=user.id)
    subscription.queries_used = settings.FREE_TIER_QUERY_LIMIT
    subscription.usage_period_start = month_start(datetime.now(timezone.utc))
    db.add(subscription)
    db.commit()

    with mocked_agent(QueryPlan(reply="never")) as agent:
        response = _ask(client, auth_headers)

    assert response.status_code == 429
    assert response.json()["code"] == "resource_exhausted"
    assert response.json()["details"]["reason"] == "query_limit_exceeded"
    agent.run.assert_not_awaited()


def test_llm_failure_is_mapped_and_not_counted(client, db, auth_headers):
    with mocked_agent(error=RuntimeError("Rate limit reached for gpt-4o")):
        response = _ask(client, auth_headers)

    assert response.status_code == 429
    audit = db.exec(select(DSLAuditLog)).one()
    assert audit.valid is False
    assert "Rate limit" in audit.error

    usage = client.get(f"{API}/subscriptions/usage", headers=auth_headers).json()["usage"]
    assert usage["used"] == 0


def test_invalid_generated_dsl_is_audited(client, db, auth_headers):
    bad_dsl = {"type": "chart", "query": {"operation": "sort", "field": "pnl"}}

    with mocked_agent(QueryPlan(reply="Chart!", dsl=bad_dsl)):
        response = _ask(client, auth_headers)

    assert response.status_code == 400
    assert response.json()["details"]["reason"] == "dsl_validation_failed"
    audit = db.exec(select(DSLAuditLog)).one()
    assert audit.valid is False
    assert audit.dsl == bad_dsl


def test_validate_dsl_endpoint(client, auth_headers):
    ok = client.post(f"{API}/chat/validate-dsl", headers=auth_headers, json={"dsl": GAINERS_DSL}).json()
    assert ok == {"valid": True, "errors": []}

    bad = client.post(
        f"{API}/chat/validate-dsl",
        headers=auth_headers,
        json={"dsl": {"type": "table", "query": {"operation": "sort", "field": "pnl", "limit": 500}}},
    ).json()
    assert bad["valid"] is False
    assert bad["errors"][0]["path"] == "query.limit"


def test_execute_dsl_endpoint(client, user, auth_headers, seed_portfolio):
    missing = client.post(f"{API}/chat/execute-dsl", headers=auth_headers, json={"dsl": GAINERS_DSL})
    assert missing.status_code == 404

    seed_portfolio(user)
    first = client.post(f"{API}/chat/execute-dsl", headers=auth_headers, json={"dsl": GAINERS_DSL}).json()
    second = client.post(f"{API}/chat/execute-dsl", headers=auth_headers, json={"dsl": GAINERS_DSL}).json()

    assert first["cache_hit"] is False
    assert second["cache_hit"] is True
    assert first["data"]["total"] == 3

    invalid = client.post(f"{API}/chat/execute-dsl", headers=auth_headers, json={"dsl": {"type": "table"}})
    assert invalid.status_code == 400


def test_suggestions_follow_the_portfolio(client, user, auth_headers, seed_portfolio):
    generic = client.get(f"{API}/chat/suggestions", headers=auth_headers).json()["suggestions"]
    assert len(generic) == 5

    seed_portfolio(user)
    tailored = client.get(f"{API}/chat/suggestions", headers=auth_headers).json()["suggestions"]
    assert "NIFTYBEES" in tailored[0]["text"]
    assert "Index" in tailored[1]["text"]
