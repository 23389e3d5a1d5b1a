import json
import logging
from typing import Any

from app.agent.artifacts import QueryPlan, WidgetDSL
from app.agent.base import BaseAgent
from app.agent.prompts.query import QUERY_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 10
MAX_SNAPSHOT_HOLDINGS = 50


def _snapshot_block(holdings: list[dict[str, Any]] | None) -> str:
    if not holdings:
        return "The user has no portfolio loaded yet."
    compact = [
        {
            "symbol": h.get("symbol"),
            "sector": h.get("sector"),
            "asset_type": h.get("asset_type"),
            "quantity": h.get("quantity"),
        }
        for h in holdings[:MAX_SNAPSHOT_HOLDINGS]
    ]
    return "Portfolio snapshot (symbols only, no prices):\n" + json.dumps(compact)


class QueryAgent(BaseAgent[str, QueryPlan]):
    """
    Turns a natural-language portfolio question into a QueryPlan carrying a
    widget DSL, a clarification question, or a plain reply.
    """

    def get_system_prompt(self) -> str:
        return QUERY_SYSTEM_PROMPT.format(dsl_schema=json.dumps(WidgetDSL.model_json_schema()))

    async def run(
        self,
        input_data: str,
        history: list[dict[str, str]] | None = None,
        holdings: list[dict[str, Any]] | None = None,
    ) -> QueryPlan:
        message = (input_data or "").strip()
        if not message:
            raise ValueError("QueryAgent received an empty message.")

        user_prompt = f"{_snapshot_block(holdings)}\n\nQuestion: {message}"
        plan = await self.llm.generate_structured(
            system_prompt=self.get_system_prompt(),
            user_prompt=user_prompt,
            response_schema=QueryPlan,
            history=(history or [])[-MAX_HISTORY_MESSAGES:],
        )
        logger.info(
            "QueryAgent produced plan (dsl=%s, clarification=%s)",
            plan.dsl is not None,
            plan.clarification is not None,
        )
        return plan
