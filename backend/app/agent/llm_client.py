import json
import logging
import re
from typing import TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def _first_balanced_object(text: str) -> str | None:
    """Return the first balanced top-level JSON object in `text`, if any."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def json_candidates(raw_text: str) -> list[str]:
    """Possible JSON payloads in a model reply, most specific first, without duplicates."""
    text = (raw_text or "").strip()
    if not text:
        return []

    candidates = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append(text)
    balanced = _first_balanced_object(text)
    if balanced:
        candidates.append(balanced)

    unique: list[str] = []
    for candidate in candidates:
        candidate = candidate.strip()
        if candidate and candidate not in unique:
            unique.append(candidate)
    return unique


class LLMClient:
    """LLM client for structured generation against any OpenAI-compatible endpoint."""

    def __init__(
        self,
        model_name: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ):
        self.model_name = model_name or settings.LLM_MODEL
        self.client = AsyncOpenAI(
            base_url=base_url or settings.LLM_BASE_URL,
            api_key=api_key or settings.LLM_API_KEY,
        )

    async def generate_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        response_schema: type[T],
        *,
        history: list[dict[str, str]] | None = None,
    ) -> T:
        """
        Generate a response matching `response_schema`.

        The schema is injected into the system prompt; the reply is parsed
        leniently (fenced blocks, surrounding prose) and validated. One retry
        with stricter instructions is made when parsing fails.
        """
        schema_json = json.dumps(response_schema.model_json_schema())
        base_prompt = (
            f"{system_prompt}\n\n"
            "Respond with ONLY a JSON object matching this JSON Schema. "
            "No markdown fences, no commentary.\n\n"
            f"SCHEMA:\n{schema_json}"
        )
        attempts = [
            (base_prompt, 0.2),
            (
                f"{base_prompt}\n\nYour previous answer could not be parsed. "
                "Return a single JSON object and nothing else.",
                0.0,
            ),
        ]

        for attempt, (prompt, temperature) in enumerate(attempts, start=1):
            messages = [{"role": "system", "content": prompt}]
            messages.extend(history or [])
            messages.append({"role": "user", "content": user_prompt})

            logger.info(
                "Issuing structured request to model %s (attempt %s/%s)",
                self.model_name,
                attempt,
                len(attempts),
            )
            response = await self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                temperature=temperature,
            )
            if not getattr(response, "choices", None):
                raise ValueError(f"Model {self.model_name} returned no choices")

            content = response.choices[0].message.content or ""
            errors: list[str] = []
            for candidate in json_candidates(content):
                try:
                    return response_schema.model_validate(json.loads(candidate, strict=False))
                except (json.JSONDecodeError, ValidationError) as exc:
                    errors.append(str(exc))

            if attempt < len(attempts):
                logger.warning(
                    "Structured parsing failed for %s on attempt %s: %s. Retrying...",
                    self.model_name,
                    attempt,
                    errors[:1] or "empty response",
                )
                continue
            logger.error("Could not parse structured response from %s: %s", self.model_name, errors[:3])
            raise ValueError(
                "Unable to parse structured response: " + (" | ".join(errors[:3]) or "empty response")
            )

        raise RuntimeError("Structured generation finished without a result")
