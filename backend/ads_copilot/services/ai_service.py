"""
AI Service — Multi-provider chat (OpenAI GPT, Anthropic Claude) for the Google Ads assistant.
Builds the system prompt from the account context bundle and streams completions.
"""

import json
import logging
from typing import AsyncIterator, Optional
from openai import AsyncOpenAI
from anthropic import AsyncAnthropic

from ads_copilot.config import get_settings
from ads_copilot.schemas import AIContextBundle, RelevantContext

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
RELEVANT_DATA_PREFIX = "RELEVANT_GOOGLE_ADS_DATA_JSON:"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"

BASE_PROMPT = """You are an AI assistant specialized in Google Ads optimization and digital marketing analytics. You're helping {user_name} with their Google Ads campaigns.

PERSONALITY & TONE:
- Professional yet friendly and approachable
- Data-driven and analytical
- Proactive in offering actionable insights
- Clear and concise in explanations

CORE CAPABILITIES:
- Google Ads campaign analysis and optimization
- Budget allocation recommendations
- Keyword research and bid management
- Performance trend analysis
- ROI and conversion optimization

RESPONSE GUIDELINES:
- Always provide specific, actionable recommendations
- Use data and metrics to support your suggestions
- Format responses with clear structure (headers, bullet points, numbers)
- Include potential impact estimates when possible
- When {relevant_prefix} is provided, treat it as the authoritative data for the question
- If the data does not contain what the user asks about, say so and work with what is available
"""

ACCOUNT_SECTION = """
CURRENT ACCOUNT CONTEXT:

ACCOUNT OVERVIEW:
{executive_summary}

PERFORMANCE STATUS:
{performance_narrative}

KEY INSIGHTS:
{key_insights}

TOP RECOMMENDATIONS:
{recommendations}

DATA QUALITY:
{data_quality}

Use this context to provide specific, data-driven recommendations. Reference actual metrics in your responses.
"""

NO_ACCOUNT_SECTION = """
NOTE: No account data is currently available. Focus on general Google Ads best practices and ask the user to connect their account for personalized insights.
"""


# ── Prompt assembly ───────────────────────────────────────────────────

def build_system_prompt(user_name: Optional[str], bundle: Optional[AIContextBundle]) -> str:
    prompt = BASE_PROMPT.format(user_name=user_name or "there", relevant_prefix=RELEVANT_DATA_PREFIX)
    if bundle is None:
        return prompt + NO_ACCOUNT_SECTION

    nl = bundle.natural_language
    structured = bundle.structured_data
    opportunities = structured.insights_summary.key_opportunities[:3]
    recommendations = [
        f"{i}. {rec.title}: {rec.description} ({rec.potential_impact})"
        for i, rec in enumerate(structured.actionable_recommendations[:3], start=1)
    ]
    return prompt + ACCOUNT_SECTION.format(
        executive_summary=nl.executive_summary,
        performance_narrative=nl.performance_narrative,
        key_insights="\n".join(opportunities) or nl.insights_narrative,
        recommendations="\n".join(recommendations) or nl.recommendation_narrative,
        data_quality=nl.data_quality_note,
    )


def build_conversation_messages(
    system_prompt: str,
    history: list[dict],
    message: str,
    relevant: Optional[RelevantContext] = None,
) -> list[dict]:
    """System prompt, compact relevant-data JSON, recent history, then the new user message."""
    messages = [{"role": "system", "content": system_prompt}]

    if relevant is not None and (relevant.summary or any(relevant.data.values())):
        payload = json.dumps(relevant.model_dump(mode="json"), separators=(",", ":"), default=str)
        messages.append({"role": "system", "content": f"{RELEVANT_DATA_PREFIX}\n{payload}"})

    for msg in (history or [])[-HISTORY_LIMIT:]:
        role = msg.get("role")
        if role in ("user", "assistant") and msg.get("content"):
            messages.append({"role": role, "content": msg["content"]})

    messages.append({"role": "user", "content": message})
    return messages


def _parse_model_id(model_id: Optional[str]) -> tuple[str, str]:
    """Parse 'provider:model' into (provider, model). Fallback to the first configured provider."""
    settings = get_settings()
    model_id = model_id or settings.default_model_id
    if model_id and ":" in model_id:
        p, m = model_id.split(":", 1)
        return (p.strip().lower(), m.strip())
    if not settings.openai_api_key and settings.anthropic_api_key:
        return ("anthropic", DEFAULT_ANTHROPIC_MODEL)
    return ("openai", settings.openai_model)


def _split_system(messages: list[dict]) -> tuple[str, list[dict]]:
    """Anthropic takes system text separately from the turn list."""
    system_parts = []
    turns = []
    for m in messages:
        if m.get("role") == "system":
            if m.get("content"):
                system_parts.append(m["content"])
        else:
            turns.append({"role": "user" if m.get("role") == "user" else "assistant", "content": m.get("content", "")})
    return "\n\n".join(system_parts), turns


class AIService:
    """Multi-provider AI service for the Google Ads assistant (OpenAI GPT, Anthropic Claude)."""

    def __init__(
        self,
        model_id: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
    ):
        settings = get_settings()
        self.provider, self.model = _parse_model_id(model_id)
        self._openai_client: Optional[AsyncOpenAI] = None
        self._anthropic_client: Optional[AsyncAnthropic] = None

        openai_key = openai_api_key or settings.openai_api_key
        anthropic_key = anthropic_api_key or settings.anthropic_api_key

        if self.provider == "openai":
            if not openai_key:
                raise ValueError("OPENAI_API_KEY not configured.")
            self._openai_client = AsyncOpenAI(api_key=openai_key)
        elif self.provider == "anthropic":
            if not anthropic_key:
                raise ValueError("ANTHROPIC_API_KEY not configured.")
            self._anthropic_client = AsyncAnthropic(api_key=anthropic_key)
        else:
            raise ValueError(f"Unknown AI provider: {self.provider}")

    async def complete(self, messages: list[dict], temperature: float = 0.7, max_tokens: int = 2000) -> str:
        """Non-streaming completion."""
        if self.provider == "openai":
            response = await self._openai_client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            return response.choices[0].message.content or ""

        system, turns = _split_system(messages)
        kwargs = dict(model=self.model, max_tokens=max_tokens, messages=turns, temperature=temperature)
        if system:
            kwargs["system"] = system
        response = await self._anthropic_client.messages.create(**kwargs)
        if response.content and response.content[0].type == "text":
            return response.content[0].text
        return ""

    async def stream(
        self,
        messages: list[dict],
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ) -> AsyncIterator[str]:
        """
        Yield text deltas as they arrive.
        Closing the generator (client went away) closes the upstream stream as well.
        """
        if self.provider == "openai":
            stream = await self._openai_client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
            try:
                async for chunk in stream:
                    if chunk.choices and chunk.choices[0].delta.content:
                        yield chunk.choices[0].delta.content
            finally:
                await stream.close()
            return

        system, turns = _split_system(messages)
        kwargs = dict(model=self.model, max_tokens=max_tokens, messages=turns, temperature=temperature)
        if system:
            kwargs["system"] = system
        async with self._anthropic_client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield text


def create_ai_service(
    model_id: Optional[str] = None,
    openai_api_key: Optional[str] = None,
    anthropic_api_key: Optional[str] = None,
) -> AIService:
    """Factory to create a configured AI service instance."""
    return AIService(model_id=model_id, openai_api_key=openai_api_key, anthropic_api_key=anthropic_api_key)
