"""Interchangeable summarisation backends behind one ``summarize`` capability."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Mapping, Protocol

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from openai import APIConnectionError, APIStatusError, OpenAI
from pydantic import BaseModel, Field, ValidationError

from .config import AppConfig, secret_value
from .errors import ConfigError, ProviderError, ProviderRejectedError, ProviderTransientError
from .models import DetailLevel

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "... (truncated)"

SHORT_PROMPT = (
    "You are a helpful assistant. Provide a very concise summary (max 3-5 bullet points) "
    "focusing only on the main idea. Use Markdown."
)
DETAILED_PROMPT = (
    "You are a helpful assistant that summarizes YouTube video transcripts. Provide a summary "
    "with key takeaways, deep analysis, and structured sections (Introduction, Key Points, "
    "Conclusion). Use Markdown formatting. If the transcript is very short or nonsensical, say so."
)
ANALYZER_PROMPT = (
    "You are an expert video analyzer. Analyze the provided transcript and generate a "
    "structured JSON response.\n\n"
    "Output format (JSON):\n"
    "{\n"
    '    "summary": "A concise 2-3 sentence summary of the video.",\n'
    '    "key_points": ["Key point 1", "Key point 2", "Key point 3"],\n'
    '    "detailed_summary": "A comprehensive summary formatted in Markdown (headers, bullet points).",\n'
    '    "sentiment": "Positive" | "Neutral" | "Negative"\n'
    "}"
)


class EnrichmentProvider(Protocol):
    """Summarisation backend; implementations must be safe to call from many threads."""

    name: str
    context_budget: int

    def summarize(self, text: str, detail_level: DetailLevel, instructions: str | None = None) -> str:
        ...


class VideoAnalysis(BaseModel):
    """Validated JSON payload returned by the OpenAI analyzer prompt."""

    summary: str = "Summary not available."
    key_points: list[str] = Field(default_factory=list)
    detailed_summary: str | None = None
    sentiment: str = "Neutral"

    def to_markdown(self) -> str:
        lines = ["### Summary", self.summary, ""]
        if self.key_points:
            lines.append("### Key Takeaways")
            lines.extend(f"- {point}" for point in self.key_points)
            lines.append("")
        lines.extend(["### Detailed Analysis", self.detailed_summary or self.summary, ""])
        lines.append(f"**Sentiment:** {self.sentiment}")
        return "\n".join(lines)


def truncate_for_budget(text: str, budget: int) -> str:
    """Cut ``text`` to ``budget`` characters and append an explicit marker."""
    if len(text) <= budget:
        return text
    return text[:budget] + TRUNCATION_MARKER


def _with_instructions(prompt: str, instructions: str | None) -> str:
    if not instructions:
        return prompt
    return f"{prompt}\n\nAdditional instructions from the reader:\n{instructions.strip()}"


class OpenAIProvider:
    """Chat-completions backend returning a structured JSON analysis."""

    name = "openai"
    context_budget = 100_000

    def __init__(self, api_key: str, *, model: str = "gpt-5-nano", timeout: float = 120.0, client: Any = None) -> None:
        self.model = model
        self._client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    @classmethod
    def from_config(cls, config: AppConfig) -> "OpenAIProvider":
        api_key = secret_value(config.openai_api_key)
        if not api_key:
            raise ConfigError("OPENAI_API_KEY is required when AI_SERVICE_PROVIDER=openai")
        return cls(api_key, model=config.openai_model, timeout=config.enrichment_timeout_seconds)

    def summarize(self, text: str, detail_level: DetailLevel, instructions: str | None = None) -> str:
        snippet = truncate_for_budget(text, self.context_budget)
        prompt = _with_instructions(ANALYZER_PROMPT, instructions) + f"\n\nTranscript:\n{snippet}"
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": "You are a helpful AI assistant that analyzes video transcripts and outputs JSON.",
                    },
                    {"role": "user", "content": prompt},
                ],
                temperature=1,
                response_format={"type": "json_object"},
            )
        except APIConnectionError as exc:
            raise ProviderTransientError(f"OpenAI connection failed: {exc}") from exc
        except APIStatusError as exc:
            raise _classify_status(exc.status_code, f"OpenAI returned {exc.status_code}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ProviderError("OpenAI response contained no content")
        try:
            analysis = VideoAnalysis.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("OpenAI returned malformed analysis JSON.")
            raise ProviderError("Failed to parse AI response") from exc

        if detail_level is DetailLevel.SHORT:
            return analysis.summary
        return analysis.to_markdown()


class GeminiProvider:
    """Gemini backend returning Markdown directly."""

    name = "gemini"
    context_budget = 2_000_000

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.0-flash",
        timeout: float = 120.0,
        client: Any = None,
    ) -> None:
        self.timeout = timeout
        if client is None:
            genai.configure(api_key=api_key)
            client = genai.GenerativeModel(model)
        self._client = client

    @classmethod
    def from_config(cls, config: AppConfig) -> "GeminiProvider":
        api_key = secret_value(config.gemini_api_key)
        if not api_key:
            raise ConfigError("GEMINI_API_KEY is required when AI_SERVICE_PROVIDER=gemini")
        return cls(api_key, model=config.gemini_model, timeout=config.enrichment_timeout_seconds)

    def summarize(self, text: str, detail_level: DetailLevel, instructions: str | None = None) -> str:
        system_prompt = SHORT_PROMPT if detail_level is DetailLevel.SHORT else DETAILED_PROMPT
        prompt = _with_instructions(system_prompt, instructions)
        prompt += "\n\nTranscript:\n" + truncate_for_budget(text, self.context_budget)
        try:
            response = self._client.generate_content(
                prompt,
                generation_config={"temperature": 0.5, "max_output_tokens": 2000},
                request_options={"timeout": self.timeout},
            )
        except google_exceptions.TooManyRequests as exc:
            raise ProviderTransientError(f"Gemini rate limited: {exc}", status_code=429) from exc
        except google_exceptions.ServerError as exc:
            raise ProviderTransientError(f"Gemini server error: {exc}", status_code=exc.code) from exc
        except google_exceptions.ClientError as exc:
            raise ProviderRejectedError(f"Gemini rejected request: {exc}", status_code=exc.code) from exc
        except (google_exceptions.GoogleAPIError, ConnectionError, TimeoutError) as exc:
            raise ProviderTransientError(f"Gemini call failed: {exc}") from exc

        try:
            output = response.text
        except ValueError as exc:
            # raised when the candidate was blocked and carries no text parts
            raise ProviderRejectedError("Gemini response was blocked") from exc
        if not output or not output.strip():
            raise ProviderError("Gemini response contained no text")
        return output.strip()


def _classify_status(status_code: int | None, message: str) -> ProviderError:
    if status_code is not None and (status_code == 429 or status_code >= 500):
        return ProviderTransientError(message, status_code=status_code)
    return ProviderRejectedError(message, status_code=status_code)


PROVIDER_FACTORIES: Mapping[str, Callable[[AppConfig], EnrichmentProvider]] = {
    "openai": OpenAIProvider.from_config,
    "gemini": GeminiProvider.from_config,
}


def build_provider(config: AppConfig) -> EnrichmentProvider:
    """Construct the configured provider once; the scheduler never branches on it."""
    factory = PROVIDER_FACTORIES.get(config.ai_provider)
    if factory is None:
        raise ConfigError(f"Unknown AI provider: {config.ai_provider}")
    provider = factory(config)
    logger.info("Enrichment provider %s ready", provider.name)
    return provider
