"""Text pipeline applied to every relayed message.

Order is fixed: optional AI rewrite first, then search/replace rules in list
order. Media is never touched here; when a message carries media the text is
its caption.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Protocol

import aiohttp

from .config import GenerationSettings
from .errors import TransformFailed
from .models import ReplacementRule
from .structured_logging import log_event

logger = logging.getLogger(__name__)

__all__ = [
    "TextGenerator",
    "GeminiGenerator",
    "ContentTransformer",
    "build_prompt",
    "compile_rules",
]


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str:
        """Return generated text for ``prompt``."""


def build_prompt(text: str, template: str | None) -> str:
    if not template:
        return text
    return f"{template}: {text}"


class GeminiGenerator:
    """Gemini ``generateContent`` client on top of a shared aiohttp session."""

    __slots__ = ("_api_key", "_session", "_settings")

    def __init__(
        self,
        api_key: str,
        session: aiohttp.ClientSession,
        *,
        settings: GenerationSettings | None = None,
    ):
        self._api_key = api_key
        self._session = session
        self._settings = settings or GenerationSettings()

    async def generate(self, prompt: str) -> str:
        url = self._settings.endpoint.format(model=self._settings.model)
        payload = {"contents": [{"parts": [{"text": prompt}]}]}
        timeout = aiohttp.ClientTimeout(total=self._settings.timeout)
        async with self._session.post(
            url,
            params={"key": self._api_key},
            json=payload,
            timeout=timeout,
        ) as response:
            if response.status != 200:
                body = await response.text()
                raise TransformFailed(f"Generation API error {response.status}: {body[:200]}")
            try:
                data: Any = await response.json(content_type=None)
            except ValueError as exc:
                raise TransformFailed("Generation API returned invalid JSON") from exc
        return _extract_text(data)


def _extract_text(data: Any) -> str:
    if not isinstance(data, Mapping):
        raise TransformFailed("Generation API returned an unexpected payload")
    candidates = data.get("candidates") or []
    for candidate in candidates:
        if not isinstance(candidate, Mapping):
            continue
        content = candidate.get("content") or {}
        parts = content.get("parts") if isinstance(content, Mapping) else None
        if not parts:
            continue
        text = "".join(
            str(part.get("text", "")) for part in parts if isinstance(part, Mapping)
        ).strip()
        if text:
            return text
    raise TransformFailed("Generation API returned no text")


@dataclass(frozen=True, slots=True)
class _CompiledRule:
    pattern: re.Pattern[str]
    replacement: str

    def apply(self, text: str) -> str:
        # Replacement text is literal: no group references or escapes.
        return self.pattern.sub(lambda _match: self.replacement, text)


def compile_rules(rules: Iterable[ReplacementRule]) -> tuple[_CompiledRule, ...]:
    compiled: list[_CompiledRule] = []
    for rule in rules:
        if not rule.pattern or not rule.replacement:
            continue
        try:
            pattern = re.compile(rule.pattern)
        except re.error:
            pattern = re.compile(re.escape(rule.pattern))
        compiled.append(_CompiledRule(pattern, rule.replacement))
    return tuple(compiled)


class ContentTransformer:
    """Rewrites relayed text for a single relay service."""

    __slots__ = ("_rules", "_prompt_template", "_generator", "_tenant_id", "_service_id")

    def __init__(
        self,
        rules: Sequence[ReplacementRule] = (),
        *,
        prompt_template: str | None = None,
        generator: TextGenerator | None = None,
        tenant_id: str | None = None,
        service_id: str | None = None,
    ):
        self._rules = compile_rules(rules)
        self._prompt_template = prompt_template
        self._generator = generator if prompt_template else None
        self._tenant_id = tenant_id
        self._service_id = service_id

    @property
    def ai_enabled(self) -> bool:
        return self._generator is not None

    async def transform(self, text: str) -> str:
        if not text:
            return text
        result = text
        if self._generator is not None:
            result = await self._rewrite(text)
        return self.apply_rules(result)

    def apply_rules(self, text: str) -> str:
        result = text
        for rule in self._rules:
            result = rule.apply(result)
        return result

    async def _rewrite(self, text: str) -> str:
        assert self._generator is not None
        start = perf_counter()
        try:
            generated = await self._generator.generate(build_prompt(text, self._prompt_template))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                "transform_failed",
                level=logging.WARNING,
                tenant_id=self._tenant_id,
                service_id=self._service_id,
                channel=None,
                message_id=None,
                outcome="fallback",
                latency_ms=(perf_counter() - start) * 1000,
                extra={"error": f"{type(exc).__name__}: {exc}"},
            )
            return text
        generated = generated.strip()
        if not generated:
            return text
        return generated
