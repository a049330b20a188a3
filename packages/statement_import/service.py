"""Categorization service contract and its OpenAI-backed implementation.

The pipeline only ever talks to :class:`CategorizationService`. Outputs are
treated as untrusted: :class:`OpenAICategorizationService` already filters
them against the literal request (requested strings, batch indices, the
taxonomy), and callers validate again before anything reaches state.

No side effects occur at import time; the OpenAI client is created lazily on
first use so tests and ``--no-ai`` runs never need credentials.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from openai import AsyncOpenAI
from openai.types.responses import ResponseTextConfigParam
from pydantic import ValidationError

from . import prompting
from .errors import CategorizationServiceError
from .logging_setup import get_logger
from .models import (
    CategoryMappingBody,
    MerchantDecisionBody,
    MerchantQuery,
    StandardCategory,
)

_MAX_ATTEMPTS: int = 3
_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
_JITTER_PCT: float = 0.20

_logger = get_logger("statement_import.service")


class CategorizationService(Protocol):
    """What the pipeline needs from a categorization backend.

    Implementations may raise any exception or hang; the pipeline bounds every
    call with a timeout and falls back on failure.
    """

    async def classify_columns(
        self, headers: Sequence[str], sample_row: Sequence[str]
    ) -> Mapping[str, object]: ...

    async def standardize_categories(
        self, strings: Sequence[str]
    ) -> Mapping[str, StandardCategory]: ...

    async def categorize_merchants(
        self, items: Sequence[MerchantQuery]
    ) -> Mapping[int, StandardCategory]: ...


# ---- Response helpers --------------------------------------------------------


def _extract_response_json_mapping(resp: Any) -> Mapping[str, Any]:
    """Decode the JSON object from a Responses API result.

    Prefers ``resp.output_text`` and falls back to
    ``resp.output[0].content[0].text``. Raises ``ValueError`` when no text can
    be located or it is not a JSON object.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        try:
            first = resp.output[0] if getattr(resp, "output", None) else None
            content = getattr(first, "content", None)
            if content:
                txt_obj = getattr(content[0], "text", None)
                if isinstance(txt_obj, str):
                    text = txt_obj
                else:
                    maybe_val = getattr(txt_obj, "value", None)
                    if isinstance(maybe_val, str):
                        text = maybe_val
        except (AttributeError, IndexError, TypeError):
            text = None
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("Model output was not valid JSON per the requested schema") from e
    if not isinstance(decoded, Mapping):
        raise ValueError("Model output must be a JSON object")
    return decoded


def _is_retryable(exc: BaseException) -> bool:
    """True only for HTTP 429 and 5xx errors."""

    sc = getattr(exc, "status_code", None)
    return isinstance(sc, int) and (sc == 429 or 500 <= sc < 600)


def _backoff_delay(attempt_no: int) -> float:
    if attempt_no - 1 < len(_BACKOFF_SCHEDULE_SEC):
        base = _BACKOFF_SCHEDULE_SEC[attempt_no - 1]
    else:
        base = _BACKOFF_SCHEDULE_SEC[-1]
    jitter = base * _JITTER_PCT
    return max(0.0, base + random.uniform(-jitter, jitter))


def parse_category_mappings(
    decoded: Mapping[str, Any], *, requested: Sequence[str]
) -> dict[str, StandardCategory]:
    """Keep mappings whose ``source`` was requested and whose category is known.

    Matching against the request is case-insensitive; the returned keys are
    the requested spellings.
    """

    try:
        body = CategoryMappingBody.model_validate(decoded)
    except ValidationError as e:
        raise ValueError(f"category mapping body failed validation: {e}") from e

    by_key = {s.casefold(): s for s in requested}
    out: dict[str, StandardCategory] = {}
    for pair in body.mappings:
        original = by_key.get(pair.source.casefold())
        category = StandardCategory.parse(pair.category)
        if original is None or category is None:
            _logger.warning(
                "service:mapping_discarded source=%r category=%r", pair.source, pair.category
            )
            continue
        out.setdefault(original, category)
    return out


def parse_merchant_decisions(
    decoded: Mapping[str, Any], *, num_items: int
) -> dict[int, StandardCategory]:
    """Keep decisions whose ``idx`` is in ``[0, num_items)`` and category is known."""

    try:
        body = MerchantDecisionBody.model_validate(decoded)
    except ValidationError as e:
        raise ValueError(f"merchant decision body failed validation: {e}") from e

    out: dict[int, StandardCategory] = {}
    for decision in body.results:
        category = StandardCategory.parse(decision.category)
        if not 0 <= decision.idx < num_items or category is None:
            _logger.warning(
                "service:decision_discarded idx=%d category=%r",
                decision.idx,
                decision.category,
            )
            continue
        out.setdefault(decision.idx, category)
    return out


# ---- OpenAI implementation ---------------------------------------------------


class OpenAICategorizationService:
    """:class:`CategorizationService` over the OpenAI Responses API.

    Every request uses a strict JSON Schema response format. HTTP 429 and 5xx
    failures are retried with jittered backoff up to ``max_attempts``;
    anything else (including unusable output) raises
    :class:`~statement_import.errors.CategorizationServiceError` at once.
    """

    def __init__(
        self,
        *,
        model: str = "gpt-5",
        client: AsyncOpenAI | None = None,
        max_attempts: int = _MAX_ATTEMPTS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.model = model
        self.max_attempts = max_attempts
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    async def _request(
        self,
        *,
        operation: str,
        instructions: str,
        user_content: str,
        text_cfg: ResponseTextConfigParam,
        count: int,
    ) -> Mapping[str, Any]:
        client = self._get_client()
        attempt = 1
        while True:
            t0 = time.perf_counter()
            try:
                resp = await client.responses.create(
                    model=self.model,
                    instructions=instructions,
                    input=user_content,
                    text=text_cfg,
                )
                decoded = _extract_response_json_mapping(resp)
            except Exception as e:  # noqa: BLE001
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if attempt >= self.max_attempts or not _is_retryable(e):
                    _logger.error(
                        "service:%s_failed_terminal count=%d latency_ms=%.2f error=%s",
                        operation,
                        count,
                        dt_ms,
                        e.__class__.__name__,
                    )
                    raise CategorizationServiceError(
                        f"{operation} failed (items={count}): {e}"
                    ) from e
                _logger.warning(
                    "service:%s_retry count=%d latency_ms=%.2f error=%s attempt=%d",
                    operation,
                    count,
                    dt_ms,
                    e.__class__.__name__,
                    attempt,
                )
                await asyncio.sleep(_backoff_delay(attempt))
                attempt += 1
                continue

            _logger.info(
                "service:%s_done count=%d latency_ms=%.2f",
                operation,
                count,
                (time.perf_counter() - t0) * 1000.0,
            )
            return decoded

    async def classify_columns(
        self, headers: Sequence[str], sample_row: Sequence[str]
    ) -> Mapping[str, object]:
        decoded = await self._request(
            operation="classify_columns",
            instructions=prompting.build_columns_instructions(),
            user_content=prompting.build_columns_user_content(headers, sample_row),
            text_cfg=ResponseTextConfigParam(
                format=prompting.build_columns_response_format(headers)
            ),
            count=len(headers),
        )
        # Header membership is enforced by the column detector.
        return dict(decoded)

    async def standardize_categories(
        self, strings: Sequence[str]
    ) -> Mapping[str, StandardCategory]:
        if not strings:
            return {}
        decoded = await self._request(
            operation="standardize_categories",
            instructions=prompting.build_standardize_instructions(),
            user_content=prompting.build_standardize_user_content(strings),
            text_cfg=ResponseTextConfigParam(
                format=prompting.build_standardize_response_format()
            ),
            count=len(strings),
        )
        try:
            return parse_category_mappings(decoded, requested=strings)
        except ValueError as e:
            raise CategorizationServiceError(str(e)) from e

    async def categorize_merchants(
        self, items: Sequence[MerchantQuery]
    ) -> Mapping[int, StandardCategory]:
        if not items:
            return {}
        decoded = await self._request(
            operation="categorize_merchants",
            instructions=prompting.build_merchants_instructions(),
            user_content=prompting.build_merchants_user_content(items),
            text_cfg=ResponseTextConfigParam(
                format=prompting.build_merchants_response_format()
            ),
            count=len(items),
        )
        try:
            return parse_merchant_decisions(decoded, num_items=len(items))
        except ValueError as e:
            raise CategorizationServiceError(str(e)) from e


__all__ = [
    "CategorizationService",
    "OpenAICategorizationService",
    "parse_category_mappings",
    "parse_merchant_decisions",
]
