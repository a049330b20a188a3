"""Pipeline policy values.

Every tunable the import pipeline uses lives on :class:`PipelineSettings` so
call sites never hard-code batch sizes, timeouts, or cache lifetimes. The
defaults match the production profile; ``from_env`` lets operators override
them with ``SI_*`` variables (typically loaded from ``.env`` by the CLI).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path

from .logging_setup import get_logger

_logger = get_logger("statement_import.config")

DEFAULT_DATE_FORMATS: tuple[str, ...] = ("%m/%d/%Y", "%m/%d/%y", "%Y-%m-%d")


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Policy values shared by the standardizer, categorizer, and merger.

    Attributes
    ----------
    batch_size:
        Merchant signatures per ``categorize_merchants`` request.
    max_concurrent_batches:
        Upper bound on categorization requests in flight at once.
    request_timeout:
        Seconds to wait for any single service call before falling back.
    merchant_cache_enabled / merchant_cache_ttl:
        Whether the merchant cache is consulted, and how long entries live
        (seconds).
    context_window:
        Number of recently resolved ``signature: category`` pairs sent along
        with each batch as disambiguating context. ``0`` disables it.
    date_formats:
        ``strptime`` formats tried in order when parsing the date column.
    amount_epsilon:
        Largest absolute amount difference still treated as equal by the
        duplicate check.
    model:
        Model name used by the OpenAI-backed service.
    cache_dir:
        When set, caches are loaded from and saved to this directory.
    """

    batch_size: int = 15
    max_concurrent_batches: int = 4
    request_timeout: float = 20.0
    merchant_cache_enabled: bool = True
    merchant_cache_ttl: float = 24 * 3600.0
    context_window: int = 5
    date_formats: tuple[str, ...] = field(default=DEFAULT_DATE_FORMATS)
    amount_epsilon: Decimal = Decimal("0.01")
    model: str = "gpt-5"
    cache_dir: Path | None = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        if self.max_concurrent_batches < 1:
            raise ValueError("max_concurrent_batches must be a positive integer")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.context_window < 0:
            raise ValueError("context_window must be >= 0")
        if not self.date_formats:
            raise ValueError("date_formats must not be empty")

    @classmethod
    def from_env(cls, **overrides: object) -> PipelineSettings:
        """Build settings from ``SI_*`` environment variables.

        Unparseable values are logged and ignored so a typo in ``.env`` never
        prevents an import. Keyword ``overrides`` win over the environment.
        """

        values: dict[str, object] = {}

        def _read(env: str, key: str, convert) -> None:
            raw = os.getenv(env)
            if raw is None or not raw.strip():
                return
            try:
                values[key] = convert(raw.strip())
            except ValueError:
                _logger.warning("config:ignored_env name=%s value=%r", env, raw)

        _read("SI_BATCH_SIZE", "batch_size", int)
        _read("SI_MAX_CONCURRENCY", "max_concurrent_batches", int)
        _read("SI_REQUEST_TIMEOUT", "request_timeout", float)
        _read("SI_MERCHANT_CACHE", "merchant_cache_enabled", _parse_bool)
        _read("SI_MERCHANT_CACHE_TTL_HOURS", "merchant_cache_ttl", lambda s: float(s) * 3600.0)
        _read("SI_CONTEXT_WINDOW", "context_window", int)
        _read("SI_DATE_FORMATS", "date_formats", _parse_formats)
        _read("SI_MODEL", "model", str)
        _read("SI_CACHE_DIR", "cache_dir", lambda s: Path(s).expanduser())

        values.update(overrides)
        try:
            return cls(**values)  # type: ignore[arg-type]
        except ValueError:
            # One bad env value must not poison the rest; retry with overrides only.
            _logger.warning("config:invalid_env_settings; using defaults", exc_info=True)
            return cls(**overrides)  # type: ignore[arg-type]

    def with_overrides(self, **changes: object) -> PipelineSettings:
        return replace(self, **changes)  # type: ignore[arg-type]


def _parse_bool(raw: str) -> bool:
    v = raw.lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_formats(raw: str) -> tuple[str, ...]:
    formats = tuple(part.strip() for part in raw.split(",") if part.strip())
    if not formats:
        raise ValueError("no date formats given")
    return formats


__all__ = ["DEFAULT_DATE_FORMATS", "PipelineSettings"]
