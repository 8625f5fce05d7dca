"""
Provider-specific usage extraction from LLM responses.

Reads actual token counts from OpenAI, Anthropic and Gemini response
metadata (object or dict form) and returns RealizedUsage. There is no
estimation fallback: a response without usable counts raises
MeteringError so nothing is billed on a guess.
"""

import logging
import math
from typing import Any, Optional, Tuple

from .exceptions import MeteringError
from .schemas import RealizedUsage

logger = logging.getLogger(__name__)

_MISSING = object()


def _get(obj: Any, *names: str) -> Any:
    """First attribute or key among ``names`` present on ``obj``."""
    if obj is None:
        return _MISSING
    for name in names:
        if isinstance(obj, dict):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return _MISSING


def _to_units(value: Any, field: str) -> int:
    """
    Validate a token count.

    Raises:
        MeteringError: value is missing, non-numeric, non-finite or negative
    """
    if value is _MISSING or value is None:
        raise MeteringError(f"Usage field '{field}' is missing")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MeteringError(f"Usage field '{field}' is not numeric: {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise MeteringError(f"Usage field '{field}' is not finite: {value!r}")
        value = math.ceil(value)
    if value < 0:
        raise MeteringError(f"Usage field '{field}' is negative: {value}")
    return int(value)


def _optional_units(value: Any, field: str) -> int:
    if value is _MISSING or value is None:
        return 0
    return _to_units(value, field)


def _model_of(response: Any) -> Optional[str]:
    model = _get(response, "model", "model_version", "modelVersion")
    return None if model is _MISSING else model


def extract_openai_usage(response: Any) -> Optional[RealizedUsage]:
    """
    Extract usage from an OpenAI response.

    Chat completions: ``usage.prompt_tokens`` / ``usage.completion_tokens``.
    Responses API: ``usage.input_tokens`` / ``usage.output_tokens``.

    Returns:
        RealizedUsage, or None if the response has no OpenAI usage block
    """
    usage = _get(response, "usage")
    if usage is _MISSING or usage is None:
        return None

    output = _get(usage, "completion_tokens")
    if output is _MISSING:
        return None

    return RealizedUsage(
        input_units=_optional_units(_get(usage, "prompt_tokens"), "prompt_tokens"),
        output_units=_to_units(output, "completion_tokens"),
        provider="openai",
        model=_model_of(response),
    )


def extract_anthropic_usage(response: Any) -> Optional[RealizedUsage]:
    """
    Extract usage from an Anthropic (or OpenAI Responses API) response.

    Structure: ``usage.input_tokens`` / ``usage.output_tokens``.
    """
    usage = _get(response, "usage")
    if usage is _MISSING or usage is None:
        return None

    output = _get(usage, "output_tokens")
    if output is _MISSING:
        return None

    return RealizedUsage(
        input_units=_optional_units(_get(usage, "input_tokens"), "input_tokens"),
        output_units=_to_units(output, "output_tokens"),
        provider="anthropic",
        model=_model_of(response),
    )


def extract_gemini_usage(response: Any) -> Optional[RealizedUsage]:
    """
    Extract usage from a Gemini response.

    Structure: ``usage_metadata.prompt_token_count`` /
    ``usage_metadata.candidates_token_count`` (camelCase in raw JSON).
    """
    usage = _get(response, "usage_metadata", "usageMetadata")
    if usage is _MISSING or usage is None:
        return None

    output = _get(usage, "candidates_token_count", "candidatesTokenCount")
    if output is _MISSING:
        return None

    return RealizedUsage(
        input_units=_optional_units(
            _get(usage, "prompt_token_count", "promptTokenCount"), "prompt_token_count"
        ),
        output_units=_to_units(output, "candidates_token_count"),
        provider="google",
        model=_model_of(response),
    )


def extract_plain_usage(response: Any) -> Optional[RealizedUsage]:
    """Extract usage from a plain mapping with ``input_units`` / ``output_units``."""
    output = _get(response, "output_units")
    if output is _MISSING:
        return None
    return RealizedUsage(
        input_units=_optional_units(_get(response, "input_units"), "input_units"),
        output_units=_to_units(output, "output_units"),
    )


_EXTRACTORS: Tuple = (
    ("openai", extract_openai_usage),
    ("anthropic", extract_anthropic_usage),
    ("google", extract_gemini_usage),
    ("plain", extract_plain_usage),
)


def extract_realized_usage(response: Any, provider: Optional[str] = None) -> RealizedUsage:
    """
    Extract realized usage from an operation result, auto-detecting the shape.

    Args:
        response: LLM response object, dict, or RealizedUsage
        provider: Optional hint ('openai', 'anthropic', 'google', 'plain')

    Returns:
        RealizedUsage

    Raises:
        MeteringError: no usage could be found, or a count is invalid
    """
    if isinstance(response, RealizedUsage):
        _to_units(response.output_units, "output_units")
        _to_units(response.input_units, "input_units")
        return response

    if provider == "google_genai":
        provider = "google"

    candidates = [e for e in _EXTRACTORS if provider is None or e[0] == provider]
    if not candidates:
        raise MeteringError(f"Unknown usage provider: {provider}")

    for name, extractor in candidates:
        usage = extractor(response)
        if usage is not None:
            logger.debug(
                f"Extracted {name} usage: input={usage.input_units}, output={usage.output_units}"
            )
            return usage

    raise MeteringError(f"No usage data found in {type(response).__name__} result")


__all__ = [
    "extract_openai_usage",
    "extract_anthropic_usage",
    "extract_gemini_usage",
    "extract_plain_usage",
    "extract_realized_usage",
]
