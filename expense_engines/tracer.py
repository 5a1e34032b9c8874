"""
expense_engines.tracer -- Engine invocation tracer emitting EXPENSE_ENGINE_TRACE.

Responsibility:
    ``@traced_engine`` wraps pure engine invocations with a structured DEBUG
    trace: engine name, version, a fingerprint of selected inputs, and
    duration.

Architecture position:
    Engines -- infrastructure support for the pure layer.  Emits a log
    record only; uses its own logger under the ``expense_kernel`` namespace
    so it inherits the kernel's handler configuration.

Usage:
    @traced_engine("sod", "1.0", fingerprint_fields=("permissions",))
    def evaluate_sod(*, permissions, rules):
        ...
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable
from typing import Any

from expense_kernel.logging_config import get_logger
from expense_kernel.utils.hashing import canonicalize_json, sha256_hex

_logger = get_logger("engines.tracer")


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """16-hex-char SHA-256 prefix over the named kwargs (missing -> null)."""
    selected = {name: kwargs.get(name) for name in fingerprint_fields}
    return sha256_hex(canonicalize_json(_jsonable(selected)))[:16]


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = compute_input_fingerprint(fingerprint_fields, kwargs) if fingerprint_fields else ""

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.debug(
                "EXPENSE_ENGINE_TRACE",
                extra={
                    "trace_type": "EXPENSE_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": duration_ms,
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
