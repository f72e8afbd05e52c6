"""
Partial results handling for batches where single items may fail.

Sync phases fire one operation per dashboard (or per Grafana instance) and
collect every outcome: a failing item is recorded and logged, and never
cancels its siblings.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Sequence, TypeVar

import httpx

from ..domain.errors import BackendQueryError, GrafanaApiError, NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K")


@dataclass
class PartialResult:
    """
    Result container for operations that may partially fail.

    Attributes
    ----------
    successes : List[Any]
        Results of the operations that completed
    failures : List[FailureInfo]
        Information about failed operations
    success_rate : float
        Ratio of successes to total attempts (0.0-1.0)
    """

    successes: List[Any] = field(default_factory=list)
    failures: List["FailureInfo"] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        """Calculate success rate (0.0-1.0)."""
        total = len(self.successes) + len(self.failures)
        if total == 0:
            return 0.0
        return len(self.successes) / total

    @property
    def has_failures(self) -> bool:
        """Check if any operations failed."""
        return len(self.failures) > 0

    def extend(self, other: "PartialResult") -> None:
        """Merge the outcomes of another batch into this one."""
        self.successes.extend(other.successes)
        self.failures.extend(other.failures)


@dataclass
class FailureInfo:
    """
    Information about a failed operation.

    Attributes
    ----------
    identifier : str
        Identifier for the failed operation (e.g., a dashboard uid)
    error : str
        Error message
    error_type : str
        Type of error (e.g., "http_error", "timeout", "precondition_failed")
    retryable : bool
        Whether the operation might succeed on the next tick
    """

    identifier: str
    error: str
    error_type: str
    retryable: bool = False


async def gather_partial(
    operations: Dict[str, Awaitable[T]],
    operation_type: str = "operation",
) -> PartialResult:
    """
    Execute multiple async operations and collect partial results.

    Continues execution even if some operations fail, returning all
    successful results along with failure information.

    Parameters
    ----------
    operations : Dict[str, Awaitable[T]]
        Dictionary mapping identifiers to async operations
    operation_type : str
        Human-readable type of operation (for logging)

    Returns
    -------
    PartialResult
        Container with successes and failures; empty when there was nothing
        to run

    Examples
    --------
    >>> operations = {uid: store(uid) for uid in ("a", "b", "c")}
    >>> result = await gather_partial(operations, "dashboard_add")
    >>> print(f"Stored {len(result.successes)}, {len(result.failures)} failed")
    """
    results = PartialResult()
    if not operations:
        return results

    tasks: Dict[str, "asyncio.Task[Any]"] = {
        identifier: asyncio.ensure_future(operation)
        for identifier, operation in operations.items()
    }

    # Wait for all to complete (including failures)
    completed = await asyncio.gather(*tasks.values(), return_exceptions=True)

    for identifier, result in zip(tasks.keys(), completed):
        if isinstance(result, Exception):
            failure = failure_from_exception(identifier, result)
            results.failures.append(failure)
            logger.warning(
                f"partial_results.{operation_type}.failed",
                extra={
                    "identifier": identifier,
                    "error_type": failure.error_type,
                    "retryable": failure.retryable,
                    "error": failure.error,
                },
            )
        else:
            results.successes.append(result)

    logger.info(
        f"partial_results.{operation_type}.complete",
        extra={
            "total": len(operations),
            "successes": len(results.successes),
            "failures": len(results.failures),
            "success_rate": results.success_rate,
        },
    )
    return results


async def gather_in_batches(
    items: Sequence[K],
    operation: Callable[[K], Awaitable[T]],
    *,
    key: Callable[[K], str],
    batch_size: int,
    operation_type: str = "operation",
) -> PartialResult:
    """Run ``operation`` over ``items`` with at most ``batch_size`` in flight.

    Batches run one after another; items inside a batch run concurrently with
    the same failure isolation as :func:`gather_partial`.
    """
    results = PartialResult()
    size = max(1, int(batch_size))
    for start in range(0, len(items), size):
        batch = items[start : start + size]
        batch_result = await gather_partial(
            {key(item): operation(item) for item in batch},
            operation_type=operation_type,
        )
        results.extend(batch_result)
    return results


def failure_from_exception(identifier: str, exc: Exception) -> FailureInfo:
    """Describe a failed operation for a :class:`PartialResult`."""
    error_type = _classify_error(exc)
    return FailureInfo(
        identifier=identifier,
        error=str(exc),
        error_type=error_type,
        retryable=_is_retryable(error_type),
    )


def _classify_error(exc: Exception) -> str:
    """Classify exception into error type."""
    error_type = "unknown_error"

    if isinstance(exc, GrafanaApiError):
        status = exc.status_code
        if status == 412:
            error_type = "precondition_failed"
        elif status >= 500:
            error_type = "server_error"
        elif status == 429:
            error_type = "rate_limit"
        elif status in (401, 403):
            error_type = "auth_error"
        elif status == 404:
            error_type = "not_found"
        else:
            error_type = "http_error"
    elif isinstance(exc, BackendQueryError):
        error_type = "backend_error"
    elif isinstance(exc, NotFoundError):
        error_type = "not_found"
    elif isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        error_type = "timeout"
    elif isinstance(exc, httpx.ConnectError):
        error_type = "connection_error"
    elif isinstance(exc, ValueError):
        error_type = "parse_error"
    elif isinstance(exc, KeyError):
        error_type = "missing_field"

    return error_type


def _is_retryable(error_type: str) -> bool:
    """Determine if an error type is retryable."""
    retryable_types = {
        "timeout",
        "connection_error",
        "server_error",
        "rate_limit",
        "backend_error",
    }
    return error_type in retryable_types


def format_failure_summary(
    result: PartialResult, operation_type: str = "operation"
) -> str:
    """
    Format a human-readable summary of partial result failures.

    Parameters
    ----------
    result : PartialResult
        The partial result to summarize
    operation_type : str
        Type of operation (for messaging)

    Returns
    -------
    str
        Formatted summary string
    """
    if not result.has_failures:
        return f"All {len(result.successes)} {operation_type}(s) succeeded."

    lines = [
        f"Partial results: {len(result.successes)} succeeded, "
        f"{len(result.failures)} failed ({result.success_rate:.1%} success rate)",
    ]

    failures_by_type: Dict[str, List[FailureInfo]] = {}
    for failure in result.failures:
        failures_by_type.setdefault(failure.error_type, []).append(failure)

    for error_type, failures in failures_by_type.items():
        count = len(failures)
        retry_note = " (retryable)" if failures[0].retryable else " (not retryable)"
        lines.append(f"  - {count} {error_type}{retry_note}")

        identifiers = [f.identifier for f in failures[:3]]
        if len(failures) > 3:
            identifiers.append(f"... and {len(failures) - 3} more")
        lines.append(f"    Affected: {', '.join(identifiers)}")

    return "\n".join(lines)
