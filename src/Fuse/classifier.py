# === NAVMAP v1 ===
# {
#   "module": "Fuse.classifier",
#   "purpose": "Decide which errors count toward a breaker's failure tally",
#   "sections": [
#     {"id": "failureclassifier", "name": "FailureClassifier", "anchor": "class-failureclassifier", "kind": "class"},
#     {"id": "status-of", "name": "status_of", "anchor": "function-status-of", "kind": "function"},
#     {"id": "defaultfailureclassifier", "name": "DefaultFailureClassifier", "anchor": "class-defaultfailureclassifier", "kind": "class"},
#     {"id": "predicateclassifier", "name": "PredicateClassifier", "anchor": "class-predicateclassifier", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Failure classification for breaker accounting.

Not every error from a dependency says the dependency is unhealthy. A
rate-limit answer means it is already protecting itself, and 401/403 point at
caller-side credentials. Errors rejected here still count as attempts, which
dilutes the failure rate instead of hiding the call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

import httpx

from Fuse.errors import RateLimitedError

__all__ = [
    "DEFAULT_EXCLUDED_STATUSES",
    "FailureClassifier",
    "DefaultFailureClassifier",
    "PredicateClassifier",
    "status_of",
]

DEFAULT_EXCLUDED_STATUSES = frozenset({401, 403, 429})


class FailureClassifier(Protocol):
    """Return True when ``exc`` should count as a dependency failure."""

    def should_count(self, exc: BaseException) -> bool: ...


def status_of(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status extraction from an exception."""

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class DefaultFailureClassifier:
    """Exclude rate limiting and auth failures; count everything else."""

    excluded_statuses: frozenset[int] = DEFAULT_EXCLUDED_STATUSES
    excluded_exceptions: Tuple[type, ...] = (RateLimitedError,)

    def should_count(self, exc: BaseException) -> bool:
        if self.excluded_exceptions and isinstance(exc, self.excluded_exceptions):
            return False
        status = status_of(exc)
        if status is not None and status in self.excluded_statuses:
            return False
        return True


@dataclass(frozen=True)
class PredicateClassifier:
    """Adapt a plain callable into a :class:`FailureClassifier`."""

    predicate: Callable[[BaseException], bool]

    def should_count(self, exc: BaseException) -> bool:
        return bool(self.predicate(exc))
