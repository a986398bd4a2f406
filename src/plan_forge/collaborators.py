"""Capability interfaces for the external generator and reviewer, plus the
bounded retry policy applied to every call made through them."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import CollaboratorError
from .models import Plan, ReviewResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_BACKOFF_SECONDS = 30.0


class PlanGenerator(Protocol):
    def generate_plan(self, task: str, prior_plan: Plan | None, feedback: str | None) -> Plan: ...


class PlanReviewer(Protocol):
    def review_plan(self, plan: Plan) -> ReviewResult: ...


def workspace_file_exists(root: Path) -> Callable[[str], bool]:
    """Grounding oracle over a working tree. Paths outside ``root`` never exist."""
    base = Path(root).resolve()

    def file_exists(path: str) -> bool:
        candidate = (base / path).resolve()
        if candidate != base and base not in candidate.parents:
            return False
        return candidate.exists()

    return file_exists


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, CollaboratorError) and exc.transient


def call_with_retry(
    func: Callable[[], T],
    *,
    failure_type: type[CollaboratorError],
    retries: int,
    backoff_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func``, retrying transient collaborator failures.

    ``retries`` counts extra attempts after the first. Exceptions that are
    not ``CollaboratorError`` are wrapped in ``failure_type`` as fatal.
    The last failure propagates once attempts run out.
    """

    def attempt() -> T:
        try:
            return func()
        except CollaboratorError:
            raise
        except Exception as exc:
            raise failure_type(f"{failure_type.collaborator} call failed: {exc}") from exc

    retrying = Retrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=backoff_seconds, min=backoff_seconds, max=_MAX_BACKOFF_SECONDS),
        retry=retry_if_exception(_is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    return retrying(attempt)
