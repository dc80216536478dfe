from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Union

from tickq.jobs.errors import JobCanceledError, UnknownJobTypeError


@dataclass(frozen=True)
class JobContext:
    """What a handler sees of the job it is executing."""

    job_id: str
    job_type: str
    payload: dict[str, Any]
    attempt: int
    max_attempts: int
    runner_id: str
    _heartbeat: Callable[[], bool] = field(repr=False, default=lambda: True)
    _cancel_check: Callable[[], bool] = field(repr=False, default=lambda: False)

    def heartbeat(self) -> bool:
        """Record liveness so recovery leaves the row alone; False once this runner lost the lease."""
        return self._heartbeat()

    def is_cancel_requested(self) -> bool:
        return self._cancel_check()

    def raise_if_cancel_requested(self) -> None:
        if self._cancel_check():
            raise JobCanceledError(f"Cancellation requested for job {self.job_id}")


HandlerResult = Union[dict[str, Any], None]
JobHandler = Callable[[JobContext], Union[HandlerResult, Awaitable[HandlerResult]]]


class HandlerRegistry:
    """Static mapping from job type to handler, frozen once the application has started."""

    def __init__(self, name: str = "Job"):
        self.name = name
        self._handlers: dict[str, JobHandler] = {}
        self._frozen = False

    def register(self, job_type: str, handler: JobHandler) -> None:
        normalized = job_type.strip()
        if not normalized:
            raise ValueError("job_type cannot be blank")
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{normalized}' in {self.name.lower()} registry: registry is frozen"
            )
        self._handlers[normalized] = handler

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        def decorator(func: JobHandler) -> JobHandler:
            self.register(job_type, func)
            return func

        return decorator

    def get(self, job_type: str) -> JobHandler:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobTypeError(f"No {self.name.lower()} handler registered for type: {job_type}") from None

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def list(self) -> list[str]:
        return sorted(self._handlers)

    def validate(self, job_types: Iterable[str]) -> None:
        missing = sorted({job_type for job_type in job_types if job_type not in self._handlers})
        if missing:
            raise UnknownJobTypeError(f"Unregistered job types: {', '.join(missing)}")

    def freeze(self) -> None:
        self._frozen = True

    def is_frozen(self) -> bool:
        return self._frozen


job_registry = HandlerRegistry()
