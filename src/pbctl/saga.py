"""Ordered execution of mutating steps with compensation.

A mutating operation is a list of :class:`SagaStep` objects run in order. A
step marked ``fatal`` stops the run when it fails; the compensations of the
steps that already completed then run in reverse order. A failing non-fatal
step is recorded as a warning and the run continues.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .logging import OperationScope

StepAction = Callable[[], "str | None"]
RECOVERABLE_ERRORS: tuple[type[BaseException], ...] = (RuntimeError, OSError, ValueError)


@dataclass(slots=True)
class SagaStep:
    """One side effect of a mutating operation.

    ``apply`` may return a message that is appended to the run's messages.
    """

    name: str
    apply: StepAction
    compensate: StepAction | None = None
    fatal: bool = True


@dataclass(slots=True)
class SagaOutcome:
    """What happened when a saga ran."""

    success: bool = True
    failed_step: str | None = None
    error: str | None = None
    messages: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    compensated: list[str] = field(default_factory=list)
    exception: BaseException | None = None


class Saga:
    """Run :class:`SagaStep` sequences and record them on an operation scope."""

    def __init__(self, op: OperationScope | None = None, *, prefix: str = "") -> None:
        self.op = op
        self.prefix = prefix
        self.outcome = SagaOutcome()

    def note(self, message: str) -> None:
        """Append an informational message."""
        self.outcome.messages.append(message)

    def warn(self, message: str) -> None:
        """Append a warning; it is also shown among the messages."""
        self.outcome.warnings.append(message)
        self.outcome.messages.append(f"Warning: {message}")

    def run(self, steps: Iterable[SagaStep]) -> SagaOutcome:
        """Execute *steps* in order and return the accumulated outcome."""
        applied: list[SagaStep] = []
        for step in steps:
            try:
                message = step.apply()
            except RECOVERABLE_ERRORS as exc:
                if not step.fatal:
                    self._record(step.name, "warning", str(exc))
                    self.warn(f"{step.name} failed: {exc}")
                    continue
                self._record(step.name, "error", str(exc))
                self.outcome.success = False
                self.outcome.failed_step = step.name
                self.outcome.exception = exc
                self.outcome.error = f"{step.name} failed: {exc}"
                self.outcome.messages.append(self.outcome.error)
                self._compensate(applied)
                return self.outcome
            if message:
                self.note(message)
            self._record(step.name, "success", message)
            self.outcome.completed.append(step.name)
            applied.append(step)
        return self.outcome

    def _compensate(self, applied: list[SagaStep]) -> None:
        for step in reversed(applied):
            if step.compensate is None:
                continue
            try:
                message = step.compensate()
            except RECOVERABLE_ERRORS as exc:
                self._record(f"{step.name}.compensate", "error", str(exc))
                self.warn(f"Rolling back {step.name} failed: {exc}")
                continue
            self._record(f"{step.name}.compensate", "success", message)
            self.outcome.compensated.append(step.name)
            self.note(message or f"Rolled back {step.name}.")

    def _record(self, name: str, status: str, detail: str | None) -> None:
        if self.op is None:
            return
        step_name = f"{self.prefix}.{name}" if self.prefix else name
        self.op.add_step(step_name, status=status, detail=detail)


__all__ = ["RECOVERABLE_ERRORS", "Saga", "SagaOutcome", "SagaStep"]
