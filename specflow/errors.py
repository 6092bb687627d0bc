"""Error taxonomy shared by workflows, steps, tools and the HTTP boundary.

- NotFoundError: a referenced Thread/Spec/Job/Run does not exist
- ExternalServiceError: sandbox, model inference, GitHub or search call failed
- ValidationError: malformed input or an illegal state transition
- ResumeInconsistencyError: a replayed checkpoint does not match the workflow body
- RunFailedError: an awaited workflow run ended in failure
"""

from __future__ import annotations


class SpecflowError(Exception):
    """Base class for all domain errors."""


class NotFoundError(SpecflowError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ExternalServiceError(SpecflowError):
    """An external collaborator (sandbox, model, GitHub, search) failed."""

    def __init__(self, service: str, message: str, status_code: int | None = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class ValidationError(SpecflowError):
    """Input rejected at a tool or HTTP boundary."""


class InvalidTransitionError(ValidationError):
    """A Thread or Job was asked to move to a state it cannot reach."""

    def __init__(self, entity: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")


class ResumeInconsistencyError(SpecflowError):
    """Replay met a checkpoint recorded by a different step.

    Step names and output shapes are part of the durable contract; changing
    them while runs are in flight corrupts replay.
    """

    def __init__(self, run_id: str, sequence: int, expected: str, found: str):
        self.run_id = run_id
        self.sequence = sequence
        super().__init__(
            f"Run {run_id} step #{sequence}: workflow issued '{expected}' "
            f"but checkpoint was recorded by '{found}'"
        )


class StepError(SpecflowError):
    """An unexpected exception escaped a step."""

    def __init__(self, step_name: str, message: str):
        self.step_name = step_name
        super().__init__(f"Step '{step_name}' failed: {message}")


class LeaseLostError(SpecflowError):
    """Another executor owns the run."""


class AgentIncompleteError(SpecflowError):
    """The agent halted without calling its terminal tool."""

    def __init__(self, halt_reason: str):
        self.halt_reason = halt_reason
        super().__init__(f"Agent halted without completion ({halt_reason})")


class RunFailedError(SpecflowError):
    """A workflow run finished in the failed status."""

    def __init__(self, run_id: str, message: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} failed: {message}")
