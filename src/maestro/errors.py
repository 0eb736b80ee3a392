from __future__ import annotations


class MaestroError(RuntimeError):
    """Base class for orchestrator failures."""


class CollaboratorError(MaestroError):
    """Raised when the text-generation collaborator cannot produce a usable answer."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class CollaboratorTimeout(CollaboratorError):
    """Raised when a generation request exceeds its time bound."""


class CollaboratorParseFailure(CollaboratorError):
    """Raised when a generation response holds no parsable JSON of the expected kind."""


class CollaboratorProcessError(CollaboratorError):
    """Raised when the collaborator process or SDK call fails."""


class ProcessSpawnFailure(MaestroError):
    """Raised when a worker process cannot be started."""


class ProcessNonZeroExit(MaestroError):
    """Describes a worker process that exited unsuccessfully."""

    def __init__(self, task_id: str, exit_code: int | None) -> None:
        super().__init__(f"Worker for {task_id} exited with code {exit_code}")
        self.task_id = task_id
        self.exit_code = exit_code


class WorkspaceError(MaestroError):
    """Raised when a git workspace operation fails."""


class WorkspaceAcquireFailure(WorkspaceError):
    """Raised when an isolated workspace cannot be created."""


class PersistenceWriteFailure(MaestroError):
    """Raised when an orchestration record cannot be written."""

    def __init__(self, message: str, *, orchestration_id: str | None = None) -> None:
        super().__init__(message)
        self.orchestration_id = orchestration_id


class OrchestrationNotFound(MaestroError):
    def __init__(self, orchestration_id: str) -> None:
        super().__init__(f"Orchestration not found: {orchestration_id}")
        self.orchestration_id = orchestration_id


class TaskNotFound(MaestroError):
    def __init__(self, orchestration_id: str, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found in {orchestration_id}")
        self.orchestration_id = orchestration_id
        self.task_id = task_id


class InvalidRequestError(MaestroError):
    """Raised for malformed caller input such as an empty goal."""


class InvalidPhaseError(MaestroError):
    """Raised when an operation is not allowed in the orchestration's current phase."""


class PlanValidationError(MaestroError):
    """Raised when a plan's dependency graph is unusable."""

    def __init__(self, message: str, *, task_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.task_ids = list(task_ids or [])
