"""Error types for the content core.

NotFound conditions are handled inside the resolver and never reach callers
of read paths. PreconditionFailed carries a user-facing message. Partial
failures are reported as values (see PropagationResult), not raised.
"""


class ContentError(RuntimeError):
    """Base class for content resolution and personalization errors."""


class NotFoundError(ContentError):
    """Raised when a plan, module, session or library entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class PreconditionFailedError(ContentError):
    """Raised when an operation cannot start. Nothing has been written."""


class IndexUnavailableError(ContentError):
    """Raised by a store when an equality query needs an index it does not have.

    Callers that can afford it fall back to a full collection scan.
    """

    def __init__(self, collection: str, field: str):
        super().__init__(f"Query on {collection}.{field} requires an index")
        self.collection = collection
        self.field = field


class BatchCommitError(ContentError):
    """Raised when an all-or-nothing batch fails. No write in the batch is visible."""


class WorkflowFailedError(ContentError):
    """Raised when a step of a multi-step workflow fails.

    Steps completed before the failure stay applied. The workflow record named
    by workflow_id can be resumed to run the remaining steps.
    """

    def __init__(self, message: str, workflow_id: str, failed_step: str, completed_steps: list[str]):
        super().__init__(message)
        self.workflow_id = workflow_id
        self.failed_step = failed_step
        self.completed_steps = completed_steps


class CrossWeekMoveError(WorkflowFailedError):
    """Raised when moving a session between weeks fails partway.

    The session may be present in both weeks or in neither until the move
    workflow is resumed.
    """
