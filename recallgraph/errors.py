"""Exception hierarchy for recallgraph.

Graph reads and searches degrade instead of raising; these errors are for
the paths that must not be silently swallowed (relationship creation,
feedback, a broken backing store).
"""


class RecallGraphError(Exception):
    """Base class for all recallgraph errors."""
    pass


class ValidationError(RecallGraphError, ValueError):
    """Input rejected before any write happened."""
    pass


class MissingEndpointError(ValidationError):
    """A relationship endpoint entity does not exist."""

    def __init__(self, source_entity_id: str, target_entity_id: str, missing: list[str]):
        self.source_entity_id = source_entity_id
        self.target_entity_id = target_entity_id
        self.missing = missing
        super().__init__(
            f"Missing relationship endpoint(s): {', '.join(missing)} "
            f"({source_entity_id} -> {target_entity_id})"
        )


class NotFoundError(RecallGraphError, LookupError):
    """A referenced item does not exist."""
    pass


class UnknownQueryError(NotFoundError):
    """Feedback was submitted for a query id that is not in the history."""

    def __init__(self, query_id: str):
        self.query_id = query_id
        super().__init__(f"Query {query_id} not found in history")


class CollaboratorUnavailable(RecallGraphError):
    """An external collaborator (embedding model, vector index, learning or
    ranking service) failed or timed out."""

    def __init__(self, collaborator: str, cause: BaseException | None = None):
        self.collaborator = collaborator
        self.cause = cause
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"{collaborator} unavailable{detail}")


class StoreError(RecallGraphError):
    """The backing store failed. There is no local fallback for this."""
    pass
