"""Error taxonomy for the memory and graph engine.

Provider and store failures are expected to be caught at operation
boundaries and degraded; ``AuthorizationError`` must always reach the caller.
"""


class ReadmindError(Exception):
    """Base class for all engine errors."""


class ProviderUnavailable(ReadmindError):
    """The embedding model or the extraction LLM could not be reached."""


class EmbeddingUnavailable(ProviderUnavailable):
    """The embedding provider failed or returned an unusable vector."""


class MalformedExtraction(ReadmindError):
    """The extraction LLM returned output that does not parse."""


class StoreFailure(ReadmindError):
    """A read or write against the relational/vector store failed."""


class DuplicateRecord(StoreFailure):
    """A write collided with a uniqueness constraint (a concurrent writer won)."""


class AuthorizationError(ReadmindError):
    """The requested resource does not belong to the calling owner."""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} is not accessible to this owner")


class BudgetExceeded(ReadmindError):
    """Context packing reached its token budget.

    This is a normal terminal condition of packing and is never surfaced
    to API callers.
    """

    def __init__(self, budget: int, used: int):
        self.budget = budget
        self.used = used
        super().__init__(f"token budget {budget} reached at {used}")
