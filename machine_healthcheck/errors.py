"""Error taxonomy shared by the health check components"""


class HealthCheckError(Exception):
    """Base class for errors raised while reconciling a node"""


class NotFoundError(HealthCheckError):
    """The object vanished; callers treat this as the desired end state"""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} {name} not found")
        self.kind = kind
        self.name = name


class ConflictError(HealthCheckError):
    """Optimistic concurrency failure on write"""

    def __init__(self, kind: str, name: str):
        super().__init__(f"conflict updating {kind} {name}")
        self.kind = kind
        self.name = name


class BudgetExceededError(HealthCheckError):
    """No disruption is currently allowed for the machine's group"""


class ConfigParseError(HealthCheckError):
    """The unhealthy conditions configuration could not be parsed"""


class MalformedReferenceError(HealthCheckError):
    """A node carries a machine annotation that is not a valid namespace/name key"""


class MissingNodeReferenceError(HealthCheckError):
    """A machine has no node reference yet"""


# Errors that abort a single reconciliation and are re-queued with backoff.
RETRYABLE_ERRORS = (
    ConflictError,
    ConfigParseError,
    MalformedReferenceError,
    MissingNodeReferenceError,
)
