"""Exception taxonomy for the alert engine."""


class AlertEngineError(Exception):
    """Base class for all engine errors."""
    pass


class DataAccessError(AlertEngineError):
    """A data store query failed. The condition that issued it fails closed."""
    pass


class ConditionEvaluationError(AlertEngineError):
    """A condition is malformed. The whole rule fails closed."""
    pass


class DispatchError(AlertEngineError):
    """One action failed. Sibling actions still run."""
    pass


class DeliveryError(AlertEngineError):
    """A notification channel could not deliver to one recipient."""
    pass


class EngineFatalError(AlertEngineError):
    """The rules store is unreachable; the last-known-good rule set stays in use."""
    pass
