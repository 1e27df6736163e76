"""Error taxonomy for collection, persistence and registration."""


class CollectorError(Exception):
    """Base class for all collector errors."""
    pass


class AuthError(CollectorError):
    """Login to the metering portal failed (bad credentials or changed login flow)."""
    pass


class FetchError(CollectorError):
    """Device data could not be retrieved or was malformed."""
    pass


class StoreError(CollectorError):
    """Snapshot persistence failed."""
    pass


class ValidationError(CollectorError):
    """Dormitory registration input was rejected."""
    pass


class UnknownEntityError(CollectorError):
    """No dormitory is registered under the requested id."""
    pass
