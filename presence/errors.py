class PresenceError(Exception):
    """Base class for presence tracking failures."""


class ConfigurationError(PresenceError):
    """Store URL/credentials missing. Cannot self-heal, never retried."""


class StoreUnavailable(PresenceError):
    """Transient network or store fault."""


class InvalidRequest(PresenceError):
    """Malformed body or unknown action."""
