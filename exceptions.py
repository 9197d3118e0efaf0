"""Exception types for the smart charging components.

Both concrete errors also derive from ValueError so callers that already
catch ValueError around profile parsing keep working.
"""


class SmartChargingError(Exception):
    """Base exception for smart charging components."""
    pass


class ProfileValidationError(SmartChargingError, ValueError):
    """Raised when a charging profile payload is malformed."""

    def __init__(self, message=None, field=None):
        if message is None:
            if field:
                message = f"Invalid charging profile field: {field}"
            else:
                message = "Invalid charging profile"
        super().__init__(message)
        self.field = field


class ConfigurationError(SmartChargingError, ValueError):
    """Raised when station configuration (ceilings, timezone) is unusable."""

    def __init__(self, component=None, message=None):
        if message is None:
            if component:
                message = f"Configuration error in {component}"
            else:
                message = "Station configuration error"
        super().__init__(message)
        self.component = component
