"""Exception hierarchy shared by every vmpilot component.

Each failure is scoped to the single intent being serviced; nothing here is
meant to terminate the process.
"""
from typing import Optional


class VMPilotError(RuntimeError):
    pass


class ConfigError(VMPilotError):
    """Registry document missing, malformed or invalid."""


class ConfigNotFoundError(ConfigError):
    pass


class ConfigParseError(ConfigError):
    pass


class ConfigValidationError(ConfigError):
    pass


class ConfigWriteError(ConfigError):
    pass


class ProviderConfigError(ConfigError):
    """The configured recommendation provider id is not known."""


class NotFoundError(VMPilotError):
    def __init__(self, vm_name: Optional[str], message: Optional[str] = None):
        self.vm_name = vm_name
        super().__init__(message or f"VM '{vm_name}' not found")


class StateConflictError(VMPilotError):
    pass


class AlreadyRunningError(StateConflictError):
    pass


class NotRunningError(StateConflictError):
    pass


class ResourceLimitError(VMPilotError):
    pass


class InvalidRequestError(VMPilotError, ValueError):
    pass


class NoChangeRequestedError(InvalidRequestError):
    pass


class ProcessError(VMPilotError):
    """Launch or signal delivery failed at the OS level."""


class LaunchError(ProcessError):
    pass


class PIDFileUnreadableError(ProcessError):
    pass


class SignalError(ProcessError):
    pass


class ProviderError(VMPilotError):
    """A recommendation backend was unreachable or answered with an error."""
