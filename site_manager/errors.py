class SiteManagerError(Exception):
    """Base class for failures reported to the operator."""


class ValidationError(SiteManagerError):
    """Malformed input, raised before anything is touched."""


class PreconditionError(SiteManagerError):
    """The host is not in the state required to continue."""


class ExternalCommandError(SiteManagerError):
    def __init__(self, command: str, exited: int | None, output: str = ""):
        self.command = command
        self.exited = exited
        self.output = output
        status = "timed out" if exited is None else f"exit {exited}"
        message = f"Command failed ({status}): {command}"
        if output.strip():
            message += f"\n{output.strip()}"
        super().__init__(message)


class DatabaseUnavailable(SiteManagerError):
    """The database server cannot be used; deployment continues without it."""
