"""Custom exception hierarchy for procvigil."""


class VigilError(Exception):
    """Base for all procvigil errors."""


class NoSuchProcessError(VigilError):
    """The probed process is gone or cannot be observed by this engine."""

    def __init__(self, pid: int | str, detail: str = "") -> None:
        self.pid = pid
        message = f"No such process: {pid}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidProcessRecordError(VigilError):
    """An OS process record could not be parsed."""


class InvalidQueryError(VigilError):
    """A process listing query does not have the expected shape."""


class ProbeTimeoutError(VigilError):
    """A probe utility did not answer in time."""


class ProbeUnavailableError(VigilError):
    """No usable process-information source exists on this platform."""


class ConfigError(VigilError):
    """Invalid monitoring configuration."""
