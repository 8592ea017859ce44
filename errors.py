"""Error taxonomy for the kiosk controller."""


class KioskError(Exception):
    """Base class for errors reported back to a caller."""


class ValidationError(KioskError):
    """Input rejected at the boundary; never persisted."""


class PlaylistIndexError(ValidationError):
    """Playlist index outside the current range."""


class ConfigWriteError(KioskError):
    """The configuration document could not be replaced atomically."""


class BrowserNotFoundError(KioskError):
    """No usable browser binary on this system."""


class BrowserControlError(KioskError):
    """A remote-debugging call failed or returned something unusable."""


class StepFailedError(KioskError):
    """A multi-step operation stopped part way through."""

    def __init__(self, message, failed_step, completed, cause=None):
        super().__init__(message)
        self.failed_step = failed_step
        self.completed = completed
        self.cause = cause
