"""Error types raised by the preview orchestrator and its collaborators."""


class PreviewError(Exception):
    """Base class for all preview errors."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class CloneFailedError(PreviewError):
    """The source tree for the requested ref could not be produced."""


class PortExhaustedError(PreviewError):
    """No host port in the configured range passed every availability check."""

    def __init__(self, min_port: int, max_port: int) -> None:
        super().__init__(f"No free host port in range {min_port}-{max_port}")
        self.min_port = min_port
        self.max_port = max_port


class BuildFailedError(PreviewError):
    """Image build exited with a non-zero status."""


class RunFailedError(PreviewError):
    """Container start exited with a non-zero status."""

    def __init__(self, detail: str, port_in_use: bool = False) -> None:
        super().__init__(detail)
        self.port_in_use = port_in_use


class ContainerRemoveError(PreviewError):
    """A container could not be removed. Never aborts a transition."""


class ForbiddenError(PreviewError):
    """Caller does not own the project the preview belongs to."""


class NotFoundError(PreviewError):
    """Unknown preview or project."""


class BuildInProgressError(PreviewError):
    """A build attempt for the preview is already running."""


class PreviewDeletedError(PreviewError):
    """The preview is deleted and accepts no further builds."""
