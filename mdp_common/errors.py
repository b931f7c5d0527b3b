"""
Error taxonomy shared by the control plane, the agent and the build worker.

Every error raised on purpose by platform code derives from MDPError so that
callers (most notably the HTTP layer) can map them to responses in one place.
"""


class MDPError(Exception):
    """Base class for all platform errors."""


class NotFoundError(MDPError):
    """The requested entity does not exist."""


class AlreadyExistsError(MDPError):
    """An entity with the same ID is already stored."""


class ValidationError(MDPError):
    """Caller supplied input that cannot be accepted."""


class PersistenceError(MDPError):
    """
    The state snapshot could not be read or written.

    A mutation that raises this error has not happened: the store rolls back
    its in-memory change before raising.
    """


class NoJobAvailable(MDPError):
    """
    No pending build job could be claimed.

    This is the expected empty-queue signal, not a fault.
    """


class RuntimeCommandError(MDPError):
    """A container runtime invocation exited unsuccessfully."""

    def __init__(self, args: list[str], returncode: int | None, stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        message = f"`{' '.join(self.command)}` failed"
        if returncode is not None:
            message += f" with exit code {returncode}"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)


class SignatureError(MDPError):
    """A webhook signature is missing, malformed or does not match."""


class ControlPlaneError(MDPError):
    """
    A request to the control-plane API failed.

    ``status_code`` is None when no HTTP response was received or the response
    body could not be interpreted.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
