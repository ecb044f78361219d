"""Error types raised by nimus."""


class NimusError(Exception):
    """Base class for every error nimus reports to the operator.

    ``code`` follows HTTP semantics where it applies: 404 means the resource
    is absent and 409 means it already exists.
    """

    code: int | None = None


class NotFoundError(NimusError):
    """A project, driver, instance or script does not exist."""

    code = 404


class AlreadyExistsError(NimusError):
    code = 409


class ProviderError(NimusError):
    """The cloud provider answered with an error, or could not be reached."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class OperationTimeout(NimusError, TimeoutError):
    """A provider operation did not reach DONE within the poll bound."""


class TransportError(NimusError):
    """Remote shell failure."""


class ConnectError(TransportError):
    pass


class UploadError(TransportError):
    pass


class ExecError(TransportError):
    pass


class PartialBatchFailure(NimusError):
    """Some units of a multi-item batch failed.

    Only raised after every unit has finished and been reported.
    """

    def __init__(self, failed: int, total: int):
        super().__init__(f"{failed} of {total} operations failed")
        self.failed = failed
        self.total = total


def is_not_found(exc: BaseException) -> bool:
    return getattr(exc, "code", None) == 404
