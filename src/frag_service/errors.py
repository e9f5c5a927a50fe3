"""Error taxonomy shared by the converter, the upload handling and the HTTP layer.

Each error carries the HTTP status code it maps to; the status discriminator
("fail" for client faults, "error" for everything else) follows from it.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"


class ValidationError(ServiceError):
    status_code = 400


class PayloadTooLargeError(ValidationError):
    status_code = 413


class NotFoundError(ServiceError):
    status_code = 404


class NotInitializedError(ServiceError):
    pass


class InitializationError(ServiceError):
    pass


class ConversionError(ServiceError):
    pass
