"""Error taxonomy shared by the HTTP surface and the real-time channel."""


class GatewayError(Exception):
    status_code = 500
    code = "GATEWAY_ERROR"

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class AuthenticationError(GatewayError):
    status_code = 401
    code = "UNAUTHORIZED"


class PermissionDenied(GatewayError):
    status_code = 403
    code = "FORBIDDEN"


class NoActiveSession(GatewayError):
    status_code = 404
    code = "NO_ACTIVE_SESSION"

    def __init__(self, message: str = "No active broadcast session"):
        super().__init__(message)


class PresenterConflict(GatewayError):
    """Another presenter holds the broadcast slot."""

    status_code = 409
    code = "PRESENTER_CONFLICT"

    def __init__(self, presenter: str):
        super().__init__(f"Another presenter ({presenter}) is currently live. Please try again later.")
        self.presenter = presenter


class InvalidRequest(GatewayError):
    status_code = 400
    code = "INVALID_REQUEST"


class InvalidFormat(GatewayError):
    status_code = 400
    code = "INVALID_FORMAT"


class JobNotFound(GatewayError):
    status_code = 404
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__("Job not found")
        self.job_id = job_id


class ConversionFailed(GatewayError):
    status_code = 500
    code = "CONVERSION_FAILED"


class RecordingNotFound(ConversionFailed):
    def __init__(self, recording_id: str):
        super().__init__("Recording not found")
        self.recording_id = recording_id


class CommandError(GatewayError):
    """A control message that could not be decoded."""

    status_code = 400
    code = "INVALID_COMMAND"


class TranscodeError(GatewayError):
    code = "TRANSCODE_FAILED"


class StorageError(GatewayError):
    code = "STORAGE_FAILED"
