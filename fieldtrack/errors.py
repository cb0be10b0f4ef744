class FieldTrackError(RuntimeError):
    """Base class for errors surfaced to the technician-facing layer."""

    guidance = ""

    def __init__(self, message: str = "", *, guidance: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if guidance is not None:
            self.guidance = guidance

    def user_text(self) -> str:
        if self.guidance:
            return f"{self} {self.guidance}"
        return str(self)


class PermissionDenied(FieldTrackError):
    guidance = "Share your location with the bot once (attach → Location) to grant access."


class ServicesDisabled(FieldTrackError):
    guidance = "Turn on location services and start sharing your live location."


class LocationUnavailable(FieldTrackError):
    guidance = (
        "Make sure location services are on, move closer to a window or outdoors "
        "for a better signal, or restart your device and try again."
    )


class NotConnected(FieldTrackError):
    guidance = "Check your connection and try again."


class ConnectionLost(FieldTrackError):
    guidance = "Log in again when you are back online."


class JobMismatch(FieldTrackError):
    pass


class SessionBusy(FieldTrackError):
    guidance = "Stop the current tracking session first."


class OperationInProgress(FieldTrackError):
    guidance = "Please wait for the previous request to finish."


class ExternalServiceError(FieldTrackError):
    def __init__(self, message: str = "", *, status: int | None = None, guidance: str | None = None) -> None:
        super().__init__(message, guidance=guidance)
        self.status = status


class ApiUnavailableError(ExternalServiceError):
    guidance = "The job service is temporarily unavailable. Try again in a minute."


class TrackingStopFailed(FieldTrackError):
    """The job was completed but its tracking session did not stop cleanly."""

    def __init__(self, message: str, *, job) -> None:
        super().__init__(message)
        self.job = job
