"""Error taxonomy shared by the announcement store, the change feed and the API."""


class PortalError(Exception):
    """Base class for errors raised by the broadcast engine."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidAudienceError(PortalError):
    """A refinement does not belong to the population named by the target."""


class NotFoundError(PortalError):
    """An update or delete referenced an announcement id that does not exist."""

    def __init__(self, announcement_id: str):
        super().__init__(f"Announcement {announcement_id} not found")
        self.announcement_id = announcement_id


class UploadError(PortalError):
    """The attachment could not be stored, so the announcement was not created."""


class TransportError(PortalError):
    """The realtime transport dropped or refused a subscription channel."""
