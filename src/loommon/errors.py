"""Exception taxonomy for loommon.

Field-device errors are raised by the connection layer and caught by
the owning poll loop; they never cross machine boundaries.  Publish
and directory errors are raised by the HTTP clients.

Example:
    >>> from loommon.errors import ReadTimeoutError, FieldDeviceError
    >>> issubclass(ReadTimeoutError, FieldDeviceError)
    True
"""


class LoomError(Exception):
    """Base class for all loommon errors."""


class FieldDeviceError(LoomError):
    """A loom controller could not be reached or read."""


class DeviceConnectionError(FieldDeviceError):
    """Session to the controller could not be opened or was lost."""


class ReadTimeoutError(FieldDeviceError):
    """The controller did not answer within the read timeout."""


class ReadProtocolError(FieldDeviceError):
    """The controller answered with an exception or a short frame."""


class PublishTransportError(LoomError):
    """The collector rejected or did not receive a publish."""


class DirectoryError(LoomError):
    """The machine list could not be fetched or parsed."""
