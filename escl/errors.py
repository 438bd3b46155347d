"""Errors raised by the eSCL client.

Every error keeps the exception that caused it (``raise ... from ...``) so a
transport failure can be reported as one multi-line message:

    AcquisitionError -> ProtocolError -> requests.ConnectionError
"""


class EsclError(Exception):
    """Base class for eSCL client errors"""


class ProtocolError(EsclError):
    """The device answered with something unexpected, or did not answer at all"""


class UnsupportedDeviceError(ProtocolError):
    """The capability document lacks fields a scan job needs"""


class InvalidParameterError(EsclError):
    """A scan request holds a value the device does not support"""

    def __init__(self, message, field=None, value=None):
        super().__init__(message)
        self.field = field
        self.value = value


class DeviceBusyError(EsclError):
    """The device already runs a scan job"""


class AcquisitionError(EsclError):
    """Retrieving a document from an active job failed"""

    def __init__(self, message, job=None):
        super().__init__(message)
        self.job = job


class InvalidJobStateError(EsclError):
    """The job is not in a state that allows the requested operation"""


class SearchCanceledError(EsclError):
    """Device search was stopped by the caller"""


class OperationCanceledError(EsclError):
    """A job operation was stopped by the caller"""


def iter_causes(exc):
    """Yield the exception followed by every exception it was raised from."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def full_message(exc):
    """Build a multi-line message from an exception and its causes."""
    lines = []
    for i, err in enumerate(iter_causes(exc)):
        text = str(err) or type(err).__name__
        lines.append(text if i == 0 else f"Inner exception: {text}")
    return "\n".join(lines)
