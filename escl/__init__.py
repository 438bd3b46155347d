"""eSCL (AirScan) network scanner client."""

__version__ = "0.2.0"

from .errors import (
    AcquisitionError,
    DeviceBusyError,
    EsclError,
    InvalidJobStateError,
    InvalidParameterError,
    OperationCanceledError,
    ProtocolError,
    SearchCanceledError,
    UnsupportedDeviceError,
)
from .models import (
    END_OF_JOB,
    AcquiredImage,
    CapabilitySet,
    ColorMode,
    Device,
    DeviceId,
    DocumentFormat,
    InputSource,
    JobState,
    ScanJob,
    ScanJobRequest,
)

__all__ = [
    "__version__",
    "AcquisitionError",
    "DeviceBusyError",
    "EsclError",
    "InvalidJobStateError",
    "InvalidParameterError",
    "OperationCanceledError",
    "ProtocolError",
    "SearchCanceledError",
    "UnsupportedDeviceError",
    "END_OF_JOB",
    "AcquiredImage",
    "CapabilitySet",
    "ColorMode",
    "Device",
    "DeviceId",
    "DocumentFormat",
    "InputSource",
    "JobState",
    "ScanJob",
    "ScanJobRequest",
]
