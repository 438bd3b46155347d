"""Value types shared by the eSCL client components."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlparse


class ColorMode(str, Enum):
    BLACK_AND_WHITE_1 = "BlackAndWhite1"
    GRAYSCALE_8 = "Grayscale8"
    GRAYSCALE_16 = "Grayscale16"
    RGB_24 = "RGB24"
    RGB_48 = "RGB48"

    def __str__(self):
        return self.value


class DocumentFormat(str, Enum):
    JPEG = "image/jpeg"
    PDF = "application/pdf"
    OCTET_STREAM = "application/octet-stream"

    @property
    def label(self) -> str:
        return {"image/jpeg": "JPEG", "application/pdf": "PDF"}.get(self.value, "OctetStream")

    def __str__(self):
        return self.label


class InputSource(str, Enum):
    FLATBED = "Platen"
    FEEDER = "Feeder"

    def __str__(self):
        return "flatbed" if self is InputSource.FLATBED else "feeder"


class JobState(str, Enum):
    IDLE = "idle"
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.CANCELED, JobState.FAILED)


@dataclass(frozen=True)
class DeviceId:
    host: str
    instance: str

    def __str__(self):
        return f"{self.instance}@{self.host}"


@dataclass(frozen=True)
class Device:
    """A scanner reachable over eSCL.

    ``base_url`` points at the eSCL root, e.g. ``http://192.168.1.100:8080/eSCL``.
    The source flags come from the mDNS advertisement and are only hints;
    the capability document is authoritative.
    """

    id: DeviceId
    name: str
    base_url: str
    uuid: Optional[str] = None
    advertised_flatbed: bool = False
    advertised_feeder: bool = False
    advertised_duplex: bool = False

    @property
    def host(self) -> str:
        return self.id.host

    @classmethod
    def from_url(cls, url: str, name: Optional[str] = None) -> "Device":
        """Build a device from a known eSCL URL, skipping discovery."""
        if not url.startswith(("http://", "https://")):
            url = "http://" + url
        url = url.rstrip("/")
        if not url.endswith("/eSCL"):
            url += "/eSCL"
        host = urlparse(url).hostname or url
        return cls(id=DeviceId(host=host, instance=host), name=name or host, base_url=url)


PREFERRED_RESOLUTION = 300


@dataclass(frozen=True)
class ScanJobRequest:
    """Scan settings for one job. ``None`` keeps the device default."""

    input_source: Optional[InputSource] = None
    intent: Optional[str] = None
    color_mode: Optional[ColorMode] = None
    resolution: Optional[int] = None
    document_format: Optional[DocumentFormat] = None
    duplex: bool = False


@dataclass(frozen=True)
class CapabilitySet:
    make_and_model: str = ""
    intents: Tuple[str, ...] = ()
    color_modes: Tuple[ColorMode, ...] = ()
    resolutions: Tuple[int, ...] = ()
    document_formats: Tuple[DocumentFormat, ...] = ()
    has_flatbed: bool = False
    has_feeder: bool = False
    has_duplex: bool = False
    max_width: Optional[int] = None
    max_height: Optional[int] = None

    @property
    def input_sources(self) -> Tuple[InputSource, ...]:
        sources = []
        if self.has_flatbed:
            sources.append(InputSource.FLATBED)
        if self.has_feeder:
            sources.append(InputSource.FEEDER)
        return tuple(sources)

    def default_request(self) -> ScanJobRequest:
        """Settings the device uses for anything the caller leaves unselected."""
        if PREFERRED_RESOLUTION in self.resolutions:
            resolution = PREFERRED_RESOLUTION
        else:
            lower = [r for r in self.resolutions if r < PREFERRED_RESOLUTION]
            resolution = max(lower) if lower else (self.resolutions[0] if self.resolutions else None)
        color_mode = ColorMode.RGB_24 if ColorMode.RGB_24 in self.color_modes else _first(self.color_modes)
        document_format = (
            DocumentFormat.JPEG if DocumentFormat.JPEG in self.document_formats else _first(self.document_formats)
        )
        return ScanJobRequest(
            input_source=_first(self.input_sources),
            intent=_first(self.intents),
            color_mode=color_mode,
            resolution=resolution,
            document_format=document_format,
            duplex=False,
        )

    def resolve(self, request: ScanJobRequest) -> ScanJobRequest:
        """Fill the unselected fields of ``request`` with the device defaults."""
        defaults = self.default_request()
        return replace(
            request,
            input_source=request.input_source or defaults.input_source,
            intent=request.intent or defaults.intent,
            color_mode=request.color_mode or defaults.color_mode,
            resolution=request.resolution or defaults.resolution,
            document_format=request.document_format or defaults.document_format,
        )


def _first(values):
    return values[0] if values else None


@dataclass(frozen=True)
class ScanJob:
    job_id: str
    job_url: str
    device_id: DeviceId
    document_format: DocumentFormat = DocumentFormat.JPEG


@dataclass(frozen=True)
class AcquiredImage:
    """One scanned document.

    Raw images (octet-stream) and encoded files (JPEG, PDF) share this type;
    the bytes are exactly what the device sent.
    """

    data: bytes = field(repr=False)
    document_format: DocumentFormat
    index: int
    content_type: Optional[str] = None

    @property
    def is_raw(self) -> bool:
        return self.document_format is DocumentFormat.OCTET_STREAM

    @property
    def file_extension(self) -> str:
        return ".pdf" if self.document_format is DocumentFormat.PDF else ".jpg"

    def __len__(self):
        return len(self.data)


class _EndOfJob:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "END_OF_JOB"

    def __bool__(self):
        return False


END_OF_JOB = _EndOfJob()
