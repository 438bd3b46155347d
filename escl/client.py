"""HTTP transport for the eSCL endpoints of one device."""

import logging
import threading
from urllib.parse import urljoin

import requests

from .config import ScannerSettings
from .errors import DeviceBusyError, ProtocolError
from .models import InputSource

logger = logging.getLogger(__name__)

NS_SCAN = "http://schemas.hp.com/imaging/escl/2011/05/03"
NS_PWG = "http://www.pwg.org/schemas/2010/12/sm"

# A4 in 1/300 inch, used when the device does not report its maximum area
DEFAULT_WIDTH = 2480
DEFAULT_HEIGHT = 3508

SCAN_SETTINGS = """<?xml version="1.0" encoding="UTF-8"?>
<scan:ScanSettings xmlns:scan="{ns_scan}" xmlns:pwg="{ns_pwg}">
  <pwg:Version>2.0</pwg:Version>
{intent}  <pwg:ScanRegions>
    <pwg:ScanRegion>
      <pwg:Height>{height}</pwg:Height>
      <pwg:Width>{width}</pwg:Width>
      <pwg:XOffset>0</pwg:XOffset>
      <pwg:YOffset>0</pwg:YOffset>
      <pwg:ContentRegionUnits>escl:ThreeHundredthsOfInches</pwg:ContentRegionUnits>
    </pwg:ScanRegion>
  </pwg:ScanRegions>
  <pwg:InputSource>{input_source}</pwg:InputSource>
{duplex}  <pwg:DocumentFormat>{document_format}</pwg:DocumentFormat>
  <scan:DocumentFormatExt>{document_format}</scan:DocumentFormatExt>
  <scan:XResolution>{resolution}</scan:XResolution>
  <scan:YResolution>{resolution}</scan:YResolution>
  <scan:ColorMode>{color_mode}</scan:ColorMode>
</scan:ScanSettings>"""


def build_scan_settings(request, capabilities=None):
    """Render a fully resolved ScanJobRequest as a scan:ScanSettings document."""
    width = (capabilities and capabilities.max_width) or DEFAULT_WIDTH
    height = (capabilities and capabilities.max_height) or DEFAULT_HEIGHT
    intent = f"  <scan:Intent>{request.intent}</scan:Intent>\n" if request.intent else ""
    duplex = ""
    if request.input_source is InputSource.FEEDER:
        duplex = f"  <scan:Duplex>{'true' if request.duplex else 'false'}</scan:Duplex>\n"
    return SCAN_SETTINGS.format(
        ns_scan=NS_SCAN,
        ns_pwg=NS_PWG,
        intent=intent,
        width=width,
        height=height,
        input_source=request.input_source.value,
        duplex=duplex,
        document_format=request.document_format.value,
        resolution=request.resolution,
        color_mode=request.color_mode.value,
    )


class EsclClient:
    """
    Talks to the eSCL root of one scanner.
    Example base URL: http://192.168.1.100:8080/eSCL

    The client owns one requests.Session; close it (or use it as a context
    manager) when the device session ends.
    """

    def __init__(self, base_url, settings=None, session=None):
        self.base_url = base_url.rstrip("/")
        self.settings = settings or ScannerSettings()
        self.http = session if session is not None else requests.Session()
        self.http.verify = self.settings.verify_tls
        self.closed = False

    def url(self, path):
        return f"{self.base_url}/{path}"

    def get_capabilities(self):
        return self._get_document("ScannerCapabilities")

    def get_status(self):
        return self._get_document("ScannerStatus")

    def create_job(self, settings_xml):
        """POST scan settings and return the absolute URL of the new job."""
        url = self.url("ScanJobs")
        logger.debug(f"Sending scan request: {url}")
        headers = {"Content-Type": "text/xml"}
        try:
            r = self.http.post(url, data=settings_xml.encode("utf-8"), headers=headers,
                               timeout=self.settings.request_timeout)
        except requests.RequestException as e:
            raise ProtocolError(f"Scan job request to {url} failed") from e

        # 201 is not followed by requests, so the Location header is still ours
        if r.status_code == 503:
            raise DeviceBusyError(f"Device at {self.base_url} is busy")
        if r.status_code not in (200, 201):
            raise ProtocolError(f"Device rejected scan job: HTTP {r.status_code} {r.reason or ''}".rstrip())
        location = r.headers.get("Location")
        if not location:
            raise ProtocolError("Device accepted scan job but sent no Location header")
        return urljoin(self.base_url + "/", location).rstrip("/")

    def next_document(self, job_url):
        """Open a streaming GET for the next document of a job.

        The response is returned unread; the caller checks the status and
        must close it.
        """
        url = f"{job_url}/NextDocument"
        logger.debug(f"Polling: {url}")
        try:
            return self.http.get(url, stream=True, timeout=self.settings.document_timeout)
        except requests.RequestException as e:
            raise ProtocolError(f"Request for next document failed: {url}") from e

    def delete_job(self, job_url):
        logger.debug(f"Canceling job: {job_url}")
        try:
            r = self.http.delete(job_url, timeout=self.settings.request_timeout)
        except requests.RequestException as e:
            raise ProtocolError(f"Cancel request for {job_url} failed") from e
        # 404 means the device already dropped the job
        if r.status_code not in (200, 204, 404):
            raise ProtocolError(f"Device refused to cancel job: HTTP {r.status_code}")

    def close(self):
        if not self.closed:
            self.http.close()
            self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _get_document(self, path):
        url = self.url(path)
        logger.debug(f"Querying {url}")
        try:
            r = self.http.get(url, timeout=self.settings.request_timeout)
        except requests.RequestException as e:
            raise ProtocolError(f"Request to {url} failed") from e
        if r.status_code != 200:
            raise ProtocolError(f"Unexpected response from {url}: HTTP {r.status_code}")
        return r.content


def job_id_from_url(job_url):
    return job_url.rstrip("/").rsplit("/", 1)[-1]


class ClientPool:
    """One EsclClient per device, opened on first use and closed explicitly."""

    def __init__(self, settings=None, session_factory=None):
        self.settings = settings or ScannerSettings()
        self.session_factory = session_factory or requests.Session
        self._clients = {}
        self._urls = {}
        self._lock = threading.Lock()

    def get(self, device):
        with self._lock:
            self._urls[device.id] = device.base_url
            return self._open(device.id)

    def for_id(self, device_id):
        with self._lock:
            if device_id not in self._urls:
                raise KeyError(f"Unknown device: {device_id}")
            return self._open(device_id)

    def close(self, device):
        with self._lock:
            client = self._clients.pop(device.id, None)
        if client is not None:
            logger.debug(f"Closing HTTP session for {device.name}")
            client.close()

    def close_all(self):
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()

    def _open(self, device_id):
        client = self._clients.get(device_id)
        if client is None or client.closed:
            client = EsclClient(self._urls[device_id], self.settings, session=self.session_factory())
            self._clients[device_id] = client
        return client
