from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from escl.capabilities import parse_capabilities
from escl.config import ScannerSettings
from escl.models import Device, DeviceId
from scanner_manager import ScannerManager

BASE_URL = "http://192.168.1.100:8080/eSCL"

CAPABILITIES_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<scan:ScannerCapabilities xmlns:scan="http://schemas.hp.com/imaging/escl/2011/05/03"
                          xmlns:pwg="http://www.pwg.org/schemas/2010/12/sm">
  <pwg:Version>2.63</pwg:Version>
  <pwg:MakeAndModel>HP OfficeJet Pro 9010</pwg:MakeAndModel>
  <pwg:SerialNumber>TH12345</pwg:SerialNumber>
  <scan:Platen>
    <scan:PlatenInputCaps>
      <scan:MinWidth>8</scan:MinWidth>
      <scan:MaxWidth>2550</scan:MaxWidth>
      <scan:MinHeight>8</scan:MinHeight>
      <scan:MaxHeight>3508</scan:MaxHeight>
      <scan:SettingProfiles>
        <scan:SettingProfile>
          <scan:ColorModes>
            <scan:ColorMode>Grayscale8</scan:ColorMode>
            <scan:ColorMode>RGB24</scan:ColorMode>
          </scan:ColorModes>
          <scan:DocumentFormats>
            <pwg:DocumentFormat>image/jpeg</pwg:DocumentFormat>
            <pwg:DocumentFormat>application/pdf</pwg:DocumentFormat>
            <scan:DocumentFormatExt>image/jpeg</scan:DocumentFormatExt>
          </scan:DocumentFormats>
          <scan:SupportedResolutions>
            <scan:DiscreteResolutions>
              <scan:DiscreteResolution>
                <scan:XResolution>200</scan:XResolution>
                <scan:YResolution>200</scan:YResolution>
              </scan:DiscreteResolution>
              <scan:DiscreteResolution>
                <scan:XResolution>300</scan:XResolution>
                <scan:YResolution>300</scan:YResolution>
              </scan:DiscreteResolution>
            </scan:DiscreteResolutions>
          </scan:SupportedResolutions>
        </scan:SettingProfile>
      </scan:SettingProfiles>
      <scan:SupportedIntents>
        <scan:Intent>Document</scan:Intent>
        <scan:Intent>Photo</scan:Intent>
      </scan:SupportedIntents>
    </scan:PlatenInputCaps>
  </scan:Platen>
  <scan:Adf>
    <scan:AdfSimplexInputCaps>
      <scan:MaxWidth>2550</scan:MaxWidth>
      <scan:MaxHeight>4200</scan:MaxHeight>
      <scan:SettingProfiles>
        <scan:SettingProfile>
          <scan:ColorModes>
            <scan:ColorMode>RGB24</scan:ColorMode>
          </scan:ColorModes>
          <scan:DocumentFormats>
            <pwg:DocumentFormat>image/jpeg</pwg:DocumentFormat>
          </scan:DocumentFormats>
          <scan:SupportedResolutions>
            <scan:DiscreteResolutions>
              <scan:DiscreteResolution>
                <scan:XResolution>300</scan:XResolution>
                <scan:YResolution>300</scan:YResolution>
              </scan:DiscreteResolution>
            </scan:DiscreteResolutions>
          </scan:SupportedResolutions>
        </scan:SettingProfile>
      </scan:SettingProfiles>
    </scan:AdfSimplexInputCaps>
    <scan:AdfOptions>
      <scan:AdfOption>Duplex</scan:AdfOption>
    </scan:AdfOptions>
  </scan:Adf>
</scan:ScannerCapabilities>
"""

STATUS_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<scan:ScannerStatus xmlns:scan="http://schemas.hp.com/imaging/escl/2011/05/03"
                    xmlns:pwg="http://www.pwg.org/schemas/2010/12/sm">
  <pwg:Version>2.63</pwg:Version>
  <pwg:State>Idle</pwg:State>
</scan:ScannerStatus>
"""


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None, reason="", chunk_error=None):
        self.status_code = status_code
        self.content = content
        self.headers = CaseInsensitiveDict(headers or {})
        self.reason = reason
        self.chunk_error = chunk_error
        self.closed = False

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]
        if self.chunk_error is not None:
            raise self.chunk_error

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


@dataclass
class RecordedRequest:
    method: str
    url: str
    data: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)


class FakeHttpSession:
    """Scripted stand-in for requests.Session.

    ``routes[(method, url)]`` holds a queue of responses or exceptions; the
    last entry is reused once the queue runs dry.
    """

    def __init__(self) -> None:
        self.routes: Dict[tuple, deque] = defaultdict(deque)
        self.calls: List[RecordedRequest] = []
        self.verify = True
        self.closed = False

    def add(self, method: str, url: str, *responses) -> None:
        self.routes[(method.upper(), url)].extend(responses)

    def calls_to(self, method: str, url: Optional[str] = None) -> List[RecordedRequest]:
        return [c for c in self.calls if c.method == method.upper() and (url is None or c.url == url)]

    def _dispatch(self, method, url, data=None, headers=None):
        self.calls.append(RecordedRequest(method, url, data, dict(headers or {})))
        queue = self.routes.get((method, url))
        if not queue:
            raise requests.ConnectionError(f"No route for {method} {url}")
        result = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(result, BaseException):
            raise result
        return result

    def get(self, url, **kwargs):
        return self._dispatch("GET", url)

    def post(self, url, data=None, headers=None, **kwargs):
        return self._dispatch("POST", url, data, headers)

    def delete(self, url, **kwargs):
        return self._dispatch("DELETE", url)

    def close(self) -> None:
        self.closed = True


def job_created(job_path="/eSCL/ScanJobs/42"):
    return FakeResponse(201, headers={"Location": job_path})


@pytest.fixture
def settings(tmp_path) -> ScannerSettings:
    return ScannerSettings(
        discovery_timeout=0.2,
        discovery_poll_interval=0.01,
        not_ready_retries=2,
        not_ready_delay=0.01,
        output_dir=tmp_path / "scans",
    )


@pytest.fixture
def http() -> FakeHttpSession:
    session = FakeHttpSession()
    session.add("GET", f"{BASE_URL}/ScannerCapabilities", FakeResponse(200, CAPABILITIES_XML))
    session.add("GET", f"{BASE_URL}/ScannerStatus", FakeResponse(200, STATUS_XML))
    return session


@pytest.fixture
def device() -> Device:
    return Device(
        id=DeviceId(host="192.168.1.100", instance="HP OfficeJet Pro 9010"),
        name="HP OfficeJet Pro 9010",
        base_url=BASE_URL,
    )


@pytest.fixture
def capabilities():
    return parse_capabilities(CAPABILITIES_XML)


@pytest.fixture
def manager(settings, http) -> ScannerManager:
    mgr = ScannerManager(settings, session_factory=lambda: http)
    yield mgr
    mgr.close()


class FakeServiceInfo:
    def __init__(self, address="192.168.1.100", port=8080, properties=None):
        self.address = address
        self.port = port
        self.properties = properties if properties is not None else {b"rs": b"eSCL", b"ty": b"HP OfficeJet Pro 9010"}

    def parsed_addresses(self):
        return [self.address] if self.address else []


class FakeZeroconf:
    def __init__(self, infos=None) -> None:
        self.infos = infos or {}
        self.requests = []
        self.closed = False

    def get_service_info(self, type_, name, timeout=3000):
        self.requests.append((name, timeout))
        info = self.infos.get((type_, name))
        if info is None:
            # an unanswered query blocks for its whole timeout
            time.sleep(timeout / 1000)
        return info

    def close(self) -> None:
        self.closed = True


class FakeBrowser:
    """Replays ``adverts`` (service type, name) through the listener on creation."""

    instances: List["FakeBrowser"] = []

    def __init__(self, zc, types, listener, adverts=()) -> None:
        self.types = list(types)
        self.canceled = False
        FakeBrowser.instances.append(self)
        for type_, name in adverts:
            listener.add_service(zc, type_, name)

    def cancel(self) -> None:
        self.canceled = True


def fake_network(infos, adverts):
    """Factories for DiscoveryService that simulate one mDNS neighbourhood."""
    zeroconfs = []

    def zeroconf_factory():
        zc = FakeZeroconf(infos)
        zeroconfs.append(zc)
        return zc

    def browser_factory(zc, types, listener):
        return FakeBrowser(zc, types, listener, adverts)

    return zeroconf_factory, browser_factory, zeroconfs
