"""Discovery of eSCL scanners via Zeroconf/mDNS."""

import logging
import threading
import time

from zeroconf import ServiceBrowser, ServiceListener, Zeroconf

from .config import ScannerSettings
from .errors import SearchCanceledError
from .models import Device, DeviceId

logger = logging.getLogger(__name__)

# eSCL over plain HTTP and over TLS
SERVICE_TYPES = [
    "_uscan._tcp.local.",
    "_uscans._tcp.local.",
]

RESOLVE_TIMEOUT_MS = 3000
RESOLVE_SLICE_MS = 250


def decode_properties(properties):
    props = {}
    for k, v in (properties or {}).items():
        key = k.decode("utf-8", "replace") if isinstance(k, bytes) else str(k)
        if v is None:
            val = ""
        else:
            val = v.decode("utf-8", "replace") if isinstance(v, bytes) else str(v)
        props[key.lower()] = val
    return props


def instance_name(name, service_type):
    if name.endswith("." + service_type):
        return name[: -len(service_type) - 1]
    return name.split(".")[0]


def device_from_service_info(info, service_type, name):
    """Turn a resolved advertisement into a Device, or None if it has no address."""
    addresses = info.parsed_addresses()
    if not addresses:
        return None

    host = addresses[0]
    props = decode_properties(info.properties)
    scheme = "https" if service_type.startswith("_uscans.") else "http"
    resource = props.get("rs", "eSCL").strip("/")
    netloc = f"[{host}]" if ":" in host else host
    base_url = f"{scheme}://{netloc}:{info.port}"
    if resource:
        base_url += "/" + resource

    instance = instance_name(name, service_type)
    sources = {s.strip().lower() for s in props.get("is", "").split(",") if s.strip()}
    return Device(
        id=DeviceId(host=host, instance=instance),
        name=props.get("ty") or instance,
        base_url=base_url,
        uuid=props.get("uuid") or None,
        advertised_flatbed="platen" in sources,
        advertised_feeder="adf" in sources,
        advertised_duplex=props.get("duplex", "").upper() == "T" or "duplex" in sources,
    )


class AdvertisementListener(ServiceListener):
    """
    Resolves eSCL advertisements and hands each new device to ``on_device``.

    A resolve never runs past ``deadline`` (a time.monotonic() value) and is
    done in slices of RESOLVE_SLICE_MS so a set ``cancel`` event stops it
    between network waits.
    """

    def __init__(self, on_device, resolve_timeout_ms=RESOLVE_TIMEOUT_MS, deadline=None, cancel=None):
        self.on_device = on_device
        self.resolve_timeout_ms = resolve_timeout_ms
        self.deadline = deadline
        self.cancel = cancel or threading.Event()

    def add_service(self, zc, type_, name):
        self._resolve(zc, type_, name)

    def update_service(self, zc, type_, name):
        self._resolve(zc, type_, name)

    def remove_service(self, zc, type_, name):
        logger.debug(f"Service removed: {name}")

    def _resolve(self, zc, type_, name):
        info = self._get_service_info(zc, type_, name)
        if info is None:
            logger.debug(f"Could not resolve service {name}")
            return
        device = device_from_service_info(info, type_, name)
        if device is None:
            logger.debug(f"Service {name} has no address")
            return
        self.on_device(device)

    def _get_service_info(self, zc, type_, name):
        give_up = time.monotonic() + self.resolve_timeout_ms / 1000
        if self.deadline is not None:
            give_up = min(give_up, self.deadline)
        while not self.cancel.is_set():
            remaining_ms = int((give_up - time.monotonic()) * 1000)
            if remaining_ms <= 0:
                return None
            info = zc.get_service_info(type_, name, timeout=min(RESOLVE_SLICE_MS, remaining_ms))
            if info is not None:
                return info
        return None


class DiscoveryService:
    """
    Searches the local network for eSCL scanners for a bounded time.

    The Zeroconf instance lives only for the duration of one ``discover``
    call and is closed on every exit path.
    """

    def __init__(self, settings=None, registry=None, zeroconf_factory=Zeroconf, browser_factory=ServiceBrowser):
        self.settings = settings or ScannerSettings()
        self.registry = registry
        self.zeroconf_factory = zeroconf_factory
        self.browser_factory = browser_factory

    def discover(self, timeout=None, cancel=None):
        """
        Listen for advertisements for ``timeout`` seconds.

        Returns the devices found, deduplicated by host and service instance,
        in the order they answered. An empty list means nothing answered.
        Raises SearchCanceledError when ``cancel`` (a threading.Event) is set.
        """
        timeout = self.settings.discovery_timeout if timeout is None else timeout
        cancel = cancel or threading.Event()
        found = {}
        lock = threading.Lock()

        def on_device(device):
            with lock:
                if device.id in found:
                    return
                found[device.id] = device
            if self.registry is not None:
                self.registry.add(device)
            logger.info(f"Discovered eSCL scanner: {device.name} ({device.base_url})")

        deadline = time.monotonic() + timeout
        zc = self.zeroconf_factory()
        if self.registry is not None:
            self.registry.begin_pass()

        browser = None
        try:
            listener = AdvertisementListener(on_device, deadline=deadline, cancel=cancel)
            browser = self.browser_factory(zc, SERVICE_TYPES, listener)
            self._wait(deadline, cancel)
        except BaseException:
            if self.registry is not None:
                self.registry.abort_pass()
            raise
        finally:
            if browser is not None:
                browser.cancel()
            zc.close()

        if self.registry is not None:
            self.registry.end_pass()

        with lock:
            devices = list(found.values())
        logger.info(f"Discovery finished: {len(devices)} device(s)")
        return devices

    def _wait(self, deadline, cancel):
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if cancel.wait(min(self.settings.discovery_poll_interval, remaining)):
                logger.info("Device search canceled")
                raise SearchCanceledError("Searching is canceled")
