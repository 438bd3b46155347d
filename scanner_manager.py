import logging
from contextlib import closing

from escl.capabilities import CapabilityNegotiator
from escl.client import ClientPool
from escl.config import ScannerSettings
from escl.discovery import DiscoveryService
from escl.errors import ProtocolError
from escl.jobs import JobSessionManager
from escl.models import Device, JobState, ScanJobRequest
from escl.registry import DeviceRegistry
from escl.retriever import ImageRetriever

logger = logging.getLogger(__name__)


class DeviceSession:
    """Scan session with one device; closing it releases the HTTP session."""

    def __init__(self, manager, device):
        self.manager = manager
        self.device = device

    @property
    def capabilities(self):
        return self.manager.negotiator.get_capabilities(self.device)

    def refresh_capabilities(self):
        return self.manager.negotiator.get_capabilities(self.device, refresh=True)

    def supported_intents(self):
        return self.manager.negotiator.supported_intents(self.device)

    def supported_color_modes(self):
        return self.manager.negotiator.supported_color_modes(self.device)

    def supported_resolutions(self):
        return self.manager.negotiator.supported_resolutions(self.device)

    def supported_document_formats(self):
        return self.manager.negotiator.supported_document_formats(self.device)

    def supported_input_sources(self):
        return self.manager.negotiator.supported_input_sources(self.device)

    def status(self):
        return self.manager.negotiator.scanner_status(self.device)

    def create_job(self, request):
        return self.manager.jobs.create_job(self.device, request)

    def next_image(self, job, cancel=None):
        return self.manager.retriever.next_image(job, cancel)

    def images(self, job, cancel=None):
        return self.manager.retriever.iter_images(job, cancel)

    def cancel_job(self, job):
        self.manager.jobs.cancel_job(job)

    def job_state(self, job):
        return self.manager.jobs.state(job)

    def scan(self, request=None, cancel=None):
        """Start a job and yield its images.

        If the caller stops iterating early the job is canceled on the device.
        """
        job = self.create_job(request or ScanJobRequest())
        try:
            yield from self.images(job, cancel)
        finally:
            if self.job_state(job) is JobState.ACTIVE:
                try:
                    self.cancel_job(job)
                except ProtocolError as e:
                    logger.warning(f"Could not cancel scan job {job.job_id}: {e}")

    def close(self):
        self.manager.jobs.close_device(self.device)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class ScannerManager:
    """Entry point for eSCL scanning: discovery, device sessions and jobs."""

    def __init__(self, settings=None, session_factory=None, zeroconf_factory=None, browser_factory=None):
        self.settings = settings or ScannerSettings()
        self.registry = DeviceRegistry()
        self.clients = ClientPool(self.settings, session_factory)
        self.negotiator = CapabilityNegotiator(self.clients, self.registry)
        self.jobs = JobSessionManager(self.clients, self.negotiator)
        self.retriever = ImageRetriever(self.jobs, self.clients, self.settings)

        discovery_kwargs = {}
        if zeroconf_factory is not None:
            discovery_kwargs["zeroconf_factory"] = zeroconf_factory
        if browser_factory is not None:
            discovery_kwargs["browser_factory"] = browser_factory
        self.discovery = DiscoveryService(self.settings, self.registry, **discovery_kwargs)

    def discover(self, timeout=None, cancel=None):
        return self.discovery.discover(timeout=timeout, cancel=cancel)

    def list_scanners(self):
        return self.registry.devices()

    def open_device(self, device):
        if isinstance(device, int):
            device = self.registry.devices()[device]
        logger.debug(f"Opening {device.name} at {device.base_url}")
        return DeviceSession(self, device)

    def get_capabilities(self, device, refresh=False):
        return self.negotiator.get_capabilities(device, refresh=refresh)

    def scan_network_escl(self, url, sink, request=None, cancel=None):
        """Scan every document from a scanner at a known eSCL URL into ``sink``."""
        with self.open_device(Device.from_url(url)) as session, closing(session.scan(request, cancel)) as images:
            return [sink.save_image(image) for image in images]

    def close(self):
        self.clients.close_all()
        self.registry.clear()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
