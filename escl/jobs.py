"""Scan job lifecycle: creation, state tracking and cancellation."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional

from .client import build_scan_settings, job_id_from_url
from .errors import DeviceBusyError, InvalidJobStateError, InvalidParameterError
from .models import ColorMode, DocumentFormat, InputSource, JobState, ScanJob, ScanJobRequest

logger = logging.getLogger(__name__)

TRANSITIONS = {
    JobState.IDLE: {JobState.CREATED},
    JobState.CREATED: {JobState.ACTIVE, JobState.CANCELED, JobState.FAILED},
    JobState.ACTIVE: {JobState.COMPLETED, JobState.CANCELED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.CANCELED: set(),
    JobState.FAILED: set(),
}


@dataclass
class JobRecord:
    state: JobState = JobState.IDLE
    next_index: int = 0
    error: Optional[BaseException] = None


def _coerce(enum_type, value, field, supported):
    if value is None:
        return None
    if value not in supported:
        raise InvalidParameterError(
            f"Unsupported {field.replace('_', ' ')} '{value}', supported: {[str(s) for s in supported]}",
            field=field,
            value=value,
        )
    return enum_type(value)


def validate_request(request: ScanJobRequest, capabilities) -> ScanJobRequest:
    """Check every selected value against the device capabilities.

    Returns the request with plain strings converted to their enum values.
    Raises InvalidParameterError on the first unsupported value.
    """
    input_source = _coerce(InputSource, request.input_source, "input_source", capabilities.input_sources)
    color_mode = _coerce(ColorMode, request.color_mode, "color_mode", capabilities.color_modes)
    document_format = _coerce(DocumentFormat, request.document_format, "document_format",
                              capabilities.document_formats)

    if request.intent is not None and request.intent not in capabilities.intents:
        raise InvalidParameterError(
            f"Unsupported intent '{request.intent}', supported: {list(capabilities.intents)}",
            field="intent",
            value=request.intent,
        )

    resolution = request.resolution
    if resolution is not None and (isinstance(resolution, bool) or resolution not in capabilities.resolutions):
        raise InvalidParameterError(
            f"Unsupported resolution '{resolution}', supported: {list(capabilities.resolutions)}",
            field="resolution",
            value=resolution,
        )

    if request.duplex:
        if not capabilities.has_duplex:
            raise InvalidParameterError("Device has no duplex feeder", field="duplex", value=True)
        if input_source is InputSource.FLATBED:
            raise InvalidParameterError("Duplex scanning needs the feeder", field="duplex", value=True)
        input_source = InputSource.FEEDER

    return replace(
        request,
        input_source=input_source,
        color_mode=color_mode,
        document_format=document_format,
    )


class JobSessionManager:
    """
    Creates scan jobs and owns their state.

    At most one job per device is Created or Active; every state change goes
    through ``_transition``.
    """

    def __init__(self, clients, negotiator):
        self.clients = clients
        self.negotiator = negotiator
        self._lock = threading.RLock()
        self._records: Dict[ScanJob, JobRecord] = {}
        self._active: Dict[object, Optional[ScanJob]] = {}

    def create_job(self, device, request: ScanJobRequest) -> ScanJob:
        capabilities = self.negotiator.get_capabilities(device)
        request = capabilities.resolve(validate_request(request, capabilities))

        with self._lock:
            if device.id in self._active:
                raise DeviceBusyError(f"{device.name} already has an active scan job")
            # reserve the device before talking to it
            self._active[device.id] = None

        try:
            job_url = self.clients.get(device).create_job(build_scan_settings(request, capabilities))
        except BaseException:
            with self._lock:
                self._active.pop(device.id, None)
            raise

        job = ScanJob(
            job_id=job_id_from_url(job_url),
            job_url=job_url,
            device_id=device.id,
            document_format=request.document_format,
        )
        with self._lock:
            self._records[job] = JobRecord()
            self._active[device.id] = job
            self._transition(job, JobState.CREATED)
            self._transition(job, JobState.ACTIVE)

        logger.info(
            f"Scan job {job.job_id} started on {device.name}: {request.input_source}, "
            f"{request.color_mode}, {request.resolution} dpi, {request.document_format}"
        )
        return job

    def cancel_job(self, job: ScanJob) -> None:
        with self._lock:
            record = self._record(job)
            if record.state.is_terminal:
                return
            self._transition(job, JobState.CANCELED)

        self.clients.for_id(job.device_id).delete_job(job.job_url)
        logger.info(f"Scan job {job.job_id} canceled")

    def close_device(self, device) -> None:
        """Release the device's HTTP session. An active job is left running."""
        with self._lock:
            job = self._active.get(device.id)
        if job is not None:
            logger.debug(f"Closing {device.name} while job {job.job_id} is still active")
        self.clients.close(device)

    def state(self, job: ScanJob) -> JobState:
        with self._lock:
            return self._record(job).state

    def error(self, job: ScanJob) -> Optional[BaseException]:
        with self._lock:
            return self._record(job).error

    def active_job(self, device) -> Optional[ScanJob]:
        with self._lock:
            return self._active.get(device.id)

    def require_active(self, job: ScanJob) -> None:
        state = self.state(job)
        if state is not JobState.ACTIVE:
            raise InvalidJobStateError(f"Scan job {job.job_id} is {state.value}, not active")

    def take_index(self, job: ScanJob) -> int:
        with self._lock:
            record = self._record(job)
            index = record.next_index
            record.next_index += 1
            return index

    def complete(self, job: ScanJob) -> None:
        with self._lock:
            self._transition(job, JobState.COMPLETED)
        logger.info(f"Scan job {job.job_id} completed")

    def fail(self, job: ScanJob, error: BaseException) -> None:
        with self._lock:
            self._transition(job, JobState.FAILED)
            self._record(job).error = error
        logger.warning(f"Scan job {job.job_id} failed: {error}")

    def _record(self, job):
        try:
            return self._records[job]
        except KeyError:
            raise InvalidJobStateError(f"Unknown scan job {job.job_id}") from None

    def _transition(self, job, new_state):
        record = self._record(job)
        if new_state not in TRANSITIONS[record.state]:
            raise InvalidJobStateError(
                f"Scan job {job.job_id} cannot go from {record.state.value} to {new_state.value}"
            )
        logger.debug(f"Job {job.job_id}: {record.state.value} -> {new_state.value}")
        record.state = new_state
        if new_state.is_terminal and self._active.get(job.device_id) == job:
            del self._active[job.device_id]
