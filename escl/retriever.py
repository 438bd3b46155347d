"""Pulls scanned documents from an active job, one at a time."""

import logging
import threading

import requests

from .errors import AcquisitionError, OperationCanceledError, ProtocolError
from .models import END_OF_JOB, AcquiredImage

logger = logging.getLogger(__name__)

# NextDocument answers these when the job has no more pages
END_OF_JOB_STATUSES = (404, 410)
NOT_READY_STATUS = 503


class ImageRetriever:
    """
    Fetches NextDocument for a job until the device reports the end.

    Every failure ends the job: there is no retry on transport errors, the
    job goes to Failed and a fresh job is needed to scan again.

    HTTP 503 is not a failure. It means the device has not finished the
    page yet, so NextDocument is polled again up to
    ``settings.not_ready_retries`` times, waiting ``not_ready_delay``
    seconds in between. With ``not_ready_retries=0`` the first 503 fails
    the job.
    """

    def __init__(self, jobs, clients, settings):
        self.jobs = jobs
        self.clients = clients
        self.settings = settings

    def next_image(self, job, cancel=None):
        """Return the next AcquiredImage of ``job`` or END_OF_JOB."""
        self.jobs.require_active(job)
        cancel = cancel or threading.Event()
        client = self.clients.for_id(job.device_id)

        attempts = 0
        while True:
            if cancel.is_set():
                self._cancel(job)
            try:
                response = client.next_document(job.job_url)
            except ProtocolError as e:
                self._fail(job, e)

            with response:
                status = response.status_code
                if status == 200:
                    data = self._read_body(job, response, cancel)
                    image = AcquiredImage(
                        data=data,
                        document_format=job.document_format,
                        index=self.jobs.take_index(job),
                        content_type=response.headers.get("Content-Type"),
                    )
                    logger.info(f"Image {image.index} acquired from job {job.job_id} ({len(data)} bytes)")
                    return image
                if status in END_OF_JOB_STATUSES:
                    self.jobs.complete(job)
                    return END_OF_JOB

            if status == NOT_READY_STATUS and attempts < self.settings.not_ready_retries:
                attempts += 1
                logger.debug(f"Job {job.job_id} not ready, waiting ({attempts}/{self.settings.not_ready_retries})")
                if cancel.wait(self.settings.not_ready_delay):
                    self._cancel(job)
                continue

            self._fail(job, ProtocolError(f"Unexpected response for next document: HTTP {status}"))

    def iter_images(self, job, cancel=None):
        """Yield the images of ``job`` until the device has no more documents.

        The first error stops the iteration and propagates; the sequence
        cannot be resumed afterwards.
        """
        while True:
            image = self.next_image(job, cancel)
            if image is END_OF_JOB:
                return
            yield image

    def _read_body(self, job, response, cancel):
        chunks = []
        try:
            for chunk in response.iter_content(self.settings.chunk_size):
                if cancel.is_set():
                    self._cancel(job)
                if chunk:
                    chunks.append(chunk)
        except requests.RequestException as e:
            error = ProtocolError("Connection lost while reading document")
            error.__cause__ = e
            self._fail(job, error)
        return b"".join(chunks)

    def _fail(self, job, cause):
        error = AcquisitionError(f"Document acquisition failed: {cause}", job=job)
        self.jobs.fail(job, error)
        raise error from cause

    def _cancel(self, job):
        try:
            self.jobs.cancel_job(job)
        except ProtocolError as e:
            raise OperationCanceledError(f"Scan job {job.job_id} canceled, device did not confirm") from e
        raise OperationCanceledError(f"Scan job {job.job_id} canceled")
