"""In-memory catalogue of discovered devices and their capabilities."""

import logging
import threading

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Thread-safe device catalogue.

    A discovery pass appends devices with ``add``; ``end_pass`` publishes
    them as the snapshot returned by ``devices()``. The snapshot stays
    read-only until the next pass ends. Capabilities are cached per
    device id and survive passes for devices that are still present.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = ()
        self._pending = None
        self._capabilities = {}

    def begin_pass(self):
        with self._lock:
            self._pending = {}

    def add(self, device):
        """Record a device seen in the current pass. Returns False for duplicates."""
        with self._lock:
            if self._pending is None:
                self._pending = {}
            if device.id in self._pending:
                return False
            self._pending[device.id] = device
            return True

    def end_pass(self):
        with self._lock:
            pending = self._pending or {}
            self._pending = None
            self._snapshot = tuple(pending.values())
            for device_id in list(self._capabilities):
                if device_id not in pending:
                    del self._capabilities[device_id]
            logger.debug(f"Registry holds {len(self._snapshot)} device(s)")
            return self._snapshot

    def abort_pass(self):
        with self._lock:
            self._pending = None

    def devices(self):
        return self._snapshot

    def get(self, device_id):
        for device in self._snapshot:
            if device.id == device_id:
                return device
        return None

    def __len__(self):
        return len(self._snapshot)

    def __iter__(self):
        return iter(self._snapshot)

    def capabilities(self, device_id):
        with self._lock:
            return self._capabilities.get(device_id)

    def store_capabilities(self, device_id, capabilities):
        with self._lock:
            self._capabilities[device_id] = capabilities

    def forget_capabilities(self, device_id):
        with self._lock:
            self._capabilities.pop(device_id, None)

    def clear(self):
        with self._lock:
            self._snapshot = ()
            self._pending = None
            self._capabilities.clear()
