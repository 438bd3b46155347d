from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol, Sequence

from .models import AcquiredImage, CapabilitySet, ColorMode, Device, DocumentFormat, InputSource


class ScanOptionSelector(Protocol):
    """Chooses the device and scan options; ``None`` means nothing was selected."""

    def select_device(self, devices: Sequence[Device]) -> Optional[int]:
        """Return the index of the chosen device."""

    def select_input_source(self, device: Device, capabilities: CapabilitySet) -> Optional[InputSource]:
        """Pick flatbed or feeder when the device has both."""

    def select_intent(self, intents: Sequence[str]) -> Optional[str]:
        """Pick a scan intent."""

    def select_color_mode(self, color_modes: Sequence[ColorMode]) -> Optional[ColorMode]:
        """Pick a color mode."""

    def select_resolution(self, resolutions: Sequence[int]) -> Optional[int]:
        """Pick a resolution used for both X and Y."""

    def select_document_format(self, formats: Sequence[DocumentFormat]) -> Optional[DocumentFormat]:
        """Pick the format the device sends documents in."""


class ImageSink(Protocol):
    def save_image(self, image: AcquiredImage) -> Path:
        """Persist an acquired image and return where it went."""
