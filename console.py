"""Console front-end: search, pick a scanner and options, save every page."""

import argparse
import logging
import select
import sys
import threading
from contextlib import closing
from enum import IntEnum
from pathlib import Path

from escl.config import ScannerSettings
from escl.errors import AcquisitionError, SearchCanceledError, full_message
from escl.interfaces import ScanOptionSelector
from escl.models import Device, InputSource, ScanJobRequest
from escl.storage import FileImageSink
from scanner_manager import ScannerManager

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    OK = 0
    SEARCH_CANCELED = 1
    NO_DEVICES = 2
    NOT_SELECTED = 3
    ACQUISITION_FAILED = 4
    UNHANDLED_ERROR = 100


class ConsoleSelector(ScanOptionSelector):
    """Numbered prompts on stdin/stdout. Entering 0 keeps the device default."""

    def __init__(self, read=input, write=print):
        self.read = read
        self.write = write

    def select_device(self, devices):
        self.write("Device list:")
        for i, device in enumerate(devices):
            self.write(f"{i + 1}. {device.name} ({device.base_url})")
        return self._ask("device", len(devices), allow_cancel=True, noun="device number")

    def select_input_source(self, device, capabilities):
        if capabilities.has_flatbed and capabilities.has_feeder:
            duplex = "with" if capabilities.has_duplex else "without"
            current = capabilities.default_request().input_source.value
            self.write(f"Device has flatbed and feeder {duplex} duplex. Now device uses {current}.")
            choice = None
            while choice not in ("1", "2"):
                choice = self.read("What do you want to use: flatbed (press '1') or feeder (press '2'): ").strip()
            self.write("")
            return InputSource.FLATBED if choice == "1" else InputSource.FEEDER
        if capabilities.has_feeder:
            duplex = "with" if capabilities.has_duplex else "without"
            self.write(f"Device has feeder {duplex} duplex.")
            self.write("")
            return InputSource.FEEDER
        if capabilities.has_flatbed:
            self.write("Device has flatbed only.")
            self.write("")
            return InputSource.FLATBED
        return None

    def select_intent(self, intents):
        return self._pick("Scan intents:", "scan intent", intents, allow_cancel=True)

    def select_color_mode(self, color_modes):
        return self._pick("Scan color modes:", "scan color mode", color_modes, allow_cancel=True)

    def select_resolution(self, resolutions):
        return self._pick("Scan resolutions:", "scan resolution", resolutions, allow_cancel=True)

    def select_document_format(self, formats):
        return self._pick("Scan document formats:", "scan document format", formats, allow_cancel=False)

    def _pick(self, title, what, values, allow_cancel):
        if not values:
            return None
        self.write(title)
        for i, value in enumerate(values):
            self.write(f"{i + 1}. {value}")
        index = self._ask(what, len(values), allow_cancel)
        return None if index is None else values[index]

    def _ask(self, what, count, allow_cancel, noun="number"):
        lowest = 0 if allow_cancel else 1
        if allow_cancel:
            prompt = f"Please select {what} by entering the {noun} from '1' to '{count}' or press '0' to cancel: "
        else:
            prompt = f"Please select {what} by entering the {noun} from '1' to '{count}': "
        while True:
            answer = self.read(prompt).strip()
            if answer.isdecimal() and lowest <= int(answer) <= count:
                break
        self.write("")
        index = int(answer)
        return None if index == 0 else index - 1


class EnterKeyWatcher:
    """Sets ``cancel`` when a line is entered on ``stream`` while active."""

    def __init__(self, cancel, stream=None, poll_interval=0.1):
        self.cancel = cancel
        self.stream = stream or sys.stdin
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread = None

    def __enter__(self):
        self._thread = threading.Thread(target=self._watch, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc_info):
        self._stop.set()
        self._thread.join()

    def _watch(self):
        while not self._stop.is_set():
            try:
                ready, _, _ = select.select([self.stream], [], [], self.poll_interval)
            except (OSError, ValueError) as e:
                # stdin is not selectable on Windows or when redirected
                logger.debug(f"Enter key watcher disabled: {e}")
                return
            if ready:
                self.stream.readline()
                self.cancel.set()
                return


class ProgressIndicator:
    """Spins a \\|/- cursor on ``stream`` until the block exits."""

    STEPS = "\\|/-"

    def __init__(self, stream=None, interval=0.1):
        self.stream = stream or sys.stdout
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def __enter__(self):
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc_info):
        self._stop.set()
        self._thread.join()
        self.stream.write("\n")
        self.stream.flush()

    def _spin(self):
        step = 0
        while True:
            self.stream.write("\b" + self.STEPS[step])
            self.stream.flush()
            step = (step + 1) % len(self.STEPS)
            if self._stop.wait(self.interval):
                return


def run_scan_session(manager, selector, sink, url=None, timeout=None, cancel=None,
                     out=print, stdin=None, progress=None):
    """Run one interactive scan and return the exit code for it."""
    cancel = cancel or threading.Event()

    if url:
        device = Device.from_url(url)
    else:
        timeout = manager.settings.discovery_timeout if timeout is None else timeout
        out(f"Searching for eSCL devices in network during {timeout:g} seconds... "
            f"Press 'Enter' key to stop searching.")
        try:
            with EnterKeyWatcher(cancel, stream=stdin), ProgressIndicator(progress):
                devices = manager.discover(timeout=timeout, cancel=cancel)
        except SearchCanceledError:
            out("Searching is canceled.")
            return ExitCode.SEARCH_CANCELED

        if not devices:
            out("Devices are not found.")
            return ExitCode.NO_DEVICES

        index = selector.select_device(devices)
        if index is None:
            return ExitCode.NOT_SELECTED
        device = devices[index]

    with manager.open_device(device) as session:
        caps = session.capabilities
        input_source = selector.select_input_source(device, caps)
        intent = selector.select_intent(caps.intents)
        color_mode = selector.select_color_mode(caps.color_modes)
        resolution = selector.select_resolution(caps.resolutions)
        document_format = selector.select_document_format(caps.document_formats)
        if document_format is None:
            return ExitCode.NOT_SELECTED

        request = ScanJobRequest(
            input_source=input_source,
            intent=intent,
            color_mode=color_mode,
            resolution=resolution,
            document_format=document_format,
        )

        out("Images acquisition is started...")
        try:
            with closing(session.scan(request)) as images:
                for image in images:
                    out("Image is acquired.")
                    sink.save_image(image)
                    out(f"Image{image.index} is saved.")
        except AcquisitionError as e:
            out(f"Scan is failed: {e}")
            return ExitCode.ACQUISITION_FAILED
        out("Scan is completed.")

    return ExitCode.OK


def main(argv=None):
    parser = argparse.ArgumentParser(description="Scan documents from an eSCL (AirScan) network scanner")
    parser.add_argument("--url", help="eSCL URL of a known scanner, skips the network search")
    parser.add_argument("--timeout", type=float, help="device search time in seconds")
    parser.add_argument("-o", "--output-dir", type=Path, help="directory for scanned images")
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug output")
    args = parser.parse_args(argv)

    settings = ScannerSettings.from_env()
    if args.timeout is not None:
        settings.discovery_timeout = args.timeout
    if args.output_dir is not None:
        settings.output_dir = args.output_dir

    logging.basicConfig(level=logging.DEBUG if args.verbose else settings.log_level)
    logging.getLogger("zeroconf").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    try:
        with ScannerManager(settings) as manager:
            return run_scan_session(
                manager,
                ConsoleSelector(),
                FileImageSink(settings.output_dir),
                url=args.url,
                timeout=settings.discovery_timeout,
            )
    except Exception as e:
        logger.debug("Unhandled error", exc_info=True)
        print("Error: " + full_message(e))
        return ExitCode.UNHANDLED_ERROR


if __name__ == "__main__":
    sys.exit(main())
