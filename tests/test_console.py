import io
import threading
import time

import pytest

from conftest import BASE_URL, FakeResponse, FakeServiceInfo, fake_network, job_created
from console import ConsoleSelector, ExitCode, ProgressIndicator, main, run_scan_session
from escl.models import ColorMode, DocumentFormat, InputSource
from escl.storage import FileImageSink
from scanner_manager import ScannerManager

JOB_URL = f"{BASE_URL}/ScanJobs/42"
NEXT_URL = f"{JOB_URL}/NextDocument"
USCAN = "_uscan._tcp.local."
HP = f"HP OfficeJet Pro 9010.{USCAN}"


class ScriptedSelector:
    """Answers every prompt with a fixed choice."""

    def __init__(self, device_index=0, document_format=DocumentFormat.JPEG):
        self.device_index = device_index
        self.document_format = document_format
        self.offered = {}

    def select_device(self, devices):
        self.offered["devices"] = devices
        return self.device_index

    def select_input_source(self, device, capabilities):
        return InputSource.FLATBED

    def select_intent(self, intents):
        return None

    def select_color_mode(self, color_modes):
        self.offered["color_modes"] = color_modes
        return ColorMode.GRAYSCALE_8

    def select_resolution(self, resolutions):
        return 200

    def select_document_format(self, formats):
        return self.document_format


@pytest.fixture
def network_manager(settings, http):
    def build(adverts):
        zeroconf_factory, browser_factory, _ = fake_network({(USCAN, HP): FakeServiceInfo()}, adverts)
        return ScannerManager(settings, lambda: http, zeroconf_factory, browser_factory)
    return build


@pytest.fixture
def scan_pages(http):
    http.add("POST", f"{BASE_URL}/ScanJobs", job_created())
    http.add("DELETE", JOB_URL, FakeResponse(200))
    http.add(
        "GET", NEXT_URL,
        FakeResponse(200, b"\xff\xd8first", headers={"Content-Type": "image/jpeg"}),
        FakeResponse(200, b"\xff\xd8second", headers={"Content-Type": "image/jpeg"}),
        FakeResponse(404),
    )
    return http


def run(manager, selector, settings, **kwargs):
    lines = []
    kwargs.setdefault("progress", io.StringIO())
    code = run_scan_session(
        manager,
        selector,
        FileImageSink(settings.output_dir),
        out=lines.append,
        stdin=io.StringIO(""),
        **kwargs,
    )
    return code, lines


def test_scan_from_discovered_device(network_manager, scan_pages, settings) -> None:
    spinner = io.StringIO()
    selector = ScriptedSelector()
    with network_manager([(USCAN, HP)]) as manager:
        code, lines = run(manager, selector, settings, timeout=0.05, progress=spinner)

    assert spinner.getvalue().startswith("\b\\")
    assert spinner.getvalue().endswith("\n")
    assert code is ExitCode.OK
    assert lines[0].startswith("Searching for eSCL devices in network during 0.05 seconds...")
    assert lines[1:] == [
        "Images acquisition is started...",
        "Image is acquired.",
        "Image0 is saved.",
        "Image is acquired.",
        "Image1 is saved.",
        "Scan is completed.",
    ]
    assert (settings.output_dir / "scannedImage1.jpg").read_bytes() == b"\xff\xd8second"
    assert selector.offered["color_modes"] == (ColorMode.GRAYSCALE_8, ColorMode.RGB_24)
    body = scan_pages.calls_to("POST")[0].data.decode()
    assert "<scan:ColorMode>Grayscale8</scan:ColorMode>" in body
    assert "<scan:XResolution>200</scan:XResolution>" in body


def test_scan_from_url_skips_search(manager, scan_pages, settings) -> None:
    code, lines = run(manager, ScriptedSelector(), settings, url="192.168.1.100:8080")

    assert code is ExitCode.OK
    assert not any(line.startswith("Searching") for line in lines)
    assert sorted(p.name for p in settings.output_dir.iterdir()) == ["scannedImage0.jpg", "scannedImage1.jpg"]


def test_canceled_search(network_manager, settings) -> None:
    cancel = threading.Event()
    cancel.set()
    with network_manager([(USCAN, HP)]) as manager:
        code, lines = run(manager, ScriptedSelector(), settings, timeout=30, cancel=cancel)

    assert code is ExitCode.SEARCH_CANCELED
    assert lines[-1] == "Searching is canceled."


def test_no_devices_found(network_manager, settings) -> None:
    with network_manager([]) as manager:
        code, lines = run(manager, ScriptedSelector(), settings, timeout=0.05)

    assert code is ExitCode.NO_DEVICES
    assert lines[-1] == "Devices are not found."


def test_device_not_selected(network_manager, http, settings) -> None:
    with network_manager([(USCAN, HP)]) as manager:
        code, _ = run(manager, ScriptedSelector(device_index=None), settings, timeout=0.05)

    assert code is ExitCode.NOT_SELECTED
    assert not http.calls


def test_document_format_is_required(manager, http, settings) -> None:
    code, _ = run(manager, ScriptedSelector(document_format=None), settings, url=BASE_URL)

    assert code is ExitCode.NOT_SELECTED
    assert not http.calls_to("POST")


def test_acquisition_failure(manager, http, settings) -> None:
    http.add("POST", f"{BASE_URL}/ScanJobs", job_created())
    http.add("GET", NEXT_URL, FakeResponse(500))

    code, lines = run(manager, ScriptedSelector(), settings, url=BASE_URL)

    assert code is ExitCode.ACQUISITION_FAILED
    assert lines[-1].startswith("Scan is failed: Document acquisition failed")


def test_console_selector_prompts() -> None:
    answers = iter(["9", "x", "2", "2"])
    written = []
    selector = ConsoleSelector(read=lambda prompt: next(answers), write=written.append)

    assert selector.select_resolution((200, 300, 600)) == 300
    assert selector.select_document_format((DocumentFormat.JPEG, DocumentFormat.PDF)) is DocumentFormat.PDF
    assert "Scan resolutions:" in written
    assert "2. 300" in written
    assert "2. PDF" in written


def test_console_selector_rejects_non_ascii_digits() -> None:
    answers = iter(["\u00b2", "1"])
    selector = ConsoleSelector(read=lambda prompt: next(answers), write=lambda *args: None)

    assert selector.select_resolution((200, 300, 600)) == 200


def test_console_selector_zero_cancels() -> None:
    selector = ConsoleSelector(read=lambda prompt: "0", write=lambda *args: None)

    assert selector.select_intent(("Document", "Photo")) is None
    assert selector.select_color_mode((ColorMode.RGB_24,)) is None


def test_console_selector_input_source(capabilities) -> None:
    answers = iter(["3", "2"])
    written = []
    selector = ConsoleSelector(read=lambda prompt: next(answers), write=written.append)

    assert selector.select_input_source(None, capabilities) is InputSource.FEEDER
    assert "Device has flatbed and feeder with duplex. Now device uses flatbed." in written


def test_main_reports_unhandled_errors(monkeypatch, capsys, tmp_path) -> None:
    monkeypatch.setattr("console.run_scan_session", lambda *args, **kwargs: 1 / 0)

    code = main(["--url", "127.0.0.1:9", "-o", str(tmp_path)])

    assert code is ExitCode.UNHANDLED_ERROR
    assert capsys.readouterr().out.startswith("Error: division by zero")


def test_progress_indicator_cycles_until_exit() -> None:
    stream = io.StringIO()

    with ProgressIndicator(stream, interval=0.01):
        time.sleep(0.1)

    output = stream.getvalue()
    assert output.startswith("\b\\\b|\b/\b-")
    assert output.endswith("\n")
    assert set(output[1:-1:2]) <= set("\\|/-")
