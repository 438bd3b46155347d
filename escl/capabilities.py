"""Capability document parsing and per-device capability negotiation."""

import logging

from lxml import etree

from .client import NS_PWG, NS_SCAN
from .errors import ProtocolError, UnsupportedDeviceError
from .models import CapabilitySet, ColorMode, DocumentFormat

logger = logging.getLogger(__name__)

NAMESPACES = {"scan": NS_SCAN, "pwg": NS_PWG}

# Resolutions offered from a ResolutionRange when the device gives no discrete list
STANDARD_RESOLUTIONS = (75, 100, 150, 200, 240, 300, 400, 600, 1200)


def parse_capabilities(content):
    """Parse a scan:ScannerCapabilities document into a CapabilitySet."""
    try:
        tree = etree.fromstring(content)
    except (etree.XMLSyntaxError, ValueError) as e:
        raise ProtocolError("Malformed scanner capabilities document") from e

    platen = tree.xpath("//scan:Platen/scan:PlatenInputCaps", namespaces=NAMESPACES)
    adf = tree.xpath("//scan:Adf/scan:AdfSimplexInputCaps | //scan:Adf/scan:AdfDuplexInputCaps",
                     namespaces=NAMESPACES)
    has_duplex = bool(
        tree.xpath("//scan:Adf/scan:AdfDuplexInputCaps", namespaces=NAMESPACES)
        or "Duplex" in _texts(tree, "//scan:Adf/scan:AdfOptions/scan:AdfOption")
    )
    input_caps = platen + adf

    color_modes = []
    for value in _texts(tree, "//scan:ColorModes/scan:ColorMode"):
        try:
            color_modes.append(ColorMode(value))
        except ValueError:
            logger.debug(f"Skipping unknown color mode: {value}")

    document_formats = []
    format_path = "//scan:DocumentFormats/pwg:DocumentFormat | //scan:DocumentFormats/scan:DocumentFormatExt"
    for value in _texts(tree, format_path):
        try:
            document_formats.append(DocumentFormat(value.strip().lower()))
        except ValueError:
            logger.debug(f"Skipping unknown document format: {value}")

    caps = CapabilitySet(
        make_and_model=first(_texts(tree, "//pwg:MakeAndModel"), ""),
        intents=_unique(_texts(tree, "//scan:SupportedIntents/scan:Intent")),
        color_modes=_unique(color_modes),
        resolutions=tuple(sorted(set(_resolutions(tree)))),
        document_formats=_unique(document_formats),
        has_flatbed=bool(platen),
        has_feeder=bool(adf),
        has_duplex=has_duplex,
        max_width=_max_int(input_caps, "scan:MaxWidth"),
        max_height=_max_int(input_caps, "scan:MaxHeight"),
    )

    missing = []
    if not input_caps:
        missing.append("input sources")
    if not caps.color_modes:
        missing.append("color modes")
    if not caps.resolutions:
        missing.append("resolutions")
    if not caps.document_formats:
        missing.append("document formats")
    if missing:
        raise UnsupportedDeviceError(f"Scanner capabilities lack {', '.join(missing)}")

    return caps


def _resolutions(tree):
    for node in tree.xpath("//scan:DiscreteResolutions/scan:DiscreteResolution", namespaces=NAMESPACES):
        x = _int(first(node.xpath("scan:XResolution/text()", namespaces=NAMESPACES)))
        y = _int(first(node.xpath("scan:YResolution/text()", namespaces=NAMESPACES)))
        # only symmetric resolutions can be selected
        if x and x == y:
            yield x

    for node in tree.xpath("//scan:ResolutionRange", namespaces=NAMESPACES):
        x_min = _range_value(node, "Min")
        x_max = _range_value(node, "Max")
        step = _range_value(node, "Step") or 1
        if x_min is None or x_max is None:
            continue
        for value in STANDARD_RESOLUTIONS:
            if x_min <= value <= x_max and (value - x_min) % step == 0:
                yield value


def _range_value(node, name):
    return _int(first(_texts(node, f"scan:XResolutionRange/scan:{name} | scan:{name}")))


def _texts(tree, path):
    return [t.strip() for t in tree.xpath(f"({path})/text()", namespaces=NAMESPACES) if t.strip()]


def _unique(values):
    return tuple(dict.fromkeys(values))


def _int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _max_int(nodes, path):
    values = [_int(first(node.xpath(path + "/text()", namespaces=NAMESPACES))) for node in nodes]
    values = [v for v in values if v]
    return max(values) if values else None


def first(a, default=None):
    return a[0] if a else default


def parse_scanner_state(content):
    """Return pwg:State from a scan:ScannerStatus document."""
    try:
        tree = etree.fromstring(content)
    except (etree.XMLSyntaxError, ValueError) as e:
        raise ProtocolError("Malformed scanner status document") from e
    state = first(_texts(tree, "//pwg:State"))
    if state is None:
        raise ProtocolError("Scanner status document has no State")
    return state


class CapabilityNegotiator:
    """Fetches and caches the capability set of each device.

    Capabilities are cached in the device registry and reused until
    ``refresh=True`` is passed; fetching never changes device state.
    """

    def __init__(self, clients, registry):
        self.clients = clients
        self.registry = registry

    def get_capabilities(self, device, refresh=False):
        if refresh:
            # a failed refetch must not leave the old set behind
            self.registry.forget_capabilities(device.id)
        else:
            cached = self.registry.capabilities(device.id)
            if cached is not None:
                return cached

        content = self.clients.get(device).get_capabilities()
        caps = parse_capabilities(content)
        logger.info(
            f"Capabilities of {device.name}: {caps.make_and_model or 'unknown model'}, "
            f"flatbed={caps.has_flatbed} feeder={caps.has_feeder} duplex={caps.has_duplex}"
        )
        logger.debug(f"Supported color modes: {[m.value for m in caps.color_modes]}")
        logger.debug(f"Supported resolutions: {list(caps.resolutions)}")
        logger.debug(f"Supported formats: {[f.value for f in caps.document_formats]}")
        self.registry.store_capabilities(device.id, caps)
        return caps

    def supported_intents(self, device):
        return self.get_capabilities(device).intents

    def supported_color_modes(self, device):
        return self.get_capabilities(device).color_modes

    def supported_resolutions(self, device):
        return self.get_capabilities(device).resolutions

    def supported_document_formats(self, device):
        return self.get_capabilities(device).document_formats

    def supported_input_sources(self, device):
        return self.get_capabilities(device).input_sources

    def scanner_status(self, device):
        return parse_scanner_state(self.clients.get(device).get_status())
