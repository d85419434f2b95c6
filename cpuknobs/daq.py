"""Continuous analog input from Measurement Computing DAQFlex USB devices.

The device speaks a text protocol over vendor control transfers: each
command is a string of at most 64 bytes and each reply is another such
string. The USB link itself is supplied as a *transport* object with two
methods:

``control_out(data)``
    send 64 bytes of command to the device;
``control_in(length)``
    return up to ``length`` bytes of reply.

Either method may raise ``OSError`` on failure.
"""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass, field
from enum import Enum, IntEnum

MCC_VENDOR_ID = 0x09DB
MAX_MESSAGE_LENGTH = 64
STRINGMESSAGE = 0x80
ENDPOINT_DESCRIPTOR = 0x05

_log = logging.getLogger(__name__)
_FLOAT_PREFIX = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_SAMPLE = struct.Struct("<f")


class Product(IntEnum):
    """USB product ids of the supported devices."""

    USB_2001_TC = 0x00F9
    USB_7202 = 0x00F2
    USB_7204 = 0x00F0
    USB_1608_GX = 0x0111
    USB_1608_GX_2AO = 0x0112
    USB_1608_FS_PLUS = 0x00EA
    USB_1208_FS_PLUS = 0x00E8


_NAMES = {
    Product.USB_2001_TC: "USB-2001-TC",
    Product.USB_7202: "USB-7202",
    Product.USB_7204: "USB-7204",
    Product.USB_1608_GX: "USB-1608GX",
    Product.USB_1608_GX_2AO: "USB-1608GX-2AO",
    Product.USB_1608_FS_PLUS: "USB-1608-FS-PLUS",
    Product.USB_1208_FS_PLUS: "USB-1608-FS-PLUS",
}

_MAX_COUNTS = {
    Product.USB_7202: 0xFFFF,
    Product.USB_1608_FS_PLUS: 0xFFFF,
    Product.USB_7204: 0xFFF,
    Product.USB_1208_FS_PLUS: 0xFFF,
}


class DaqError(Exception):
    """A device could not be used or a transfer failed."""


class ChannelMode(Enum):
    """How the analog inputs are wired."""

    DIFFERENTIAL = "DIFF"
    SINGLE_ENDED = "SE"


@dataclass(frozen=True)
class ScanGeometry:
    """Sizes of the double buffer used by a continuous scan."""

    buffer_size: int
    sample_times: int
    points: int
    delay: int


@dataclass
class Calibration:
    """Per-channel calibration slope and offset; missing channels are 0."""

    slopes: dict = field(default_factory=dict)
    offsets: dict = field(default_factory=dict)

    def slope(self, channel):
        return self.slopes.get(channel, 0.0)

    def offset(self, channel):
        return self.offsets.get(channel, 0.0)


def is_mcc_product(product_id):
    """True if ``product_id`` is one of the known MCC products."""
    return product_id in Product._value2member_map_


def product_name(product_id):
    """Human-readable name of a product."""
    if not is_mcc_product(product_id):
        return "Invalid Product ID"
    return _NAMES[Product(product_id)]


def max_counts(product_id):
    """Full-scale count of the ADC; 0 when the product has none known."""
    if not is_mcc_product(product_id):
        return 0
    return _MAX_COUNTS.get(Product(product_id), 0)


def _endpoints(descriptor):
    """Yield each endpoint descriptor found in a configuration descriptor."""
    data = bytes(descriptor)
    index = 0
    while index + 1 < len(data):
        length = data[index]
        if length == 0:
            return
        if data[index + 1] == ENDPOINT_DESCRIPTOR:
            yield data[index : index + length]
        index += length


def endpoint_in_address(descriptor):
    """Address of the first IN endpoint, or 0 if there is none."""
    for endpoint in _endpoints(descriptor):
        if len(endpoint) > 2 and endpoint[2] & 0x80:
            return endpoint[2]
    return 0


def endpoint_out_address(descriptor):
    """Address of the first OUT endpoint, or 0 if there is none."""
    for endpoint in _endpoints(descriptor):
        if len(endpoint) > 2 and not endpoint[2] & 0x80:
            return endpoint[2]
    return 0


def bulk_packet_size(descriptor):
    """Maximum packet size of the first IN endpoint, or 0."""
    for endpoint in _endpoints(descriptor):
        if len(endpoint) > 5 and endpoint[2] & 0x80:
            return (endpoint[5] << 8) | endpoint[4]
    return 0


def scan_geometry(channels, rate):
    """Buffer sizes for roughly one second of ``channels`` sampled at ``rate``.

    Samples are two bytes and the buffer is doubled, so its size is always
    a multiple of the 64-byte minimum USB transfer.
    """
    if channels < 1:
        raise ValueError(f"need at least one channel, not {channels}")
    if rate < 1:
        raise ValueError(f"rate must be positive, not {rate}")
    points = max(channels * rate, 128)
    points = ((points + 127) // 128) * 128
    buffer_size = points * 2 * 2
    sample_times = (buffer_size // channels) // 2
    delay = (sample_times * 100000) // (channels * rate * 2)
    return ScanGeometry(buffer_size, sample_times, points, delay)


def scale_and_calibrate(data, min_voltage, max_voltage, slope, offset, max_counts):
    """Convert a raw count to volts using the calibration constants."""
    full_scale = max_voltage - min_voltage
    calibrated = data * slope + offset
    return (calibrated / max_counts) * full_scale + min_voltage


def write_samples(
    data,
    channels,
    calibration,
    max_counts,
    min_voltage,
    max_voltage,
    output,
    binary=False,
):
    """Write raw samples to ``output`` as volts.

    In binary mode each value is a little-endian 32-bit float and
    ``output`` takes bytes; otherwise each frame is one line of
    comma-terminated values. Returns the number of values written.
    """
    if channels < 1:
        raise ValueError(f"need at least one channel, not {channels}")
    samples = list(data)
    for start in range(0, len(samples), channels):
        frame = samples[start : start + channels]
        values = [
            scale_and_calibrate(
                raw,
                min_voltage,
                max_voltage,
                calibration.slope(channel),
                calibration.offset(channel),
                max_counts,
            )
            for channel, raw in enumerate(frame)
        ]
        if binary:
            output.write(b"".join(_SAMPLE.pack(value) for value in values))
        else:
            output.write("".join(f"{value:.6f}," for value in values) + "\n")
    return len(samples)


def _atof(text):
    match = _FLOAT_PREFIX.match(text)
    return float(match.group()) if match else 0.0


class DaqDevice:
    """A DAQFlex device reached through a control-transfer transport."""

    def __init__(self, transport, product_id=Product.USB_1208_FS_PLUS):
        if not is_mcc_product(product_id):
            raise DaqError("Invalid MCC product ID!")
        self.transport = transport
        self.product_id = Product(product_id)
        self.max_counts = max_counts(product_id)
        self.calibration = Calibration()
        self.min_voltage = 0
        self.max_voltage = 0

    def send_message(self, message):
        """Send one command and return the device's reply."""
        payload = message.encode("ascii")[:MAX_MESSAGE_LENGTH]
        payload = payload.ljust(MAX_MESSAGE_LENGTH, b"\0")
        _log.debug("Sending: %s", message)
        try:
            self.transport.control_out(payload)
        except OSError as exc:
            raise DaqError(f"Error USB transfer sending {message!r}: {exc}") from exc
        try:
            reply = self.transport.control_in(MAX_MESSAGE_LENGTH)
        except OSError as exc:
            raise DaqError(f"Error receiving reply to {message!r}: {exc}") from exc
        text = bytes(reply[:MAX_MESSAGE_LENGTH]).split(b"\0", 1)[0]
        response = text.decode("ascii", errors="replace")
        _log.debug("Got: %s", response)
        return response

    def fill_calibration(self, low_channel, high_channel):
        """Query slope and offset of each channel in the range.

        The constants hold only for the current input range.
        """
        for channel in range(low_channel, high_channel + 1):
            reply = self.send_message(f"?AI{{{channel}}}:SLOPE")
            self.calibration.slopes[channel] = _atof(reply[12:])
            reply = self.send_message(f"?AI{{{channel}}}:OFFSET")
            self.calibration.offsets[channel] = _atof(reply[13:])
            _log.info(
                "Channel %d Calibration Slope: %f Offset: %f",
                channel,
                self.calibration.slopes[channel],
                self.calibration.offsets[channel],
            )
        return self.calibration

    def configure_scan(self, mode, low_channel, high_channel, rate):
        """Set up a continuous block-transfer scan and load calibration.

        Returns the (minimum, maximum) voltage of the selected range.
        """
        mode = ChannelMode(mode)
        self.send_message("AISCAN:STOP")
        self.send_message("?AI:RES")
        self.send_message("AISCAN:XFRMODE=BLOCKIO")
        self.send_message(f"AI:CHMODE={mode.value}")
        if mode is ChannelMode.SINGLE_ENDED:
            self.send_message("AISCAN:RANGE=BIP10V")
            self.min_voltage, self.max_voltage = -10, 10
        else:
            self.send_message("AISCAN:RANGE=BIP5V")
            self.min_voltage, self.max_voltage = -5, 5
        self.send_message(f"AISCAN:LOWCHAN={low_channel}")
        self.send_message(f"AISCAN:HIGHCHAN={high_channel}")
        self.send_message(f"AISCAN:RATE={rate}")
        self.send_message("?AISCAN:RATE")
        self.send_message("AISCAN:SAMPLES=0")
        self.fill_calibration(low_channel, high_channel)
        return self.min_voltage, self.max_voltage