#!/usr/bin/env python3
"""
FluxLED LAN Protocol Library

Shared protocol implementation for LEDENET / Magic Home WiFi bulb controllers.
Provides constants, data structures, message framing and state decoding.

The controllers speak an undocumented binary protocol over TCP port 5577.
Most firmware appends a one-byte checksum to every message; the original
LEDENET firmware does not.
"""

import colorsys
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional


# =============================================================================
# Protocol Constants
# =============================================================================

WIFI_PORT = 5577
DISCOVERY_PORT = 48899
DISCOVERY_MESSAGE = b'HF-A11ASSISTHREAD'

DEFAULT_TIMEOUT = 5.0
DEFAULT_RETRIES = 2
DETECTION_RETRIES = 2

# Expected state response lengths
QUERY_LEN_MODERN = 14
QUERY_LEN_ORIGINAL = 11
CLOCK_RESPONSE_LEN = 12
TIMERS_RESPONSE_LEN = 88


# =============================================================================
# Fixed Messages
# =============================================================================

NEW_QUERY_MSG = bytes([0x81, 0x8a, 0x8b])
OLD_QUERY_MSG = bytes([0xef, 0x01, 0x77])

NEW_ON_MSG = bytes([0x71, 0x23, 0x0f])
OLD_ON_MSG = bytes([0xcc, 0x23, 0x33])

NEW_OFF_MSG = bytes([0x71, 0x24, 0x0f])
OLD_OFF_MSG = bytes([0xcc, 0x24, 0x33])

GET_CLOCK_MSG = bytes([0x11, 0x1a, 0x1b, 0x0f])
GET_TIMERS_MSG = bytes([0x22, 0x2a, 0x2b, 0x0f])

# Message heads
SET_COLOR_PERSIST = 0x31
SET_COLOR_TRANSIENT = 0x41
SET_PATTERN = 0x61
SET_CLOCK_HEAD = bytes([0x10, 0x14])
SET_TIMERS_HEAD = 0x21
SET_TIMERS_TAIL = bytes([0x00, 0xf0])
ORIGINAL_RGB_HEAD = 0x56
ORIGINAL_RGB_TAIL = 0xaa
TERMINATOR = 0x0f

# Write masks select which channels a color set message updates
COLOR_ONLY_WRITEMASK = 0xf0
WHITE_ONLY_WRITEMASK = 0x0f
COLOR_AND_WHITE_WRITEMASK = 0x00

# Power state byte in state responses
POWER_ON = 0x23
POWER_OFF = 0x24


# =============================================================================
# Device Type Codes (state response byte 1)
# =============================================================================

# Devices that don't require a separate rgb/w write mask
RGBW_SINGLE_WRITE_TYPES = frozenset({0x04, 0x33, 0x81})

# Devices that actually support rgbw
RGBW_CAPABLE_TYPES = frozenset({0x04, 0x25, 0x33, 0x81})

# Devices that use 8 data bytes (+ checksum) for color messages
EIGHT_BYTE_TYPES = frozenset({0x25, 0x27, 0x35})

# Devices that use the original LEDENET protocol
ORIGINAL_TYPE = 0x01


# =============================================================================
# Enums
# =============================================================================

class Protocol(Enum):
    """Wire protocol variants spoken by different firmware revisions."""
    LEDENET = 'LEDENET'
    LEDENET_8BYTE = 'LEDENET_8BYTE'
    LEDENET_ORIGINAL = 'LEDENET_ORIGINAL'


class Mode(Enum):
    """Operating mode derived from a state response."""
    UNKNOWN = 'unknown'
    COLOR = 'color'
    WARM_WHITE = 'ww'
    CUSTOM = 'custom'
    PRESET = 'preset'
    SUNRISE = 'sunrise'
    SUNSET = 'sunset'


class BuiltInTimer(IntEnum):
    """Built-in fade programs usable in timers."""
    SUNRISE = 0xa1
    SUNSET = 0xa2


class PresetPattern(IntEnum):
    """Preset patterns stored in the controller firmware."""
    SEVEN_COLOR_CROSS_FADE = 0x25
    RED_GRADUAL_CHANGE = 0x26
    GREEN_GRADUAL_CHANGE = 0x27
    BLUE_GRADUAL_CHANGE = 0x28
    YELLOW_GRADUAL_CHANGE = 0x29
    CYAN_GRADUAL_CHANGE = 0x2a
    PURPLE_GRADUAL_CHANGE = 0x2b
    WHITE_GRADUAL_CHANGE = 0x2c
    RED_GREEN_CROSS_FADE = 0x2d
    RED_BLUE_CROSS_FADE = 0x2e
    GREEN_BLUE_CROSS_FADE = 0x2f
    SEVEN_COLOR_STROBE_FLASH = 0x30
    RED_STROBE_FLASH = 0x31
    GREEN_STROBE_FLASH = 0x32
    BLUE_STROBE_FLASH = 0x33
    YELLOW_STROBE_FLASH = 0x34
    CYAN_STROBE_FLASH = 0x35
    PURPLE_STROBE_FLASH = 0x36
    WHITE_STROBE_FLASH = 0x37
    SEVEN_COLOR_JUMPING = 0x38

    @classmethod
    def is_valid(cls, code: int) -> bool:
        return code in cls._value2member_map_

    @property
    def label(self) -> str:
        return self.name.replace('_', ' ').title()


# =============================================================================
# Exceptions
# =============================================================================

class FluxLEDError(Exception):
    """Base class for driver errors."""


class ProtocolDetectionError(FluxLEDError):
    """Raised when the device's protocol variant cannot be established."""


class UnknownModeError(FluxLEDError):
    """Raised when a state response matches no known operating mode."""

    def __init__(self, pattern_code: int, ww_level: int):
        super().__init__(
            f"Unknown operating mode: pattern 0x{pattern_code:02x}, warm white 0x{ww_level:02x}"
        )
        self.pattern_code = pattern_code
        self.ww_level = ww_level


class UnsupportedOperationError(FluxLEDError):
    """Raised when a command is not supported by the device's protocol."""


class UnrecognizedTimerFormatError(FluxLEDError):
    """Raised when a timer slot matches none of the known layouts."""

    def __init__(self, data: bytes, slot: Optional[int] = None):
        where = f"slot {slot}" if slot is not None else "timer slot"
        super().__init__(f"Unrecognized timer format in {where}: {bytes(data).hex(' ')}")
        self.data = bytes(data)
        self.slot = slot


class TransportError(FluxLEDError):
    """Raised when the TCP connection to the device fails."""


# =============================================================================
# Named Colors
# =============================================================================

# RGB byte values
NAMED_COLORS = {
    'red': (255, 0, 0),
    'orange': (255, 128, 0),
    'yellow': (255, 255, 0),
    'lime': (128, 255, 0),
    'green': (0, 255, 0),
    'teal': (0, 128, 128),
    'cyan': (0, 255, 255),
    'blue': (0, 0, 255),
    'purple': (128, 0, 255),
    'magenta': (255, 0, 255),
    'pink': (255, 105, 180),
    'white': (255, 255, 255),
}


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class RGBColor:
    """RGB color with channels normalized to 0.0-1.0."""
    r: float = 0.0
    g: float = 0.0
    b: float = 0.0

    @classmethod
    def from_bytes(cls, r: int, g: int, b: int) -> 'RGBColor':
        """Create RGBColor from byte values (0-255)."""
        return cls(r / 255.0, g / 255.0, b / 255.0)

    @classmethod
    def from_hex(cls, hex_color: str) -> 'RGBColor':
        """Create RGBColor from hex color string (#RRGGBB or RRGGBB)."""
        hex_color = hex_color.lstrip('#')
        return cls.from_bytes(
            int(hex_color[0:2], 16),
            int(hex_color[2:4], 16),
            int(hex_color[4:6], 16),
        )

    def as_bytes(self) -> tuple[int, int, int]:
        """Channels as byte values (0-255)."""
        return (
            _float_to_byte(self.r),
            _float_to_byte(self.g),
            _float_to_byte(self.b),
        )

    @property
    def brightness(self) -> float:
        # HSV value is the max channel
        return max(self.r, self.g, self.b)

    @property
    def brightness_byte(self) -> int:
        return _float_to_byte(self.brightness)

    def with_brightness(self, brightness: float) -> 'RGBColor':
        """Return a copy rescaled to the given brightness (0.0-1.0), keeping hue and saturation."""
        h, s, _ = colorsys.rgb_to_hsv(self.r, self.g, self.b)
        r, g, b = colorsys.hsv_to_rgb(h, s, brightness)
        return RGBColor(r, g, b)

    def __str__(self) -> str:
        return '(%d, %d, %d)' % self.as_bytes()


@dataclass
class WhiteColor:
    """Warm/cold white channel pair (bytes 0-255).

    Firmware without an independent cold channel mirrors warm, so cold
    defaults to the warm value.
    """
    warm: int = 0
    cold: Optional[int] = field(default=None)

    def __post_init__(self):
        if self.cold is None:
            self.cold = self.warm


def _float_to_byte(value: float) -> int:
    return max(0, min(255, int(round(value * 255.0))))


# =============================================================================
# Color Model Interface
# =============================================================================

def bytes_to_rgb(r: int, g: int, b: int) -> RGBColor:
    return RGBColor.from_bytes(r, g, b)


def rgb_to_brightness_byte(r: int, g: int, b: int) -> int:
    """Brightness byte (HSV value) of an RGB byte triple."""
    return bytes_to_rgb(r, g, b).brightness_byte


def rescale_to_brightness(color: RGBColor, target: int) -> RGBColor:
    """Rescale color to a target brightness byte, preserving hue/saturation."""
    if target < 0 or target > 255:
        raise ValueError(f"Brightness must be between 0 and 255. Value passed: {target}")
    return color.with_brightness(target / 255.0)


# =============================================================================
# Unit Conversion
# =============================================================================

MAX_DELAY = 0x1f


def byte_to_percent(value: int) -> int:
    if value < 0 or value > 255:
        raise ValueError(f"Byte must be between 0 and 255. Value passed: {value}")
    return value * 100 // 255


def percent_to_byte(percent: int) -> int:
    if percent < 0 or percent > 100:
        raise ValueError(f"Percent must be between 0 and 100. Value passed: {percent}")
    return percent * 255 // 100


def delay_to_speed(delay: int) -> int:
    """Convert a pattern delay byte (1-31) to a speed percentage (0-100)."""
    if delay < 1 or delay > MAX_DELAY:
        raise ValueError(f"Delay must be between 1 and 31. Value passed: {delay}")
    inv_speed = (delay - 1) * 100 // (MAX_DELAY - 1)
    return 100 - inv_speed


def speed_to_delay(speed: int) -> int:
    """Convert a speed percentage (0-100) to a pattern delay byte (1-31)."""
    if speed < 0 or speed > 100:
        raise ValueError(f"Speed must be between 0 and 100. Value passed: {speed}")
    inv_speed = 100 - speed
    return inv_speed * (MAX_DELAY - 1) // 100 + 1


# =============================================================================
# Message Framing
# =============================================================================

def checksum(data: bytes) -> int:
    """Low byte of the sum of all bytes."""
    return sum(data) & 0xff


def build_message(payload: bytes, use_checksum: bool = True) -> bytes:
    """Frame a payload for the wire, appending the checksum if enabled."""
    if use_checksum:
        return bytes(payload) + bytes([checksum(payload)])
    return bytes(payload)


def verify_checksum(message: bytes) -> bool:
    """Check the trailing checksum byte of an inbound message."""
    if len(message) < 2:
        return False
    return checksum(message[:-1]) == message[-1]


def query_message(protocol: Protocol) -> bytes:
    if protocol == Protocol.LEDENET_ORIGINAL:
        return OLD_QUERY_MSG
    return NEW_QUERY_MSG


def power_message(protocol: Protocol, turn_on: bool) -> bytes:
    if protocol == Protocol.LEDENET_ORIGINAL:
        return OLD_ON_MSG if turn_on else OLD_OFF_MSG
    return NEW_ON_MSG if turn_on else NEW_OFF_MSG


# =============================================================================
# Message Creation Functions
# =============================================================================

def create_original_rgb_message(r: int, g: int, b: int) -> bytes:
    """Direct RGB message for the original LEDENET protocol (never checksummed)."""
    return bytes([ORIGINAL_RGB_HEAD, r, g, b, ORIGINAL_RGB_TAIL])


def create_color_message(
    protocol: Protocol,
    write_mask: int,
    red: int = 0,
    green: int = 0,
    blue: int = 0,
    warm_white: int = 0,
    cold_white: int = 0,
    persist: bool = True,
    single_write: bool = False,
) -> bytes:
    """
    Create a color/white set message (without checksum).

    Layout (LEDENET, 7 bytes):       head r g b ww mask 0f
    Layout (LEDENET_8BYTE, 8 bytes): head r g b ww cw mask 0f

    Devices in the single-write group take all channels at once and must not
    be sent a write mask (the mask byte stays zero).

    Args:
        protocol: Negotiated protocol variant
        write_mask: COLOR_ONLY / WHITE_ONLY / COLOR_AND_WHITE write mask
        persist: Store the color in the controller's memory (0x31) or not (0x41)
        single_write: Device accepts combined color+white writes

    Returns:
        Unframed message bytes
    """
    if protocol == Protocol.LEDENET:
        msg = bytearray(7)
        write_mask_idx = 5
    elif protocol == Protocol.LEDENET_8BYTE:
        msg = bytearray(8)
        write_mask_idx = 6
        msg[5] = cold_white
    else:
        raise UnsupportedOperationError(f"{protocol.value} does not support color set messages")

    msg[0] = SET_COLOR_PERSIST if persist else SET_COLOR_TRANSIENT
    msg[1] = red
    msg[2] = green
    msg[3] = blue
    msg[4] = warm_white
    if not single_write:
        msg[write_mask_idx] = write_mask
    msg[write_mask_idx + 1] = TERMINATOR
    return bytes(msg)


def create_preset_pattern_message(pattern: int, speed: int) -> bytes:
    if not PresetPattern.is_valid(pattern):
        raise ValueError(f"Invalid preset pattern: 0x{pattern:02x}")
    return bytes([SET_PATTERN, pattern, speed_to_delay(speed), TERMINATOR])


def create_set_clock_message(dt: datetime) -> bytes:
    """Create the 11-byte set-clock message for a datetime."""
    return SET_CLOCK_HEAD + bytes([
        dt.year - 2000,
        dt.month,
        dt.day,
        dt.hour,
        dt.minute,
        dt.second,
        dt.isoweekday(),  # Sunday is 7
        0x00,
        TERMINATOR,
    ])


# =============================================================================
# Response Parsing Functions
# =============================================================================

def determine_mode(pattern_code: int, ww_level: int, rgbw_capable: bool = False) -> Mode:
    """Infer the operating mode from the pattern code and warm white level."""
    if pattern_code in (0x61, 0x62):
        if rgbw_capable or ww_level == 0:
            return Mode.COLOR
        return Mode.WARM_WHITE
    if pattern_code == 0x60:
        return Mode.CUSTOM
    if pattern_code == 0x41:
        return Mode.COLOR
    if PresetPattern.is_valid(pattern_code):
        return Mode.PRESET
    if pattern_code == BuiltInTimer.SUNRISE:
        return Mode.SUNRISE
    if pattern_code == BuiltInTimer.SUNSET:
        return Mode.SUNSET
    return Mode.UNKNOWN


@dataclass
class DeviceState:
    """Fields decoded from a state query response.

    typical response (original):
    pos  0  1  2  3  4  5  6  7  8  9 10
       66 01 24 39 21 0a ff 00 00 01 99
        |  |  |  |  |  |  |  |  |  |  |
        |  |  |  |  |  |  |  |  |  |  checksum
        |  |  |  |  |  |  |  |  |  warmwhite
        |  |  |  |  |  |  |  |  blue
        |  |  |  |  |  |  |  green
        |  |  |  |  |  |  red
        |  |  |  |  |  speed: 0f = highest f0 is lowest
        |  |  |  |  <unknown>
        |  |  |  preset pattern
        |  |  on(23)/off(24)
        |  type
        msg head

    response from a 5-channel controller adds cold white at 11 and the
    color mode (f0 colors, 0f whites, 00 all) at 12, checksum at 13.
    """
    raw: bytes
    device_type: int
    power: Optional[bool]
    pattern_code: int
    ww_level: int
    rgbw_single_write: bool
    rgbw_capable: bool
    eight_byte_protocol: bool
    original_protocol: bool
    mode: Mode


def parse_state(data: bytes) -> DeviceState:
    """Decode a state query response (11 or 14 bytes)."""
    if len(data) < QUERY_LEN_ORIGINAL:
        raise TransportError(f"State response too short: {len(data)} bytes")

    device_type = data[1]
    rgbw_capable = device_type in RGBW_CAPABLE_TYPES

    power_state = data[2]
    if power_state == POWER_ON:
        power = True
    elif power_state == POWER_OFF:
        power = False
    else:
        power = None

    return DeviceState(
        raw=bytes(data),
        device_type=device_type,
        power=power,
        pattern_code=data[3],
        ww_level=data[9],
        rgbw_single_write=device_type in RGBW_SINGLE_WRITE_TYPES,
        rgbw_capable=rgbw_capable,
        eight_byte_protocol=device_type in EIGHT_BYTE_TYPES,
        original_protocol=device_type == ORIGINAL_TYPE,
        mode=determine_mode(data[3], data[9], rgbw_capable),
    )


def parse_clock(data: bytes) -> datetime:
    """Decode a get-clock response into a datetime."""
    if len(data) < 9:
        raise TransportError(f"Clock response too short: {len(data)} bytes")
    try:
        return datetime(2000 + data[3], data[4], data[5], data[6], data[7], data[8])
    except ValueError as exc:
        raise TransportError(f"Invalid clock response: {bytes(data).hex(' ')}") from exc


def parse_discovery_reply(data: bytes) -> Optional[tuple[str, str, str]]:
    """Parse an 'ip,id,model' discovery reply. Returns None if malformed."""
    try:
        message = data.decode('ascii').strip()
    except UnicodeDecodeError:
        return None
    parts = message.split(',')
    if len(parts) < 3 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1], parts[2]
