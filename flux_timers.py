#!/usr/bin/env python3
"""
FluxLED Timer Codec

Encodes and decodes the controller's on-device schedule table: six 14-byte
slots, each holding one of several mutually exclusive payload layouts.

Slot layout:
    f0 0f 08 10 10 15 00 00 25 1f 00 00 00 f0
     0  1  2  3  4  5  6  7  8  9 10 11 12 13

    0:  f0 when active entry / 0f when not active
    1:  year - 2000 when no repeat, else 0
    2:  month when no repeat, else 0
    3:  day of month when no repeat, else 0
    4:  hour
    5:  minute
    6:  0
    7:  repeat mask, Mo=0x02 Tu=0x04 We=0x08 Th=0x10 Fr=0x20 Sa=0x40 Su=0x80
    8:  pattern code (0x61 solid color, a1/a2 built-in, preset code, ...)
    9:  red / delay for preset pattern / duration for built-in
    10: green / start brightness for built-in
    11: blue / end brightness for built-in
    12: warm white level
    13: 0f = turn off, f0 = turn on
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntFlag
from typing import ClassVar, Optional, Union

from flux_protocol import (
    SET_TIMERS_HEAD,
    SET_TIMERS_TAIL,
    TIMERS_RESPONSE_LEN,
    BuiltInTimer,
    PresetPattern,
    RGBColor,
    UnrecognizedTimerFormatError,
    byte_to_percent,
    delay_to_speed,
    percent_to_byte,
    speed_to_delay,
)


# =============================================================================
# Constants
# =============================================================================

TIMER_SLOT_LEN = 14
TIMER_SLOT_COUNT = 6
TIMER_TABLE_HEADER_LEN = 2

ACTIVE = 0xf0
INACTIVE = 0x0f
TURN_ON = 0xf0
TURN_OFF = 0x0f

DEFAULT_PATTERN_CODE = 0x00
COLOR_PATTERN_CODE = 0x61

# Written for new warm white slots. Any code outside the color, built-in and
# preset codes decodes as warm white, and 0x62 is the firmware's white code.
WARM_WHITE_PATTERN_CODE = 0x62

NOT_A_DAY_BIT = 0x01


# =============================================================================
# Enums
# =============================================================================

class TimerKind(Enum):
    TURN_OFF = 'off'
    DEFAULT = 'default'
    COLOR = 'color'
    BUILTIN = 'builtin'
    PRESET = 'preset'
    WARM_WHITE = 'ww'


class Days(IntFlag):
    NONE = 0x00
    MONDAY = 0x02
    TUESDAY = 0x04
    WEDNESDAY = 0x08
    THURSDAY = 0x10
    FRIDAY = 0x20
    SATURDAY = 0x40
    SUNDAY = 0x80
    WEEKDAYS = MONDAY | TUESDAY | WEDNESDAY | THURSDAY | FRIDAY
    WEEKEND = SATURDAY | SUNDAY
    EVERYDAY = WEEKDAYS | WEEKEND

    @classmethod
    def from_digits(cls, digits: str) -> 'Days':
        """Build a mask from weekday digits, 0 = Sunday ... 6 = Saturday."""
        order = [cls.SUNDAY, cls.MONDAY, cls.TUESDAY, cls.WEDNESDAY,
                 cls.THURSDAY, cls.FRIDAY, cls.SATURDAY]
        mask = cls.NONE
        for c in digits:
            if c not in '0123456':
                raise ValueError(f"Repeat days can only contain digits 0-6: {digits}")
            mask |= order[int(c)]
        return mask

    @classmethod
    def from_slot_byte(cls, value: int) -> 'Days':
        """
        Read the repeat byte of a timer slot.

        Bit 0 is not a day. A byte with it set (0xff included) is not a valid
        Mo..Su mask and is read as no repeat.
        """
        if value & NOT_A_DAY_BIT:
            return cls.NONE
        return cls(value)


_DAY_NAMES = [
    (Days.MONDAY, 'Mo'),
    (Days.TUESDAY, 'Tu'),
    (Days.WEDNESDAY, 'We'),
    (Days.THURSDAY, 'Th'),
    (Days.FRIDAY, 'Fr'),
    (Days.SATURDAY, 'Sa'),
    (Days.SUNDAY, 'Su'),
]


def day_mask_to_str(mask: int) -> str:
    """Readable name for a repeat mask ('Everyday', 'Weekend', 'Mo,We')."""
    for combo, name in ((Days.EVERYDAY, 'Everyday'),
                        (Days.WEEKDAYS, 'Weekdays'),
                        (Days.WEEKEND, 'Weekend')):
        if mask == combo:
            return name
    names = [name for day, name in _DAY_NAMES if mask & day]
    return ','.join(names) if names else 'None'


# =============================================================================
# Timer Payloads
# =============================================================================

@dataclass(frozen=True)
class TurnOffPayload:
    kind: ClassVar[TimerKind] = TimerKind.TURN_OFF

    def describe(self) -> str:
        return "Turn Off"


@dataclass(frozen=True)
class DefaultPayload:
    kind: ClassVar[TimerKind] = TimerKind.DEFAULT

    def describe(self) -> str:
        return "Turn On"


@dataclass(frozen=True)
class ColorPayload:
    kind: ClassVar[TimerKind] = TimerKind.COLOR
    red: int = 0
    green: int = 0
    blue: int = 0

    @classmethod
    def from_color(cls, color: RGBColor) -> 'ColorPayload':
        return cls(*color.as_bytes())

    @property
    def color(self) -> RGBColor:
        return RGBColor.from_bytes(self.red, self.green, self.blue)

    def describe(self) -> str:
        return f"Color: ({self.red}, {self.green}, {self.blue})"


@dataclass(frozen=True)
class BuiltInPayload:
    """Sunrise/sunset fade. Brightness values are stored as raw bytes."""
    kind: ClassVar[TimerKind] = TimerKind.BUILTIN
    program: BuiltInTimer = BuiltInTimer.SUNRISE
    duration: int = 0
    start: int = 0
    end: int = 0

    @classmethod
    def from_percent(cls, program: BuiltInTimer, duration: int,
                     brightness_start: int, brightness_end: int) -> 'BuiltInPayload':
        return cls(
            program=BuiltInTimer(program),
            duration=duration,
            start=percent_to_byte(brightness_start),
            end=percent_to_byte(brightness_end),
        )

    @property
    def brightness_start(self) -> int:
        return byte_to_percent(self.start)

    @property
    def brightness_end(self) -> int:
        return byte_to_percent(self.end)

    def describe(self) -> str:
        return (f"{self.program.name.title()} (Duration:{self.duration} minutes, "
                f"Brightness: {self.brightness_start}% -> {self.brightness_end}%)")


@dataclass(frozen=True)
class PresetPayload:
    """Preset pattern. Speed is stored as the inverted delay byte (1-31)."""
    kind: ClassVar[TimerKind] = TimerKind.PRESET
    pattern: PresetPattern = PresetPattern.SEVEN_COLOR_CROSS_FADE
    delay: int = 1

    @classmethod
    def from_speed(cls, pattern: PresetPattern, speed: int) -> 'PresetPayload':
        return cls(pattern=PresetPattern(pattern), delay=speed_to_delay(speed))

    @property
    def speed(self) -> int:
        return delay_to_speed(self.delay)

    def describe(self) -> str:
        try:
            speed = f"{self.speed}%"
        except ValueError:
            speed = f"delay 0x{self.delay:02x}"
        return f"{self.pattern.label} (Speed:{speed})"


@dataclass(frozen=True)
class WarmWhitePayload:
    kind: ClassVar[TimerKind] = TimerKind.WARM_WHITE
    level: int = 0
    pattern_code: int = WARM_WHITE_PATTERN_CODE

    def __post_init__(self):
        if self.level == 0:
            raise ValueError("Warm white timer level must be non-zero")
        # these codes decode as another payload kind
        if (self.pattern_code in (DEFAULT_PATTERN_CODE, COLOR_PATTERN_CODE,
                                  BuiltInTimer.SUNRISE, BuiltInTimer.SUNSET)
                or PresetPattern.is_valid(self.pattern_code)):
            raise ValueError(f"Pattern code 0x{self.pattern_code:02x} is not a warm white code")

    @classmethod
    def from_percent(cls, warmth_level: int) -> 'WarmWhitePayload':
        return cls(level=percent_to_byte(warmth_level))

    @property
    def warmth_level(self) -> int:
        return byte_to_percent(self.level)

    def describe(self) -> str:
        return f"Warm White: {self.warmth_level}%"


TimerPayload = Union[
    TurnOffPayload,
    DefaultPayload,
    ColorPayload,
    BuiltInPayload,
    PresetPayload,
    WarmWhitePayload,
]


# =============================================================================
# Timer Slot
# =============================================================================

@dataclass
class LedTimer:
    """
    One schedule slot.

    A slot fires either once (year/month/day/hour/minute) or on the days in
    repeat_days (hour/minute only). Date fields are zero while repeating.
    """
    payload: TimerPayload = field(default_factory=TurnOffPayload)
    active: bool = False
    hour: int = 0
    minute: int = 0
    year: int = 0
    month: int = 0
    day: int = 0
    repeat_days: Days = Days.NONE

    @classmethod
    def once(cls, when: datetime, payload: TimerPayload, active: bool = True) -> 'LedTimer':
        return cls(
            payload=payload,
            active=active,
            hour=when.hour,
            minute=when.minute,
            year=when.year,
            month=when.month,
            day=when.day,
        )

    @classmethod
    def repeating(cls, days: Days, hour: int, minute: int,
                  payload: TimerPayload, active: bool = True) -> 'LedTimer':
        if not days:
            raise ValueError("Repeating timer needs at least one day")
        return cls(
            payload=payload,
            active=active,
            hour=hour,
            minute=minute,
            repeat_days=Days(days),
        )

    @property
    def kind(self) -> TimerKind:
        return self.payload.kind

    @property
    def is_repeating(self) -> bool:
        return self.repeat_days != Days.NONE

    @property
    def schedule(self) -> Optional[datetime]:
        """Absolute fire time of a one-shot slot, or None."""
        if self.is_repeating:
            return None
        try:
            return datetime(self.year, self.month, self.day, self.hour, self.minute)
        except ValueError:
            return None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        when = self.schedule
        if when is None:
            return False
        return when < (now or datetime.now())

    def to_bytes(self) -> bytes:
        return encode_timer(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'LedTimer':
        return decode_timer(data)

    def describe(self) -> str:
        txt = "[ACTIVE  ] " if self.active else "[INACTIVE] "
        txt += f"{self.hour:02d}:{self.minute:02d} "
        if self.is_repeating:
            txt += f"Repeats {day_mask_to_str(self.repeat_days)} "
        else:
            txt += f"Once: {self.year:04d}-{self.month:02d}-{self.day:02d} "
        return txt + self.payload.describe()

    def __str__(self) -> str:
        return self.describe()


# =============================================================================
# Slot Codec
# =============================================================================

def decode_timer(data: bytes, slot: Optional[int] = None) -> LedTimer:
    """
    Decode one 14-byte slot.

    Raises:
        UnrecognizedTimerFormatError: The slot matches none of the layouts
    """
    if len(data) != TIMER_SLOT_LEN:
        raise ValueError(f"Timer slot must be {TIMER_SLOT_LEN} bytes, got {len(data)}")

    payload = _decode_payload(data, slot)

    timer = LedTimer(
        payload=payload,
        active=data[0] == ACTIVE,
        hour=data[4],
        minute=data[5],
        repeat_days=Days.from_slot_byte(data[7]),
    )
    if not timer.is_repeating:
        timer.year = 2000 + data[1]
        timer.month = data[2]
        timer.day = data[3]
    return timer


def _decode_payload(data: bytes, slot: Optional[int]) -> TimerPayload:
    # Off marker wins over everything else
    if data[13] == TURN_OFF:
        return TurnOffPayload()

    pattern_code = data[8]
    if pattern_code == DEFAULT_PATTERN_CODE:
        return DefaultPayload()
    if pattern_code == COLOR_PATTERN_CODE:
        return ColorPayload(data[9], data[10], data[11])
    if pattern_code in (BuiltInTimer.SUNRISE, BuiltInTimer.SUNSET):
        return BuiltInPayload(
            program=BuiltInTimer(pattern_code),
            duration=data[9],
            start=data[10],
            end=data[11],
        )
    if PresetPattern.is_valid(pattern_code):
        return PresetPayload(pattern=PresetPattern(pattern_code), delay=data[9])
    if data[12] != 0:
        return WarmWhitePayload(level=data[12], pattern_code=pattern_code)

    raise UnrecognizedTimerFormatError(data, slot)


def encode_timer(timer: LedTimer) -> bytes:
    """Encode one slot to its 14-byte layout."""
    msg = bytearray(TIMER_SLOT_LEN)
    msg[0] = ACTIVE if timer.active else INACTIVE

    if timer.is_repeating:
        msg[7] = int(timer.repeat_days)
    else:
        msg[1] = timer.year - 2000 if timer.year >= 2000 else timer.year
        msg[2] = timer.month
        msg[3] = timer.day
    msg[4] = timer.hour
    msg[5] = timer.minute

    payload = timer.payload
    kind = payload.kind
    msg[13] = TURN_OFF if kind == TimerKind.TURN_OFF else TURN_ON

    if kind == TimerKind.COLOR:
        msg[8] = COLOR_PATTERN_CODE
        msg[9] = payload.red
        msg[10] = payload.green
        msg[11] = payload.blue
    elif kind == TimerKind.BUILTIN:
        msg[8] = int(payload.program)
        msg[9] = payload.duration
        msg[10] = payload.start
        msg[11] = payload.end
    elif kind == TimerKind.PRESET:
        msg[8] = int(payload.pattern)
        msg[9] = payload.delay
    elif kind == TimerKind.WARM_WHITE:
        msg[8] = payload.pattern_code
        msg[12] = payload.level

    return bytes(msg)


# =============================================================================
# Table Codec
# =============================================================================

TimerSlotResult = Union[LedTimer, UnrecognizedTimerFormatError]


def parse_timer_table(data: bytes) -> list[TimerSlotResult]:
    """
    Decode the get-timers response (2-byte header + 6 slots).

    A slot that fails to decode is returned as its UnrecognizedTimerFormatError
    so the remaining slots are still available.
    """
    if len(data) < TIMERS_RESPONSE_LEN:
        raise ValueError(f"Timer table too short: {len(data)} bytes, need {TIMERS_RESPONSE_LEN}")

    results: list[TimerSlotResult] = []
    for i in range(TIMER_SLOT_COUNT):
        start = TIMER_TABLE_HEADER_LEN + i * TIMER_SLOT_LEN
        try:
            results.append(decode_timer(data[start:start + TIMER_SLOT_LEN], slot=i))
        except UnrecognizedTimerFormatError as exc:
            results.append(exc)
    return results


def prepare_timer_table(timers: list[LedTimer]) -> list[LedTimer]:
    """Pad to six slots with inactive turn-off timers, active slots first."""
    if sum(1 for t in timers if t.active) > TIMER_SLOT_COUNT:
        raise ValueError(f"More than {TIMER_SLOT_COUNT} active timers specified")

    padded = list(timers)
    while len(padded) < TIMER_SLOT_COUNT:
        padded.append(LedTimer())

    # sorted() is stable, relative order within each group is kept
    ordered = sorted(padded, key=lambda t: not t.active)
    return ordered[:TIMER_SLOT_COUNT]


def build_timer_table(timers: list[LedTimer]) -> bytes:
    """Create the set-timers message body (without checksum)."""
    msg = bytearray([SET_TIMERS_HEAD])
    for timer in prepare_timer_table(timers):
        msg += encode_timer(timer)
    msg += SET_TIMERS_TAIL
    return bytes(msg)
