"""Unit tests for the timer slot and timer table codec in flux_timers."""

import unittest
from datetime import datetime

from flux_protocol import (
    BuiltInTimer,
    PresetPattern,
    UnrecognizedTimerFormatError,
    build_message,
)
from flux_timers import (
    BuiltInPayload,
    ColorPayload,
    Days,
    DefaultPayload,
    LedTimer,
    PresetPayload,
    TimerKind,
    TurnOffPayload,
    WarmWhitePayload,
    build_timer_table,
    day_mask_to_str,
    decode_timer,
    encode_timer,
    parse_timer_table,
    prepare_timer_table,
)


def slot(hex_data: str) -> bytes:
    return bytes.fromhex(hex_data)


class TestDecodeTimer(unittest.TestCase):
    """Tests for decode_timer() dispatch."""

    def test_color_once(self):
        """Test an active one-shot color slot at 10:30; a 0xff repeat byte is no repeat."""
        timer = decode_timer(slot("f0 00 00 00 0a 1e 00 ff 61 ff 00 00 00 f0"))

        self.assertTrue(timer.active)
        self.assertEqual(timer.kind, TimerKind.COLOR)
        self.assertEqual((timer.hour, timer.minute), (10, 30))
        self.assertFalse(timer.is_repeating)
        self.assertEqual(timer.repeat_days, Days.NONE)
        self.assertEqual(timer.payload, ColorPayload(255, 0, 0))

    def test_color_with_repeat_mask(self):
        """Test a byte 7 made of day bits only is read as the repeat mask."""
        timer = decode_timer(slot("f0 1a 0a 14 0a 1e 00 fe 61 ff 00 00 00 f0"))

        self.assertTrue(timer.is_repeating)
        self.assertEqual(timer.repeat_days, Days.EVERYDAY)
        self.assertEqual((timer.year, timer.month, timer.day), (0, 0, 0))
        self.assertEqual(timer.payload.color.as_bytes(), (255, 0, 0))
        self.assertIsNone(timer.schedule)

    def test_repeat_byte_with_bit_zero(self):
        """Test any repeat byte with bit 0 set falls back to the date fields."""
        timer = decode_timer(slot("f0 1a 0a 14 07 0f 00 03 00 00 00 00 00 f0"))

        self.assertFalse(timer.is_repeating)
        self.assertEqual(timer.schedule, datetime(2026, 10, 20, 7, 15))

    def test_once_with_date(self):
        """Test date fields of a one-shot slot."""
        timer = decode_timer(slot("f0 1a 0a 14 07 0f 00 00 00 00 00 00 00 f0"))

        self.assertEqual(timer.kind, TimerKind.DEFAULT)
        self.assertEqual(timer.schedule, datetime(2026, 10, 20, 7, 15))

    def test_off_marker_wins(self):
        """Test the off terminator yields a turn-off slot whatever else is set."""
        buffers = [
            "f0 00 00 00 0a 1e 00 ff 61 ff 00 00 00 0f",
            "0f 1a 0a 14 07 0f 00 00 25 10 00 00 00 0f",
            "f0 00 00 00 06 00 00 3e a1 1e 00 ff 00 0f",
            "f0 00 00 00 00 00 00 00 99 00 00 00 00 0f",
            "ff ff ff ff ff ff ff ff ff ff ff ff ff 0f",
        ]
        for hex_data in buffers:
            with self.subTest(data=hex_data):
                self.assertEqual(decode_timer(slot(hex_data)).payload, TurnOffPayload())

    def test_builtin(self):
        """Test a sunrise slot with raw brightness bytes."""
        timer = decode_timer(slot("f0 00 00 00 06 00 00 3e a1 1e 00 ff 00 f0"))

        self.assertEqual(timer.kind, TimerKind.BUILTIN)
        self.assertEqual(timer.payload.program, BuiltInTimer.SUNRISE)
        self.assertEqual(timer.payload.duration, 30)
        self.assertEqual(timer.payload.brightness_start, 0)
        self.assertEqual(timer.payload.brightness_end, 100)
        self.assertEqual(timer.repeat_days, Days.WEEKDAYS)

    def test_preset(self):
        """Test a preset slot decodes the delay byte."""
        timer = decode_timer(slot("f0 00 00 00 12 00 00 80 26 01 00 00 00 f0"))

        self.assertEqual(timer.kind, TimerKind.PRESET)
        self.assertEqual(timer.payload.pattern, PresetPattern.RED_GRADUAL_CHANGE)
        self.assertEqual(timer.payload.speed, 100)

    def test_warm_white(self):
        """Test a non-zero warm white level with an unlisted pattern code."""
        timer = decode_timer(slot("f0 00 00 00 16 00 00 fe 62 00 00 00 80 f0"))

        self.assertEqual(timer.kind, TimerKind.WARM_WHITE)
        self.assertEqual(timer.payload.level, 0x80)
        self.assertEqual(timer.payload.pattern_code, 0x62)

    def test_unrecognized(self):
        """Test ambiguous slots raise instead of guessing."""
        with self.assertRaises(UnrecognizedTimerFormatError) as ctx:
            decode_timer(slot("f0 00 00 00 16 00 00 fe 99 00 00 00 00 f0"), slot=4)
        self.assertEqual(ctx.exception.slot, 4)
        self.assertEqual(ctx.exception.data[8], 0x99)

    def test_wrong_length(self):
        """Test slots must be exactly 14 bytes."""
        with self.assertRaises(ValueError):
            decode_timer(bytes(13))


class TestEncodeTimer(unittest.TestCase):
    """Tests for encode_timer() and round trips."""

    def test_encode_repeating_color(self):
        """Test hour and minute are written for repeating slots."""
        timer = LedTimer.repeating(Days.WEEKEND, 9, 45, ColorPayload(1, 2, 3))
        self.assertEqual(encode_timer(timer), slot("f0 00 00 00 09 2d 00 c0 61 01 02 03 00 f0"))

    def test_encode_inactive_default(self):
        """Test an empty slot is an inactive turn-off."""
        self.assertEqual(encode_timer(LedTimer()), slot("0f 00 00 00 00 00 00 00 00 00 00 00 00 0f"))

    def test_round_trip_all_kinds(self):
        """Test every payload kind survives encode/decode for once and repeating slots."""
        payloads = [
            TurnOffPayload(),
            DefaultPayload(),
            ColorPayload(10, 20, 30),
            BuiltInPayload.from_percent(BuiltInTimer.SUNSET, 45, 100, 0),
            PresetPayload.from_speed(PresetPattern.SEVEN_COLOR_JUMPING, 40),
            WarmWhitePayload.from_percent(75),
        ]
        for payload in payloads:
            for timer in (
                LedTimer.once(datetime(2026, 12, 24, 18, 5), payload),
                LedTimer.repeating(Days.MONDAY | Days.FRIDAY, 6, 30, payload, active=False),
            ):
                with self.subTest(payload=payload, repeating=timer.is_repeating):
                    self.assertEqual(decode_timer(encode_timer(timer)), timer)

    def test_decoded_warm_white_reencodes_exactly(self):
        """Test a decoded warm white slot keeps its original pattern byte."""
        raw = slot("f0 00 00 00 16 00 00 fe 40 00 00 00 80 f0")
        self.assertEqual(encode_timer(decode_timer(raw)), raw)

    def test_warm_white_level_zero_rejected(self):
        """Test a zero warm white level cannot be encoded."""
        with self.assertRaises(ValueError):
            WarmWhitePayload.from_percent(0)

    def test_warm_white_rejects_other_kind_codes(self):
        """Test a warm white slot cannot carry a code that decodes as another kind."""
        for code in (0x00, 0x61, 0xa1, 0xa2, 0x25, 0x38):
            with self.subTest(code=code):
                with self.assertRaises(ValueError):
                    WarmWhitePayload(level=5, pattern_code=code)

        payload = WarmWhitePayload(level=5, pattern_code=0x40)
        timer = LedTimer.repeating(Days.MONDAY, 6, 0, payload)
        self.assertEqual(decode_timer(encode_timer(timer)).payload, payload)

    def test_repeating_needs_days(self):
        """Test a repeating timer needs at least one day."""
        with self.assertRaises(ValueError):
            LedTimer.repeating(Days.NONE, 8, 0, DefaultPayload())

    def test_describe(self):
        """Test human readable descriptions."""
        timer = LedTimer.repeating(Days.WEEKDAYS, 7, 5, WarmWhitePayload.from_percent(100))
        self.assertEqual(timer.describe(), "[ACTIVE  ] 07:05 Repeats Weekdays Warm White: 100%")

        once = LedTimer.once(datetime(2026, 1, 2, 23, 0), TurnOffPayload(), active=False)
        self.assertEqual(str(once), "[INACTIVE] 23:00 Once: 2026-01-02 Turn Off")

    def test_is_expired(self):
        """Test only past one-shot timers are expired."""
        once = LedTimer.once(datetime(2026, 1, 2, 23, 0), DefaultPayload())
        self.assertTrue(once.is_expired(now=datetime(2026, 1, 3)))
        self.assertFalse(once.is_expired(now=datetime(2026, 1, 1)))
        repeating = LedTimer.repeating(Days.SUNDAY, 8, 0, DefaultPayload())
        self.assertFalse(repeating.is_expired(now=datetime(2030, 1, 1)))


class TestDays(unittest.TestCase):
    """Tests for the repeat mask helpers."""

    def test_from_digits(self):
        """Test 0 is Sunday and 6 is Saturday."""
        self.assertEqual(Days.from_digits("0123456"), Days.EVERYDAY)
        self.assertEqual(Days.from_digits("06"), Days.WEEKEND)
        self.assertEqual(Days.from_digits("1"), Days.MONDAY)

    def test_from_digits_invalid(self):
        """Test digits outside 0-6 are rejected."""
        with self.assertRaises(ValueError):
            Days.from_digits("7")

    def test_day_mask_to_str(self):
        self.assertEqual(day_mask_to_str(Days.EVERYDAY), "Everyday")
        self.assertEqual(day_mask_to_str(Days.MONDAY | Days.WEDNESDAY), "Mo,We")
        self.assertEqual(day_mask_to_str(0), "None")


class TestTimerTable(unittest.TestCase):
    """Tests for reading and writing the six-slot table."""

    def test_parse_table_keeps_bad_slot_in_place(self):
        """Test an unrecognized slot does not abort decoding of the others."""
        slots = [
            "f0 00 00 00 0a 1e 00 00 61 ff 00 00 00 f0",
            "0f 00 00 00 00 00 00 00 00 00 00 00 00 0f",
            "f0 00 00 00 16 00 00 fe 99 00 00 00 00 f0",
            "0f 00 00 00 00 00 00 00 00 00 00 00 00 0f",
            "f0 00 00 00 06 00 00 3e a1 1e 00 ff 00 f0",
            "0f 00 00 00 00 00 00 00 00 00 00 00 00 0f",
        ]
        data = bytes([0x0f, 0x22]) + b''.join(slot(s) for s in slots) + bytes([0x00, 0x00])
        self.assertEqual(len(data), 88)

        results = parse_timer_table(data)

        self.assertEqual(len(results), 6)
        self.assertEqual(results[0].kind, TimerKind.COLOR)
        self.assertIsInstance(results[2], UnrecognizedTimerFormatError)
        self.assertEqual(results[2].slot, 2)
        self.assertEqual(results[4].kind, TimerKind.BUILTIN)

    def test_parse_table_too_short(self):
        with self.assertRaises(ValueError):
            parse_timer_table(bytes(50))

    def test_four_slots_padded_and_ordered(self):
        """Test padding to six slots with active slots moved first, order kept."""
        t1 = LedTimer.repeating(Days.MONDAY, 1, 0, DefaultPayload(), active=False)
        t2 = LedTimer.repeating(Days.MONDAY, 2, 0, DefaultPayload())
        t3 = LedTimer.repeating(Days.MONDAY, 3, 0, DefaultPayload(), active=False)
        t4 = LedTimer.repeating(Days.MONDAY, 4, 0, DefaultPayload())

        table = build_timer_table([t1, t2, t3, t4])

        self.assertEqual(len(build_message(table)), 88)
        self.assertEqual(table[0], 0x21)
        self.assertEqual(table[-2:], bytes([0x00, 0xf0]))

        slots = [decode_timer(table[1 + i * 14:15 + i * 14]) for i in range(6)]
        self.assertEqual([s.hour for s in slots[:4]], [2, 4, 1, 3])
        for empty in slots[4:]:
            self.assertFalse(empty.active)
            self.assertEqual(empty.kind, TimerKind.TURN_OFF)

    def test_prepare_drops_extra_inactive(self):
        """Test inactive timers beyond six are dropped."""
        timers = [LedTimer.repeating(Days.MONDAY, h, 0, DefaultPayload()) for h in range(6)]
        timers.insert(0, LedTimer())
        prepared = prepare_timer_table(timers)

        self.assertEqual(len(prepared), 6)
        self.assertTrue(all(t.active for t in prepared))

    def test_too_many_active(self):
        """Test more than six active timers are rejected."""
        timers = [LedTimer.repeating(Days.MONDAY, h, 0, DefaultPayload()) for h in range(7)]
        with self.assertRaises(ValueError):
            build_timer_table(timers)


if __name__ == '__main__':
    unittest.main()
