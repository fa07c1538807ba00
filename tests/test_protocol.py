"""Unit tests for message framing, conversions and state decoding in flux_protocol."""

import unittest
from datetime import datetime

from flux_protocol import (
    COLOR_AND_WHITE_WRITEMASK,
    COLOR_ONLY_WRITEMASK,
    NEW_OFF_MSG,
    NEW_ON_MSG,
    NEW_QUERY_MSG,
    OLD_OFF_MSG,
    OLD_QUERY_MSG,
    WHITE_ONLY_WRITEMASK,
    Mode,
    PresetPattern,
    Protocol,
    RGBColor,
    TransportError,
    UnsupportedOperationError,
    WhiteColor,
    build_message,
    byte_to_percent,
    checksum,
    create_color_message,
    create_original_rgb_message,
    create_preset_pattern_message,
    create_set_clock_message,
    delay_to_speed,
    determine_mode,
    parse_clock,
    parse_discovery_reply,
    parse_state,
    percent_to_byte,
    power_message,
    query_message,
    rescale_to_brightness,
    rgb_to_brightness_byte,
    speed_to_delay,
    verify_checksum,
)


class TestFraming(unittest.TestCase):
    """Tests for checksum framing."""

    def test_checksum_is_low_byte_of_sum(self):
        """Test checksum wraps at 256."""
        self.assertEqual(checksum(bytes([0x81, 0x8a, 0x8b])), 0x96)
        self.assertEqual(checksum(bytes([0xff, 0x02])), 0x01)
        self.assertEqual(checksum(b''), 0)

    def test_build_message_appends_checksum(self):
        """Test exactly one checksum byte is appended."""
        payload = bytes([0x71, 0x23, 0x0f])
        msg = build_message(payload)

        self.assertEqual(len(msg), len(payload) + 1)
        self.assertEqual(msg[:-1], payload)
        self.assertEqual(msg[-1], (0x71 + 0x23 + 0x0f) & 0xff)

    def test_build_message_without_checksum(self):
        """Test output equals input when checksum is disabled."""
        payload = bytes([0xef, 0x01, 0x77])
        self.assertEqual(build_message(payload, use_checksum=False), payload)

    def test_verify_checksum(self):
        """Test inbound checksum verification."""
        msg = build_message(bytes([0x81, 0x25, 0x23, 0x61]))
        self.assertTrue(verify_checksum(msg))
        self.assertFalse(verify_checksum(msg[:-1] + bytes([msg[-1] ^ 0xff])))
        self.assertFalse(verify_checksum(b'\x01'))

    def test_variant_messages(self):
        """Test query and power messages follow the protocol variant."""
        self.assertEqual(query_message(Protocol.LEDENET), NEW_QUERY_MSG)
        self.assertEqual(query_message(Protocol.LEDENET_8BYTE), NEW_QUERY_MSG)
        self.assertEqual(query_message(Protocol.LEDENET_ORIGINAL), OLD_QUERY_MSG)
        self.assertEqual(power_message(Protocol.LEDENET, True), NEW_ON_MSG)
        self.assertEqual(power_message(Protocol.LEDENET_8BYTE, False), NEW_OFF_MSG)
        self.assertEqual(power_message(Protocol.LEDENET_ORIGINAL, False), OLD_OFF_MSG)


class TestConversions(unittest.TestCase):
    """Tests for percent/byte and speed/delay conversions."""

    def test_speed_delay_bounds(self):
        """Test the delay byte always stays within 1-31."""
        self.assertEqual(speed_to_delay(100), 1)
        self.assertEqual(speed_to_delay(0), 31)
        for speed in range(101):
            self.assertTrue(1 <= speed_to_delay(speed) <= 31)

    def test_speed_round_trip(self):
        """Test speed survives a round trip up to the delay resolution."""
        for speed in range(101):
            self.assertLessEqual(abs(delay_to_speed(speed_to_delay(speed)) - speed), 4)
        self.assertEqual(delay_to_speed(speed_to_delay(50)), 50)

    def test_speed_out_of_range(self):
        """Test speeds outside 0-100 are rejected."""
        with self.assertRaises(ValueError):
            speed_to_delay(-1)
        with self.assertRaises(ValueError):
            speed_to_delay(101)
        with self.assertRaises(ValueError):
            delay_to_speed(0)
        with self.assertRaises(ValueError):
            delay_to_speed(32)

    def test_percent_round_trip(self):
        """Test percent survives a round trip within one point."""
        for percent in range(101):
            self.assertLessEqual(abs(byte_to_percent(percent_to_byte(percent)) - percent), 1)
        self.assertEqual(percent_to_byte(100), 255)
        self.assertEqual(percent_to_byte(0), 0)

    def test_percent_out_of_range(self):
        """Test percentages outside 0-100 are rejected."""
        with self.assertRaises(ValueError):
            percent_to_byte(101)
        with self.assertRaises(ValueError):
            percent_to_byte(-5)
        with self.assertRaises(ValueError):
            byte_to_percent(256)


class TestColorModel(unittest.TestCase):
    """Tests for RGB helpers."""

    def test_brightness_byte(self):
        """Test brightness is the largest channel."""
        self.assertEqual(rgb_to_brightness_byte(10, 200, 30), 200)
        self.assertEqual(rgb_to_brightness_byte(0, 0, 0), 0)

    def test_rescale_keeps_hue(self):
        """Test rescaling changes brightness but not the channel ratios."""
        color = rescale_to_brightness(RGBColor.from_bytes(255, 0, 0), 128)
        self.assertEqual(color.as_bytes(), (128, 0, 0))

        orange = rescale_to_brightness(RGBColor.from_bytes(100, 50, 0), 200)
        self.assertEqual(orange.as_bytes(), (200, 100, 0))

    def test_rescale_out_of_range(self):
        """Test target brightness must be a byte."""
        with self.assertRaises(ValueError):
            rescale_to_brightness(RGBColor(1.0, 1.0, 1.0), 300)

    def test_from_hex(self):
        """Test hex colors with and without leading '#'."""
        self.assertEqual(RGBColor.from_hex('#ff8000').as_bytes(), (255, 128, 0))
        self.assertEqual(RGBColor.from_hex('0000ff').as_bytes(), (0, 0, 255))

    def test_white_color_defaults_cold_to_warm(self):
        """Test cold white follows warm white when not given."""
        self.assertEqual(WhiteColor(100).cold, 100)
        self.assertEqual(WhiteColor(100, 20).cold, 20)


class TestColorMessages(unittest.TestCase):
    """Tests for set-color message layouts."""

    def test_ledenet_color_only(self):
        """Test 7-byte layout with write mask at index 5."""
        msg = create_color_message(Protocol.LEDENET, COLOR_ONLY_WRITEMASK, red=1, green=2, blue=3)
        self.assertEqual(msg, bytes([0x31, 0x01, 0x02, 0x03, 0x00, 0xf0, 0x0f]))

    def test_8byte_white_only(self):
        """Test 8-byte layout with cold white at 5 and write mask at index 6."""
        msg = create_color_message(
            Protocol.LEDENET_8BYTE, WHITE_ONLY_WRITEMASK, warm_white=0x80, cold_white=0x40,
        )
        self.assertEqual(msg, bytes([0x31, 0x00, 0x00, 0x00, 0x80, 0x40, 0x0f, 0x0f]))

    def test_single_write_never_sets_mask(self):
        """Test single-write devices get a zero mask byte."""
        msg = create_color_message(
            Protocol.LEDENET, COLOR_ONLY_WRITEMASK, red=0xff, single_write=True,
        )
        self.assertEqual(msg, bytes([0x31, 0xff, 0x00, 0x00, 0x00, 0x00, 0x0f]))

    def test_transient_head(self):
        """Test non-persistent sets use the 0x41 head."""
        msg = create_color_message(
            Protocol.LEDENET, COLOR_AND_WHITE_WRITEMASK, persist=False,
        )
        self.assertEqual(msg[0], 0x41)

    def test_original_protocol_rejected(self):
        """Test the original protocol has no color/white message."""
        with self.assertRaises(UnsupportedOperationError):
            create_color_message(Protocol.LEDENET_ORIGINAL, COLOR_ONLY_WRITEMASK)

    def test_original_rgb_message(self):
        """Test direct RGB message of the original protocol."""
        self.assertEqual(create_original_rgb_message(1, 2, 3), bytes([0x56, 0x01, 0x02, 0x03, 0xaa]))

    def test_preset_pattern_message(self):
        """Test preset message carries the inverted delay."""
        msg = create_preset_pattern_message(PresetPattern.SEVEN_COLOR_CROSS_FADE, 100)
        self.assertEqual(msg, bytes([0x61, 0x25, 0x01, 0x0f]))

    def test_invalid_preset_pattern(self):
        """Test unknown pattern codes are rejected."""
        with self.assertRaises(ValueError):
            create_preset_pattern_message(0x60, 50)

    def test_set_clock_message_sunday(self):
        """Test set-clock layout; Sunday is encoded as 7."""
        # 2026-10-18 is a Sunday
        msg = create_set_clock_message(datetime(2026, 10, 18, 13, 45, 30))
        self.assertEqual(
            msg,
            bytes([0x10, 0x14, 0x1a, 0x0a, 0x12, 0x0d, 0x2d, 0x1e, 0x07, 0x00, 0x0f]),
        )


class TestStateDecoding(unittest.TestCase):
    """Tests for mode inference and state parsing."""

    def test_determine_mode_table(self):
        """Test every row of the mode decision table."""
        self.assertEqual(determine_mode(0x61, 0x00), Mode.COLOR)
        self.assertEqual(determine_mode(0x61, 0x80), Mode.WARM_WHITE)
        self.assertEqual(determine_mode(0x62, 0x80), Mode.WARM_WHITE)
        self.assertEqual(determine_mode(0x61, 0x80, rgbw_capable=True), Mode.COLOR)
        self.assertEqual(determine_mode(0x60, 0x00), Mode.CUSTOM)
        self.assertEqual(determine_mode(0x41, 0x00), Mode.COLOR)
        self.assertEqual(determine_mode(0x25, 0x00), Mode.PRESET)
        self.assertEqual(determine_mode(0x38, 0x00), Mode.PRESET)
        self.assertEqual(determine_mode(0xa1, 0x00), Mode.SUNRISE)
        self.assertEqual(determine_mode(0xa2, 0x00), Mode.SUNSET)
        self.assertEqual(determine_mode(0x99, 0x00), Mode.UNKNOWN)

    def test_parse_8byte_state(self):
        """Test capability flags for an RGBW 8-byte controller."""
        data = bytes([0x81, 0x25, 0x23, 0x61, 0x21, 0x10, 0xff, 0x00, 0x00, 0x00, 0x03, 0x00, 0xf0, 0x00])
        state = parse_state(data)

        self.assertEqual(state.device_type, 0x25)
        self.assertTrue(state.power)
        self.assertTrue(state.rgbw_capable)
        self.assertFalse(state.rgbw_single_write)
        self.assertTrue(state.eight_byte_protocol)
        self.assertFalse(state.original_protocol)
        self.assertEqual(state.mode, Mode.COLOR)

    def test_parse_original_state(self):
        """Test an original-protocol response."""
        data = bytes([0x66, 0x01, 0x24, 0x41, 0x21, 0x0a, 0xff, 0x00, 0x00, 0x01, 0x99])
        state = parse_state(data)

        self.assertTrue(state.original_protocol)
        self.assertFalse(state.power)
        self.assertEqual(state.mode, Mode.COLOR)

    def test_unknown_power_byte(self):
        """Test power is None for an unrecognized power byte."""
        data = bytes([0x81, 0x04, 0x55, 0x61, 0x21, 0x10, 0, 0, 0, 0, 0, 0, 0, 0])
        self.assertIsNone(parse_state(data).power)

    def test_state_too_short(self):
        """Test short responses raise TransportError."""
        with self.assertRaises(TransportError):
            parse_state(bytes([0x81, 0x25, 0x23]))

    def test_parse_clock(self):
        """Test decoding a get-clock response."""
        data = bytes([0x0f, 0x11, 0x14, 0x1a, 0x0a, 0x12, 0x0d, 0x2d, 0x1e, 0x07, 0x00, 0x00])
        self.assertEqual(parse_clock(data), datetime(2026, 10, 18, 13, 45, 30))

    def test_parse_clock_invalid(self):
        """Test impossible dates raise TransportError."""
        data = bytes([0x0f, 0x11, 0x14, 0x1a, 0x0d, 0x12, 0x0d, 0x2d, 0x1e, 0x07, 0x00, 0x00])
        with self.assertRaises(TransportError):
            parse_clock(data)

    def test_parse_discovery_reply(self):
        """Test parsing of an 'ip,id,model' reply."""
        reply = parse_discovery_reply(b'192.168.1.50,ACCF235FFFFF,HF-LPB100-ZJ200')
        self.assertEqual(reply, ('192.168.1.50', 'ACCF235FFFFF', 'HF-LPB100-ZJ200'))

    def test_parse_discovery_reply_malformed(self):
        """Test malformed replies are ignored."""
        self.assertIsNone(parse_discovery_reply(b'HF-A11ASSISTHREAD'))
        self.assertIsNone(parse_discovery_reply(b'\xff\xfe'))
        self.assertIsNone(parse_discovery_reply(b',,'))


if __name__ == '__main__':
    unittest.main()
