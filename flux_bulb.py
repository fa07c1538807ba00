#!/usr/bin/env python3
"""
FluxLED Bulb Session

One WifiLedBulb drives one controller over a single TCP connection. The wire
protocol has no request identifiers, so calls on one instance must not be
made concurrently.
"""

import logging
import socket
from datetime import datetime
from typing import Callable, Optional

from flux_protocol import (
    CLOCK_RESPONSE_LEN,
    COLOR_AND_WHITE_WRITEMASK,
    COLOR_ONLY_WRITEMASK,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    DETECTION_RETRIES,
    GET_CLOCK_MSG,
    GET_TIMERS_MSG,
    NEW_QUERY_MSG,
    OLD_QUERY_MSG,
    ORIGINAL_TYPE,
    QUERY_LEN_MODERN,
    QUERY_LEN_ORIGINAL,
    TIMERS_RESPONSE_LEN,
    WHITE_ONLY_WRITEMASK,
    WIFI_PORT,
    DeviceState,
    Mode,
    PresetPattern,
    Protocol,
    ProtocolDetectionError,
    RGBColor,
    TransportError,
    UnknownModeError,
    UnsupportedOperationError,
    WhiteColor,
    build_message,
    byte_to_percent,
    create_color_message,
    create_original_rgb_message,
    create_preset_pattern_message,
    create_set_clock_message,
    parse_clock,
    parse_state,
    power_message,
    query_message,
    rescale_to_brightness,
    verify_checksum,
)
from flux_timers import (
    LedTimer,
    TimerSlotResult,
    build_timer_table,
    parse_timer_table,
)

log = logging.getLogger(__name__)

SocketFactory = Callable[[tuple[str, int], float], socket.socket]


class WifiLedBulb:
    """Session with a single LEDENET controller."""

    def __init__(
        self,
        ip_address: str,
        device_id: str = "",
        model: str = "",
        port: int = WIFI_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        socket_factory: Optional[SocketFactory] = None,
    ):
        self.ip_address = ip_address
        self.device_id = device_id
        self.model = model
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self._socket_factory = socket_factory or socket.create_connection
        self._sock: Optional[socket.socket] = None

        self.protocol = Protocol.LEDENET
        self.use_checksum = True
        self.query_len = 0
        self.rgbw_single_write = False
        self.rgbw_capable = False
        self.device_type: Optional[int] = None
        self.raw_state: Optional[bytes] = None
        self.mode = Mode.UNKNOWN
        self.is_on = False
        self._commands_sent = False

    def __str__(self) -> str:
        label = self.device_id or self.ip_address
        return f"{label} ({self.ip_address}) - {self.describe()}"

    def __enter__(self) -> 'WifiLedBulb':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def connect(self) -> None:
        """Open the control connection, replacing any existing one."""
        self.close()
        log.debug("Connecting to %s:%d", self.ip_address, self.port)
        sock = self._socket_factory((self.ip_address, self.port), self.timeout)
        sock.settimeout(self.timeout)
        self._sock = sock

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as exc:
                log.debug("Error closing socket to %s: %s", self.ip_address, exc)
            self._sock = None

    def _send_raw(self, message: bytes) -> None:
        if self._sock is None:
            self.connect()
        log.debug("%s <- %s", self.ip_address, message.hex(' '))
        self._sock.sendall(message)

    def _send_message(self, payload: bytes, use_checksum: Optional[bool] = None) -> None:
        if use_checksum is None:
            use_checksum = self.use_checksum
        self._send_raw(build_message(payload, use_checksum))

    def _read_message(self, expected: int) -> bytes:
        """Read up to expected bytes; fewer if the peer closes the connection."""
        data = bytearray()
        while len(data) < expected:
            chunk = self._sock.recv(expected - len(data))
            if not chunk:
                break
            data += chunk
        log.debug("%s -> %s", self.ip_address, data.hex(' '))
        return bytes(data)

    def _command(self, payload: bytes, use_checksum: Optional[bool] = None) -> None:
        """Send a state-changing command, reconnecting once on failure."""
        self._commands_sent = True
        try:
            self._send_message(payload, use_checksum)
        except OSError as exc:
            log.warning("Send to %s failed (%s), reconnecting", self.ip_address, exc)
            try:
                self.connect()
                self._send_message(payload, use_checksum)
            except OSError as retry_exc:
                self.close()
                raise TransportError(f"Unable to send to {self.ip_address}: {retry_exc}") from retry_exc

    def _request(self, payload: bytes, expected: int) -> bytes:
        try:
            self._send_message(payload)
            return self._read_message(expected)
        except OSError as exc:
            self.close()
            raise TransportError(f"Request to {self.ip_address} failed: {exc}") from exc

    # -------------------------------------------------------------------------
    # Protocol Detection
    # -------------------------------------------------------------------------

    @property
    def protocol_known(self) -> bool:
        return self.query_len != 0

    @property
    def uses_8byte_protocol(self) -> bool:
        return self.protocol == Protocol.LEDENET_8BYTE

    def detect_protocol(self, force: bool = False) -> Protocol:
        """
        Probe the device to determine the query response length.

        Runs once per session unless force is set. Transport errors other
        than a read timeout propagate to the caller.

        Raises:
            ProtocolDetectionError: No probe response after the retries
        """
        if self.protocol_known and not force:
            return self.protocol
        if force:
            self.protocol = Protocol.LEDENET
            self.use_checksum = True
            self.query_len = 0
            self._commands_sent = False

        for attempt in range(DETECTION_RETRIES + 1):
            # each attempt starts clean, a late reply must not answer the next probe
            self.connect()

            self._send_message(NEW_QUERY_MSG)
            response = self._probe_read()
            if len(response) == 2:
                self.query_len = QUERY_LEN_MODERN
                log.debug("%s answered the new query", self.ip_address)
                return self.protocol

            self._send_message(OLD_QUERY_MSG)
            response = self._probe_read()
            if len(response) == 2:
                if response[1] == ORIGINAL_TYPE:
                    self.protocol = Protocol.LEDENET_ORIGINAL
                    self.use_checksum = False
                    self.query_len = QUERY_LEN_ORIGINAL
                    log.debug("%s speaks the original LEDENET protocol", self.ip_address)
                    return self.protocol
                self.use_checksum = True

            log.debug("Protocol probe %d/%d for %s got no usable response",
                      attempt + 1, DETECTION_RETRIES + 1, self.ip_address)

        raise ProtocolDetectionError(f"Unable to determine protocol of {self.ip_address}")

    def _probe_read(self) -> bytes:
        try:
            return self._read_message(2)
        except socket.timeout:
            return b''

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _query_state(self, retries: int) -> Optional[bytes]:
        """Query raw state, reconnecting on transport errors. None if unreachable."""
        for attempt in range(retries + 1):
            try:
                if not self.protocol_known:
                    self.detect_protocol()
                # fresh connection drops leftover probe bytes
                self.connect()
                self._send_message(query_message(self.protocol))
                response = self._read_message(self.query_len)
                if len(response) < self.query_len:
                    raise TransportError(
                        f"Short state response from {self.ip_address}: {len(response)} bytes"
                    )
                return response
            except (OSError, TransportError) as exc:
                self.close()
                log.warning("State query to %s failed (attempt %d/%d): %s",
                            self.ip_address, attempt + 1, retries + 1, exc)
        return None

    def update_state(self, retries: Optional[int] = None) -> Optional[DeviceState]:
        """
        Refresh cached state from the device.

        Returns None (and marks the bulb off) when the device is unreachable.

        Raises:
            ProtocolDetectionError: Protocol variant could not be established
            UnknownModeError: Response matched no known mode after the retries
        """
        if retries is None:
            retries = self.retries
        retries = max(0, retries)

        for attempt in range(retries + 1):
            response = self._query_state(retries)
            if response is None:
                self.is_on = False
                self.raw_state = None
                return None

            state = parse_state(response)
            if self.use_checksum and not verify_checksum(response):
                log.debug("State response from %s has a bad checksum", self.ip_address)

            self._apply_capabilities(state)
            if state.mode == Mode.UNKNOWN:
                log.debug("Unknown mode from %s (attempt %d/%d): pattern 0x%02x",
                          self.ip_address, attempt + 1, retries + 1, state.pattern_code)
                continue

            self.mode = state.mode
            if state.power is not None:
                self.is_on = state.power
            self.raw_state = state.raw
            return state

        raise UnknownModeError(state.pattern_code, state.ww_level)

    def _apply_capabilities(self, state: DeviceState) -> None:
        self.device_type = state.device_type
        self.rgbw_single_write = state.rgbw_single_write
        self.rgbw_capable = state.rgbw_capable

        if state.original_protocol:
            protocol = Protocol.LEDENET_ORIGINAL
        elif state.eight_byte_protocol:
            protocol = Protocol.LEDENET_8BYTE
        else:
            protocol = self.protocol
        if protocol == self.protocol:
            return

        if self._commands_sent:
            log.warning("%s reported %s after commands were sent, keeping %s",
                        self.ip_address, protocol.value, self.protocol.value)
            return
        # variant, checksum and response length always change together
        self.protocol = protocol
        if protocol == Protocol.LEDENET_ORIGINAL:
            self.use_checksum = False
            self.query_len = QUERY_LEN_ORIGINAL
        else:
            self.use_checksum = True
            self.query_len = QUERY_LEN_MODERN

    def _ensure_state(self) -> None:
        if self.raw_state is None or not self.protocol_known:
            self.update_state()

    # -------------------------------------------------------------------------
    # Getters
    # -------------------------------------------------------------------------

    def get_rgb_color(self) -> RGBColor:
        if self.mode != Mode.COLOR or self.raw_state is None:
            return RGBColor(1.0, 1.0, 1.0)
        return RGBColor.from_bytes(self.raw_state[6], self.raw_state[7], self.raw_state[8])

    def get_white_color(self) -> WhiteColor:
        if self.mode != Mode.COLOR or self.raw_state is None:
            return WhiteColor(255, 255)
        # cold white only exists in the 14-byte response
        cold = self.raw_state[11] if len(self.raw_state) >= QUERY_LEN_MODERN else None
        return WhiteColor(self.raw_state[9], cold)

    @property
    def brightness(self) -> int:
        """Brightness byte (0-255)."""
        if self.mode == Mode.WARM_WHITE and self.raw_state is not None:
            return self.raw_state[9]
        return self.get_rgb_color().brightness_byte

    def describe(self) -> str:
        power_str = "ON " if self.is_on else "OFF"
        if self.raw_state is None:
            return f"{power_str} [Unreachable]"

        if self.mode == Mode.COLOR:
            mode_str = f"Color: {self.get_rgb_color()} Brightness: {byte_to_percent(self.brightness)}%"
            if self.rgbw_capable:
                white = self.get_white_color()
                mode_str += f" White: {white.warm}/{white.cold}"
        elif self.mode == Mode.WARM_WHITE:
            mode_str = f"Warm White: {byte_to_percent(self.brightness)}%"
        elif self.mode == Mode.PRESET:
            pattern = PresetPattern(self.raw_state[3])
            mode_str = f"Pattern: {pattern.label}"
        elif self.mode == Mode.CUSTOM:
            mode_str = "Custom pattern"
        else:
            mode_str = self.mode.name.title()
        return f"{power_str} [{mode_str}]"

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def turn_on(self) -> None:
        self._ensure_state()
        self._command(power_message(self.protocol, True))
        self.is_on = True

    def turn_off(self) -> None:
        self._ensure_state()
        self._command(power_message(self.protocol, False))
        self.is_on = False

    def set_rgb(self, color: RGBColor, persist: bool = True) -> Optional[DeviceState]:
        self._ensure_state()
        r, g, b = color.as_bytes()
        if self.protocol == Protocol.LEDENET_ORIGINAL:
            self._command(create_original_rgb_message(r, g, b), use_checksum=False)
        else:
            self._command(create_color_message(
                self.protocol, COLOR_ONLY_WRITEMASK,
                red=r, green=g, blue=b,
                persist=persist,
                single_write=self.rgbw_single_write,
            ))
        return self.update_state()

    def set_white(self, white: WhiteColor, persist: bool = True) -> Optional[DeviceState]:
        if self.protocol == Protocol.LEDENET_ORIGINAL:
            raise UnsupportedOperationError("This light does not support warm white settings")
        self._ensure_state()
        if self.protocol == Protocol.LEDENET_ORIGINAL:
            raise UnsupportedOperationError("This light does not support warm white settings")

        self._command(create_color_message(
            self.protocol, WHITE_ONLY_WRITEMASK,
            warm_white=white.warm,
            cold_white=white.cold,
            persist=persist,
            single_write=self.rgbw_single_write,
        ))
        return self.update_state()

    def set_rgbw(self, color: RGBColor, white: WhiteColor, persist: bool = True) -> Optional[DeviceState]:
        self._check_rgbw()
        self._ensure_state()
        self._check_rgbw()

        r, g, b = color.as_bytes()
        self._command(create_color_message(
            self.protocol, COLOR_AND_WHITE_WRITEMASK,
            red=r, green=g, blue=b,
            warm_white=white.warm,
            cold_white=white.cold,
            persist=persist,
            single_write=self.rgbw_single_write,
        ))
        return self.update_state()

    def _check_rgbw(self) -> None:
        if self.protocol == Protocol.LEDENET_ORIGINAL:
            raise UnsupportedOperationError("This light does not support warm white settings")
        if self.protocol_known and not self.rgbw_single_write:
            raise UnsupportedOperationError("This light does not support setting RGB and WW simultaneously")

    def set_brightness(self, brightness: int) -> Optional[DeviceState]:
        """Set brightness (0-255) keeping the current color or warm white mode."""
        self._ensure_state()
        if self.mode == Mode.WARM_WHITE:
            return self.set_white(WhiteColor(brightness))
        return self.set_rgb(rescale_to_brightness(self.get_rgb_color(), brightness))

    def set_preset_pattern(self, pattern: PresetPattern, speed: int) -> Optional[DeviceState]:
        message = create_preset_pattern_message(int(pattern), speed)
        self._ensure_state()
        self._command(message)
        return self.update_state()

    # -------------------------------------------------------------------------
    # Clock
    # -------------------------------------------------------------------------

    def get_clock(self) -> datetime:
        self._ensure_state()
        return parse_clock(self._request(GET_CLOCK_MSG, CLOCK_RESPONSE_LEN))

    def set_clock(self, dt: Optional[datetime] = None) -> None:
        self._ensure_state()
        self._command(create_set_clock_message(dt or datetime.now()))

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def get_timers(self) -> list[TimerSlotResult]:
        """
        Read the six timer slots.

        Slots in an unknown layout are returned as UnrecognizedTimerFormatError
        instances in their position.
        """
        self._ensure_state()
        response = self._request(GET_TIMERS_MSG, TIMERS_RESPONSE_LEN)
        if len(response) < TIMERS_RESPONSE_LEN:
            raise TransportError(f"Timer response too short: {len(response)} bytes")
        return parse_timer_table(response)

    def set_timers(self, timers: list[LedTimer]) -> None:
        """Write the timer table. Missing slots are filled with inactive turn-off timers."""
        message = build_timer_table(timers)
        self._ensure_state()
        self._command(message)

        # acknowledgements, content is not interpreted
        try:
            ack1 = self._read_message(1)
            ack2 = self._read_message(3)
        except OSError as exc:
            self.close()
            raise TransportError(f"No timer acknowledgement from {self.ip_address}: {exc}") from exc
        log.debug("Timer acknowledgement from %s: %s %s", self.ip_address, ack1.hex(), ack2.hex())
