#!/usr/bin/env python3
"""
FluxLED Controller

Discovers and controls LEDENET / Magic Home WiFi controllers on the local
network. Supports power, color, white, preset patterns, the device clock and
the six on-device timers.
"""

import argparse
import ipaddress
import json
import logging
import re
import sys
from datetime import datetime, timedelta
from typing import Optional

from flux_bulb import WifiLedBulb
from flux_protocol import (
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    NAMED_COLORS,
    BuiltInTimer,
    FluxLEDError,
    PresetPattern,
    RGBColor,
    UnrecognizedTimerFormatError,
    WhiteColor,
    percent_to_byte,
)
from flux_scanner import BROADCAST_ADDRESS, BulbScanner, DiscoveredBulb
from flux_timers import (
    TIMER_SLOT_COUNT,
    BuiltInPayload,
    ColorPayload,
    Days,
    DefaultPayload,
    LedTimer,
    PresetPayload,
    TurnOffPayload,
    WarmWhitePayload,
)

log = logging.getLogger(__name__)

SCAN_TIMEOUT = 3.0


class BulbController:
    """Resolves command-line targets to bulb sessions."""

    def __init__(
        self,
        broadcast: str = BROADCAST_ADDRESS,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        scan_timeout: float = SCAN_TIMEOUT,
    ):
        self.timeout = timeout
        self.retries = retries
        self.scan_timeout = scan_timeout
        self.scanner = BulbScanner(broadcast_address=broadcast)
        self._discovered: Optional[list[DiscoveredBulb]] = None

    def discover(self) -> list[DiscoveredBulb]:
        """Discover controllers once; later calls reuse the result."""
        if self._discovered is None:
            self._discovered = self.scanner.scan(timeout=self.scan_timeout)
        return self._discovered

    def make_bulb(self, ip_address: str, device_id: str = '', model: str = '') -> WifiLedBulb:
        return WifiLedBulb(
            ip_address,
            device_id=device_id,
            model=model,
            timeout=self.timeout,
            retries=self.retries,
        )

    def get_bulbs(self, target: str) -> list[WifiLedBulb]:
        """
        Resolve a target to sessions.

        Args:
            target: IP address (no discovery), device ID (partial,
                    case-insensitive) or "all"

        Raises:
            ValueError: Nothing matched the target
        """
        if _is_ip_address(target):
            return [self.make_bulb(target)]

        found = self.discover()
        if target.lower() != 'all':
            found = [d for d in found if target.lower() in d.device_id.lower()]
        if not found:
            raise ValueError(f"Device not found: {target}")
        return [self.make_bulb(d.ip_address, d.device_id, d.model) for d in found]


def _is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


# =============================================================================
# Argument Parsing Utilities
# =============================================================================

def parse_color(color_str: str) -> RGBColor:
    """
    Parse color string to RGBColor.

    Supports:
    - Named colors: red, green, blue, white, etc.
    - Hex: #FF0000 or FF0000
    - RGB: rgb(255, 0, 0) or 255,0,0
    """
    color_str = color_str.strip().lower()

    if color_str in NAMED_COLORS:
        return RGBColor.from_bytes(*NAMED_COLORS[color_str])

    if re.match(r'^#?[0-9a-f]{6}$', color_str):
        return RGBColor.from_hex(color_str)

    rgb_match = re.match(r'^(?:rgb\s*\()?\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*\)?$', color_str)
    if rgb_match:
        r, g, b = map(int, rgb_match.groups())
        if max(r, g, b) > 255:
            raise ValueError(f"RGB values must be between 0 and 255: {color_str}")
        return RGBColor.from_bytes(r, g, b)

    raise ValueError(f"Unknown color format: {color_str}")


def parse_percent(value: str, name: str) -> int:
    if not value.isdigit() or int(value) > 100:
        raise ValueError(f"{name} must be a percentage (0-100)")
    return int(value)


def parse_pattern(value: str) -> PresetPattern:
    """Preset pattern by code (37, 0x25) or name (seven_color_cross_fade)."""
    value = value.strip()
    try:
        code = int(value, 0)
    except ValueError:
        try:
            return PresetPattern[value.upper().replace(' ', '_').replace('-', '_')]
        except KeyError:
            raise ValueError(f"Unknown preset pattern: {value}") from None
    if not PresetPattern.is_valid(code):
        raise ValueError(f"Preset code must be in valid range: {value}")
    return PresetPattern(code)


TIMER_MODES = ['inactive', 'poweroff', 'default', 'color', 'preset', 'warmwhite', 'sunrise', 'sunset']


def parse_timer_settings(mode: str, settings: str, now: Optional[datetime] = None) -> LedTimer:
    """
    Build a timer from a mode and a settings string.

    Settings are semicolon-separated key:value pairs, for example
    "time:1830;repeat:12345;color:#ff8000". Keys:
        time       HHMM (required unless inactive)
        repeat     weekday digits, 0 = Sunday ... 6 = Saturday
        date       YYYY-MM-DD (next occurrence of time if neither is given)
        color      color for color mode
        code,speed preset pattern and speed percentage
        level      warm white percentage
        duration,startbrightness,endbrightness   sunrise/sunset

    Raises:
        ValueError: Invalid mode or setting
    """
    mode = mode.lower()
    if mode not in TIMER_MODES:
        raise ValueError(f"Not a valid timer mode: {mode}")

    opts = {}
    for item in settings.split(';'):
        if not item.strip():
            continue
        key, _, val = item.partition(':')
        opts[key.strip().lower()] = val.strip().lower()

    if mode == 'inactive':
        return LedTimer(active=False)

    if 'time' not in opts:
        raise ValueError(f"This mode needs a time: {mode}")
    if 'repeat' in opts and 'date' in opts:
        raise ValueError(f"This mode takes a repeat or a date, not both: {mode}")

    time_str = opts['time']
    if len(time_str) != 4 or not time_str.isdigit():
        raise ValueError("time must be 4 digits (HHMM)")
    hour, minute = int(time_str[:2]), int(time_str[2:])
    if hour > 23:
        raise ValueError("timer hour can't be greater than 23")
    if minute > 59:
        raise ValueError("timer minute can't be greater than 59")

    payload = _timer_payload(mode, opts)

    if 'repeat' in opts:
        if not opts['repeat']:
            raise ValueError("Must specify days to repeat")
        return LedTimer.repeating(Days.from_digits(opts['repeat']), hour, minute, payload)

    if 'date' in opts:
        try:
            when = datetime.strptime(opts['date'], '%Y-%m-%d')
        except ValueError:
            raise ValueError("date is not properly formatted: YYYY-MM-DD") from None
        when = when.replace(hour=hour, minute=minute)
    else:
        now = now or datetime.now()
        when = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if when < now:
            when += timedelta(days=1)
    return LedTimer.once(when, payload)


def _timer_payload(mode: str, opts: dict):
    if mode == 'poweroff':
        return TurnOffPayload()
    if mode == 'default':
        return DefaultPayload()
    if mode == 'color':
        if 'color' not in opts:
            raise ValueError("color mode needs a color setting")
        return ColorPayload.from_color(parse_color(opts['color']))
    if mode == 'preset':
        if 'code' not in opts or 'speed' not in opts:
            raise ValueError("preset mode needs a code and a speed")
        return PresetPayload.from_speed(parse_pattern(opts['code']), parse_percent(opts['speed'], 'preset speed'))
    if mode == 'warmwhite':
        if 'level' not in opts:
            raise ValueError("warmwhite mode needs a level")
        level = parse_percent(opts['level'], 'warmwhite level')
        if level == 0:
            raise ValueError("warmwhite level must be greater than 0")
        return WarmWhitePayload.from_percent(level)

    program = BuiltInTimer.SUNRISE if mode == 'sunrise' else BuiltInTimer.SUNSET
    default_start, default_end = (0, 100) if program == BuiltInTimer.SUNRISE else (100, 0)
    duration = opts.get('duration', '30')
    if not duration.isdigit() or int(duration) > 255:
        raise ValueError("duration must be in minutes (0-255)")
    return BuiltInPayload.from_percent(
        program,
        int(duration),
        parse_percent(opts.get('startbrightness', str(default_start)), 'startbrightness'),
        parse_percent(opts.get('endbrightness', str(default_end)), 'endbrightness'),
    )


def bulb_info(bulb: WifiLedBulb) -> dict:
    """Status of a bulb as a JSON-serializable dict."""
    info = {
        'ip_address': bulb.ip_address,
        'id': bulb.device_id,
        'model': bulb.model,
        'reachable': bulb.raw_state is not None,
        'power': 'on' if bulb.is_on else 'off',
    }
    if bulb.raw_state is None:
        return info
    white = bulb.get_white_color()
    info.update({
        'protocol': bulb.protocol.value,
        'device_type': f"0x{bulb.device_type:02x}",
        'mode': bulb.mode.value,
        'rgb': list(bulb.get_rgb_color().as_bytes()),
        'warm_white': white.warm,
        'cold_white': white.cold,
        'brightness': bulb.brightness,
        'rgbw_capable': bulb.rgbw_capable,
        'raw_state': bulb.raw_state.hex(),
    })
    return info


# =============================================================================
# CLI Interface
# =============================================================================

def cmd_scan(args, controller: BulbController):
    """Handle scan command."""
    bulbs = controller.discover()

    if args.json:
        print(json.dumps({'devices': [b.to_dict() for b in bulbs]}, indent=2))
        return

    if bulbs:
        print(f"Found {len(bulbs)} controller(s):")
        print("-" * 60)
        for bulb in sorted(bulbs, key=lambda b: b.ip_address):
            print(f"  ID:      {bulb.device_id}")
            print(f"  IP:      {bulb.ip_address}")
            print(f"  Model:   {bulb.model}")
            print("-" * 60)
    else:
        print("No controllers found.")


def cmd_info(args, controller: BulbController):
    """Handle info command."""
    results = []
    for bulb in controller.get_bulbs(args.device):
        with bulb:
            bulb.update_state()
        results.append(bulb)

    if args.json:
        print(json.dumps({'devices': [bulb_info(b) for b in results]}, indent=2))
        return

    for bulb in results:
        print(bulb)
        if bulb.raw_state is not None:
            print(f"  Protocol:    {bulb.protocol.value}")
            print(f"  Type:        0x{bulb.device_type:02x}")
            print(f"  Raw state:   {bulb.raw_state.hex(' ')}")


def cmd_on(args, controller: BulbController):
    """Handle on command."""
    for bulb in controller.get_bulbs(args.device):
        with bulb:
            bulb.turn_on()
        print(f"Turned ON: {bulb.device_id or bulb.ip_address}")


def cmd_off(args, controller: BulbController):
    """Handle off command."""
    for bulb in controller.get_bulbs(args.device):
        with bulb:
            bulb.turn_off()
        print(f"Turned OFF: {bulb.device_id or bulb.ip_address}")


def cmd_color(args, controller: BulbController):
    """Handle color command."""
    color = parse_color(args.color)
    if args.brightness is not None:
        color = color.with_brightness(parse_percent(str(args.brightness), 'brightness') / 100)

    for bulb in controller.get_bulbs(args.device):
        with bulb:
            bulb.set_rgb(color, persist=not args.transient)
        print(f"Set color {color} on: {bulb.device_id or bulb.ip_address}")


def cmd_white(args, controller: BulbController):
    """Handle white command."""
    warm = percent_to_byte(args.warm)
    cold = percent_to_byte(args.cold) if args.cold is not None else None
    white = WhiteColor(warm, cold)

    for bulb in controller.get_bulbs(args.device):
        with bulb:
            bulb.set_white(white, persist=not args.transient)
        print(f"Set white {args.warm}% on: {bulb.device_id or bulb.ip_address}")


def cmd_rgbw(args, controller: BulbController):
    """Handle rgbw command."""
    color = parse_color(args.color)
    cold = percent_to_byte(args.cold) if args.cold is not None else None
    white = WhiteColor(percent_to_byte(args.warm), cold)

    for bulb in controller.get_bulbs(args.device):
        with bulb:
            bulb.set_rgbw(color, white, persist=not args.transient)
        print(f"Set color {color} + white {args.warm}% on: {bulb.device_id or bulb.ip_address}")


def cmd_preset(args, controller: BulbController):
    """Handle preset command."""
    pattern = parse_pattern(args.pattern)
    speed = parse_percent(str(args.speed), 'speed')

    for bulb in controller.get_bulbs(args.device):
        with bulb:
            bulb.set_preset_pattern(pattern, speed)
        print(f"Running {pattern.label} at {speed}% on: {bulb.device_id or bulb.ip_address}")


def cmd_patterns(args, controller: BulbController):
    """Handle patterns command."""
    for pattern in PresetPattern:
        print(f"  {pattern.value:3d} (0x{pattern.value:02x})  {pattern.label}")


def cmd_clock(args, controller: BulbController):
    """Handle clock command."""
    for bulb in controller.get_bulbs(args.device):
        with bulb:
            if args.set:
                bulb.set_clock()
                print(f"Clock set on: {bulb.device_id or bulb.ip_address}")
            clock = bulb.get_clock()
        print(f"{bulb.device_id or bulb.ip_address}: {clock:%Y-%m-%d %H:%M:%S}")


def cmd_timers(args, controller: BulbController):
    """Handle timers command."""
    result = {}
    for bulb in controller.get_bulbs(args.device):
        with bulb:
            timers = bulb.get_timers()
        name = bulb.device_id or bulb.ip_address
        result[name] = timers

    if args.json:
        print(json.dumps({
            name: [
                {'slot': i, 'error': str(t)} if isinstance(t, UnrecognizedTimerFormatError)
                else {'slot': i, 'active': t.active, 'kind': t.kind.value, 'description': t.describe()}
                for i, t in enumerate(timers, 1)
            ]
            for name, timers in result.items()
        }, indent=2))
        return

    for name, timers in result.items():
        print(f"{name}:")
        for i, timer in enumerate(timers, 1):
            print(f"  Timer #{i}: {timer}")


def cmd_settimer(args, controller: BulbController):
    """Handle settimer command."""
    if args.num < 1 or args.num > TIMER_SLOT_COUNT:
        raise ValueError(f"Timer number must be between 1 and {TIMER_SLOT_COUNT}")
    new_timer = parse_timer_settings(args.mode, args.settings)

    for bulb in controller.get_bulbs(args.device):
        with bulb:
            timers = []
            for i, slot in enumerate(bulb.get_timers(), 1):
                if isinstance(slot, UnrecognizedTimerFormatError):
                    if i != args.num:
                        print(f"Warning: timer #{i} has an unknown format and will be cleared",
                              file=sys.stderr)
                    slot = LedTimer()
                timers.append(slot)
            timers[args.num - 1] = new_timer
            bulb.set_timers(timers)
        print(f"Timer #{args.num} set on {bulb.device_id or bulb.ip_address}: {new_timer}")


def main():
    parser = argparse.ArgumentParser(
        description='FluxLED Controller - Scan and control Magic Home WiFi controllers.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  scan                        Discover controllers on the network
  info DEVICE                 Show device state
  on DEVICE / off DEVICE      Power control
  color DEVICE COLOR          Set RGB color
  white DEVICE WARM [COLD]    Set white levels (percent)
  rgbw DEVICE COLOR WARM      Set color and white together
  preset DEVICE PATTERN SPEED Run a preset pattern
  patterns                    List preset patterns
  clock DEVICE [--set]        Show (or set) the device clock
  timers DEVICE               Show the six on-device timers
  settimer DEVICE NUM MODE SETTINGS  Program one timer

DEVICE is an IP address, a device ID or "all".

Color formats:
  Named:   red, orange, yellow, lime, green, teal, cyan, blue,
           purple, magenta, pink, white
  Hex:     #FF0000 or FF0000
  RGB:     rgb(255, 0, 0) or 255,0,0

Timer modes:
  inactive, poweroff, default, color, preset, warmwhite, sunrise, sunset
Timer settings:
  time:HHMM;repeat:0123456;date:YYYY-MM-DD;color:red;code:37;speed:50;
  level:80;duration:30;startbrightness:0;endbrightness:100

Examples:
  flux_control.py scan
  flux_control.py on all
  flux_control.py color 192.168.1.50 "#FF6600" -b 50
  flux_control.py preset ACCF235FFFFF 0x25 80
  flux_control.py clock all --set
  flux_control.py settimer 192.168.1.50 1 color "time:1830;repeat:12345;color:red"
  flux_control.py settimer 192.168.1.50 2 sunrise "time:0630;repeat:0123456;duration:30"
        """
    )

    # Global options
    parser.add_argument('-b', '--broadcast', default=BROADCAST_ADDRESS,
                        help=f'Discovery broadcast address (default: {BROADCAST_ADDRESS})')
    parser.add_argument('-t', '--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help=f'Response timeout in seconds (default: {DEFAULT_TIMEOUT})')
    parser.add_argument('-r', '--retries', type=int, default=DEFAULT_RETRIES,
                        help=f'State query retries (default: {DEFAULT_RETRIES})')
    parser.add_argument('--scan-timeout', type=float, default=SCAN_TIMEOUT,
                        help=f'Discovery time in seconds (default: {SCAN_TIMEOUT})')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Verbose output')
    parser.add_argument('--json', action='store_true',
                        help='JSON output (for scan, info, timers)')

    subparsers = parser.add_subparsers(dest='command', help='Command')

    subparsers.add_parser('scan', help='Discover devices')
    subparsers.add_parser('patterns', help='List preset patterns')

    info_parser = subparsers.add_parser('info', help='Show device state')
    info_parser.add_argument('device', help='Device (IP, ID, or "all")')

    on_parser = subparsers.add_parser('on', help='Turn device on')
    on_parser.add_argument('device', help='Device (IP, ID, or "all")')

    off_parser = subparsers.add_parser('off', help='Turn device off')
    off_parser.add_argument('device', help='Device (IP, ID, or "all")')

    color_parser = subparsers.add_parser('color', help='Set device color')
    color_parser.add_argument('device', help='Device (IP, ID, or "all")')
    color_parser.add_argument('color', help='Color (name, hex, rgb())')
    color_parser.add_argument('-b', '--brightness', type=int,
                              help='Brightness override (0-100)')
    color_parser.add_argument('--transient', action='store_true',
                              help='Do not store the color in the controller')

    white_parser = subparsers.add_parser('white', help='Set white levels')
    white_parser.add_argument('device', help='Device (IP, ID, or "all")')
    white_parser.add_argument('warm', type=int, help='Warm white level (0-100)')
    white_parser.add_argument('cold', type=int, nargs='?',
                              help='Cold white level (0-100, default: same as warm)')
    white_parser.add_argument('--transient', action='store_true',
                              help='Do not store the setting in the controller')

    rgbw_parser = subparsers.add_parser('rgbw', help='Set color and white together')
    rgbw_parser.add_argument('device', help='Device (IP, ID, or "all")')
    rgbw_parser.add_argument('color', help='Color (name, hex, rgb())')
    rgbw_parser.add_argument('warm', type=int, help='Warm white level (0-100)')
    rgbw_parser.add_argument('cold', type=int, nargs='?',
                             help='Cold white level (0-100, default: same as warm)')
    rgbw_parser.add_argument('--transient', action='store_true',
                             help='Do not store the setting in the controller')

    preset_parser = subparsers.add_parser('preset', help='Run a preset pattern')
    preset_parser.add_argument('device', help='Device (IP, ID, or "all")')
    preset_parser.add_argument('pattern', help='Pattern code or name (see "patterns")')
    preset_parser.add_argument('speed', type=int, nargs='?', default=50,
                               help='Speed (0-100, default: 50)')

    clock_parser = subparsers.add_parser('clock', help='Show the device clock')
    clock_parser.add_argument('device', help='Device (IP, ID, or "all")')
    clock_parser.add_argument('--set', action='store_true',
                              help='Set the clock to the local time first')

    timers_parser = subparsers.add_parser('timers', help='Show device timers')
    timers_parser.add_argument('device', help='Device (IP, ID, or "all")')

    settimer_parser = subparsers.add_parser('settimer', help='Program one timer')
    settimer_parser.add_argument('device', help='Device (IP, ID, or "all")')
    settimer_parser.add_argument('num', type=int, help='Timer number (1-6)')
    settimer_parser.add_argument('mode', choices=TIMER_MODES, help='Timer mode')
    settimer_parser.add_argument('settings', nargs='?', default='',
                                 help='Timer settings (key:value;...)')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(name)s: %(message)s')

    controller = BulbController(
        broadcast=args.broadcast,
        timeout=args.timeout,
        retries=args.retries,
        scan_timeout=args.scan_timeout,
    )

    # Execute command
    commands = {
        'scan': cmd_scan,
        'info': cmd_info,
        'on': cmd_on,
        'off': cmd_off,
        'color': cmd_color,
        'white': cmd_white,
        'rgbw': cmd_rgbw,
        'preset': cmd_preset,
        'patterns': cmd_patterns,
        'clock': cmd_clock,
        'timers': cmd_timers,
        'settimer': cmd_settimer,
    }

    cmd_func = commands.get(args.command)
    if not cmd_func:
        parser.print_help()
        return

    try:
        cmd_func(args, controller)
    except (FluxLEDError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
