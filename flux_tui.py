#!/usr/bin/env python3
"""
FluxLED TUI Controller

A terminal user interface for Magic Home / LEDENET WiFi controllers.
Uses the Textual framework for the TUI and flux_bulb for device sessions.

Usage:
    python3 flux_tui.py
    python3 flux_tui.py -b 192.168.1.255
"""

import argparse
import logging
from threading import Lock, Thread
from typing import Callable, Optional

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.color import Color
from textual.containers import Container, Horizontal, ScrollableContainer
from textual.message import Message
from textual.reactive import reactive
from textual.timer import Timer
from textual.widgets import (
    Button, Footer, Header, ListItem, ListView, Static, TabbedContent, TabPane,
)

from flux_bulb import WifiLedBulb
from flux_protocol import (
    DEFAULT_TIMEOUT,
    FluxLEDError,
    Mode,
    PresetPattern,
    RGBColor,
    WhiteColor,
    byte_to_percent,
    percent_to_byte,
)
from flux_scanner import BROADCAST_ADDRESS, BulbScanner
from flux_timers import TimerSlotResult

log = logging.getLogger(__name__)

SCAN_TIMEOUT = 3.0
APPLY_DELAY = 0.3


# =============================================================================
# Bulb Communication Layer
# =============================================================================

class BulbManager:
    """Owns the bulb sessions. All device I/O goes through run()."""

    def __init__(self, broadcast: str = BROADCAST_ADDRESS,
                 timeout: float = DEFAULT_TIMEOUT, scan_timeout: float = SCAN_TIMEOUT):
        self.scanner = BulbScanner(broadcast_address=broadcast)
        self.timeout = timeout
        self.scan_timeout = scan_timeout
        self.bulbs: dict[str, WifiLedBulb] = {}
        self.lock = Lock()

    def discover(self) -> list[WifiLedBulb]:
        """Scan the network and refresh the state of every bulb found."""
        found = self.scanner.scan(timeout=self.scan_timeout)

        with self.lock:
            bulbs = {}
            for item in found:
                bulb = self.bulbs.pop(item.ip_address, None) or item.to_bulb(timeout=self.timeout)
                bulbs[item.ip_address] = bulb
            for stale in self.bulbs.values():
                stale.close()
            self.bulbs = bulbs

            for bulb in bulbs.values():
                try:
                    bulb.update_state()
                except FluxLEDError as exc:
                    log.warning("Unable to read %s: %s", bulb.ip_address, exc)

            return list(bulbs.values())

    def run(self, work: Callable):
        """Run a callable that talks to a bulb, one at a time."""
        with self.lock:
            return work()

    def close(self) -> None:
        with self.lock:
            for bulb in self.bulbs.values():
                bulb.close()


# =============================================================================
# Custom Widgets
# =============================================================================

class Slider(Static):
    """Integer slider with arrow buttons and a clickable track."""

    DEFAULT_CSS = """
    Slider {
        height: 3;
        margin: 0 1;
    }
    Slider .slider-row {
        height: 1;
    }
    Slider .slider-label {
        text-style: bold;
        width: 12;
    }
    Slider .slider-btn {
        width: 3;
        min-width: 3;
        height: 1;
        padding: 0;
        margin: 0;
        border: none;
    }
    Slider .slider-track {
        width: 24;
    }
    Slider .slider-value {
        text-align: right;
        width: 8;
    }
    """

    TRACK_WIDTH = 20

    value = reactive(0)

    class Changed(Message):
        """Posted when the user moves the slider."""
        def __init__(self, slider: "Slider", value: int) -> None:
            self.slider = slider
            self.value = value
            super().__init__()

    def __init__(
        self,
        label: str,
        min_value: int = 0,
        max_value: int = 100,
        value: int = 0,
        unit: str = "",
        step: int = 5,
        id: str | None = None,
    ) -> None:
        super().__init__(id=id)
        self.label = label
        self.min_value = min_value
        self.max_value = max_value
        self.unit = unit
        self.step = step
        self._initial_value = value
        self._quiet = False
        self.can_focus = True

    def compose(self) -> ComposeResult:
        with Horizontal(classes="slider-row"):
            yield Static(self.label, classes="slider-label")
            yield Button("◀", classes="slider-btn", id="btn-dec")
            yield Static("", classes="slider-track", id="track")
            yield Button("▶", classes="slider-btn", id="btn-inc")
            yield Static("", classes="slider-value", id="value-display")

    def on_mount(self) -> None:
        self.set_quietly(self._initial_value)

    def set_quietly(self, value: int) -> None:
        """Move the slider without posting Changed."""
        self._quiet = True
        try:
            self.value = self._clamp(value)
        finally:
            self._quiet = False
        if self.is_mounted:
            self._update_display()

    def _clamp(self, value: float) -> int:
        return int(max(self.min_value, min(self.max_value, round(value))))

    def watch_value(self, value: int) -> None:
        if not self.is_mounted:
            return
        self._update_display()
        if not self._quiet:
            self.post_message(self.Changed(self, value))

    def _update_display(self) -> None:
        span = self.max_value - self.min_value
        pct = (self.value - self.min_value) / span if span > 0 else 0
        filled = int(pct * self.TRACK_WIDTH)
        self.query_one("#track", Static).update(
            "█" * filled + "░" * (self.TRACK_WIDTH - filled)
        )
        self.query_one("#value-display", Static).update(f"{self.value}{self.unit}")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        event.stop()
        if event.button.id == "btn-dec":
            self.adjust(-self.step)
        elif event.button.id == "btn-inc":
            self.adjust(self.step)

    def on_click(self, event) -> None:
        track = self.query_one("#track", Static).region
        if not track.y <= event.screen_y < track.y + track.height:
            return
        rel_x = event.screen_x - track.x
        if 0 <= rel_x <= self.TRACK_WIDTH:
            pct = rel_x / self.TRACK_WIDTH
            self.value = self._clamp(self.min_value + pct * (self.max_value - self.min_value))

    def adjust(self, amount: int) -> None:
        self.value = self._clamp(self.value + amount)


class BulbListItem(ListItem):
    """A list item representing one controller."""

    def __init__(self, bulb: WifiLedBulb) -> None:
        super().__init__()
        self.bulb = bulb

    def compose(self) -> ComposeResult:
        if self.bulb.raw_state is None:
            icon = "✕"
        else:
            icon = "●" if self.bulb.is_on else "○"
        yield Static(f"{icon} {self.bulb.device_id or self.bulb.ip_address}")


class ColorPreview(Static):
    """Swatch of the current color with a short description."""

    DEFAULT_CSS = """
    ColorPreview {
        height: 3;
        margin: 1 2;
        border: solid $primary;
        content-align: center middle;
    }
    """

    def show_bulb(self, bulb: WifiLedBulb) -> None:
        if bulb.mode == Mode.COLOR:
            self.show_color(bulb.get_rgb_color())
        else:
            self.styles.background = None
            self.update(bulb.describe())

    def show_color(self, color: RGBColor) -> None:
        r, g, b = color.as_bytes()
        self.styles.background = Color(r, g, b)
        self.styles.color = Color(0, 0, 0) if color.brightness > 0.6 else Color(255, 255, 255)
        self.update(f"RGB {color}  Brightness: {byte_to_percent(color.brightness_byte)}%")


# =============================================================================
# Main Panels
# =============================================================================

class BulbSidebar(Container):
    """Sidebar showing discovered controllers."""

    DEFAULT_CSS = """
    BulbSidebar {
        width: 30;
        dock: left;
        border-right: solid $primary;
        padding: 1;
    }
    BulbSidebar ListView {
        height: 1fr;
    }
    BulbSidebar .sidebar-title {
        text-style: bold;
        text-align: center;
        padding: 1;
        background: $primary;
        color: $text;
    }
    BulbSidebar Button {
        width: 100%;
        margin: 1 0;
    }
    """

    def compose(self) -> ComposeResult:
        yield Static("Controllers", classes="sidebar-title")
        yield Button("Refresh", id="btn-refresh", variant="primary")
        yield ListView(id="bulb-list")
        yield Static("", id="bulb-count")

    def update_bulbs(self, bulbs: list[WifiLedBulb]) -> None:
        list_view = self.query_one("#bulb-list", ListView)
        list_view.clear()
        for bulb in sorted(bulbs, key=lambda b: b.device_id or b.ip_address):
            list_view.append(BulbListItem(bulb))
        self.query_one("#bulb-count", Static).update(f"{len(bulbs)} controller(s)")


class PatternItem(ListItem):
    def __init__(self, pattern: PresetPattern) -> None:
        super().__init__()
        self.pattern = pattern

    def compose(self) -> ComposeResult:
        yield Static(self.pattern.label)


class ControlPanel(Container):
    """Controls for the selected controller."""

    DEFAULT_CSS = """
    ControlPanel {
        padding: 0 1;
    }
    ControlPanel .panel-title {
        text-style: bold;
        text-align: center;
        padding: 1;
    }
    ControlPanel .no-device {
        text-align: center;
        padding: 4;
        color: $text-muted;
    }
    ControlPanel .button-row {
        height: auto;
        margin: 1 0;
    }
    ControlPanel .button-row Button {
        margin: 0 1;
    }
    ControlPanel #pattern-list {
        height: 12;
    }
    ControlPanel TabbedContent {
        height: 1fr;
    }
    ControlPanel TabPane {
        padding: 1;
    }
    """

    current_bulb: reactive[Optional[WifiLedBulb]] = reactive(None, always_update=True)

    def compose(self) -> ComposeResult:
        yield Static("Select a controller", classes="panel-title", id="bulb-title")
        yield Static("← Choose a controller from the sidebar", classes="no-device", id="no-bulb-msg")

        with Container(id="controls-container"):
            with Horizontal(classes="button-row"):
                yield Button("ON", id="btn-power-on", variant="success")
                yield Button("OFF", id="btn-power-off", variant="error")
                yield Static("", id="power-status")

            yield ColorPreview(id="color-preview")

            with TabbedContent():
                with TabPane("Color", id="tab-color"):
                    yield Slider("Red", 0, 255, 255, step=16, id="slider-red")
                    yield Slider("Green", 0, 255, 255, step=16, id="slider-green")
                    yield Slider("Blue", 0, 255, 255, step=16, id="slider-blue")
                    yield Slider("Brightness", 0, 100, 100, "%", id="slider-bright")

                with TabPane("White", id="tab-white"):
                    yield Slider("Warm", 0, 100, 100, "%", id="slider-warm")
                    yield Slider("Cold", 0, 100, 100, "%", id="slider-cold")
                    yield Static("", id="white-note")

                with TabPane("Patterns", id="tab-patterns"):
                    yield Slider("Speed", 0, 100, 50, "%", id="slider-speed")
                    yield ListView(*[PatternItem(p) for p in PresetPattern], id="pattern-list")

                with TabPane("Timers", id="tab-timers"):
                    with Horizontal(classes="button-row"):
                        yield Button("Reload", id="btn-timers")
                        yield Button("Sync Clock", id="btn-clock")
                    yield Static("", id="timer-list")

    def on_mount(self) -> None:
        self.query_one("#controls-container").display = False

    def watch_current_bulb(self, bulb: Optional[WifiLedBulb]) -> None:
        if bulb is None:
            self.query_one("#no-bulb-msg").display = True
            self.query_one("#controls-container").display = False
            self.query_one("#bulb-title", Static).update("Select a controller")
            return

        self.query_one("#no-bulb-msg").display = False
        self.query_one("#controls-container").display = True
        self.query_one("#bulb-title", Static).update(
            f"{bulb.device_id or bulb.ip_address}  {bulb.ip_address}  {bulb.model}"
        )

        if bulb.raw_state is None:
            status = "Unreachable"
        else:
            status = "ON" if bulb.is_on else "OFF"
        self.query_one("#power-status", Static).update(f"  Status: {status}")

        color = bulb.get_rgb_color()
        r, g, b = color.as_bytes()
        self.query_one("#slider-red", Slider).set_quietly(r)
        self.query_one("#slider-green", Slider).set_quietly(g)
        self.query_one("#slider-blue", Slider).set_quietly(b)
        self.query_one("#slider-bright", Slider).set_quietly(byte_to_percent(bulb.brightness))

        white = bulb.get_white_color()
        self.query_one("#slider-warm", Slider).set_quietly(byte_to_percent(white.warm))
        self.query_one("#slider-cold", Slider).set_quietly(byte_to_percent(white.cold))
        note = "" if bulb.rgbw_capable or bulb.mode == Mode.WARM_WHITE else "White channel may not be supported"
        self.query_one("#white-note", Static).update(note)

        self.query_one("#color-preview", ColorPreview).show_bulb(bulb)

    def show_timers(self, timers: list[TimerSlotResult]) -> None:
        lines = [f"#{i}: {timer}" for i, timer in enumerate(timers, 1)]
        self.query_one("#timer-list", Static).update("\n".join(lines))


# =============================================================================
# Main Application
# =============================================================================

class FluxApp(App):
    """FluxLED TUI Controller Application."""

    CSS = """
    Screen {
        layout: horizontal;
    }

    #main-area {
        width: 1fr;
        height: 100%;
    }

    ControlPanel {
        height: auto;
    }

    Footer {
        background: $primary;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("p", "toggle_power", "Power"),
        Binding("up", "slider_up", "Increase", show=False),
        Binding("down", "slider_down", "Decrease", show=False),
    ]

    TITLE = "FluxLED Controller"

    def __init__(self, broadcast: str = BROADCAST_ADDRESS, timeout: float = DEFAULT_TIMEOUT):
        super().__init__()
        self.manager = BulbManager(broadcast=broadcast, timeout=timeout)
        self.selected_bulb: Optional[WifiLedBulb] = None
        self._apply_timer: Optional[Timer] = None

    def compose(self) -> ComposeResult:
        yield Header()
        yield BulbSidebar()
        with ScrollableContainer(id="main-area"):
            yield ControlPanel()
        yield Footer()

    def on_mount(self) -> None:
        self.action_refresh()

    def on_unmount(self) -> None:
        self.manager.close()

    # -------------------------------------------------------------------------
    # Background work
    # -------------------------------------------------------------------------

    def _background(self, work: Callable, on_done: Optional[Callable] = None) -> None:
        """Run bulb I/O off the UI thread and hand the result back."""
        def runner():
            try:
                result = self.manager.run(work)
            except FluxLEDError as exc:
                self.call_from_thread(self.notify, f"Error: {exc}", severity="error")
                return
            self.call_from_thread(on_done or self._bulb_updated, result)

        Thread(target=runner, daemon=True).start()

    def _bulb_updated(self, _result=None) -> None:
        self._update_control_panel()
        self.query_one(BulbSidebar).update_bulbs(list(self.manager.bulbs.values()))

    def _update_control_panel(self) -> None:
        if self.selected_bulb:
            self.query_one(ControlPanel).current_bulb = self.selected_bulb

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def action_refresh(self) -> None:
        self.notify("Scanning for controllers...", timeout=1)

        def do_scan():
            try:
                bulbs = self.manager.discover()
            except FluxLEDError as exc:
                self.call_from_thread(self.notify, f"Scan failed: {exc}", severity="error")
                return
            self.call_from_thread(self._update_bulb_list, bulbs)

        Thread(target=do_scan, daemon=True).start()

    def _update_bulb_list(self, bulbs: list[WifiLedBulb]) -> None:
        self.query_one(BulbSidebar).update_bulbs(bulbs)
        if self.selected_bulb and self.selected_bulb not in bulbs:
            self.selected_bulb = None
            self.query_one(ControlPanel).current_bulb = None
        self._update_control_panel()
        self.notify(f"Found {len(bulbs)} controller(s)")

    def action_toggle_power(self) -> None:
        if self.selected_bulb:
            self._set_power(not self.selected_bulb.is_on)

    def action_slider_up(self) -> None:
        if isinstance(self.focused, Slider):
            self.focused.adjust(self.focused.step)

    def action_slider_down(self) -> None:
        if isinstance(self.focused, Slider):
            self.focused.adjust(-self.focused.step)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on_list_view_selected(self, event: ListView.Selected) -> None:
        if isinstance(event.item, BulbListItem):
            self.selected_bulb = event.item.bulb
            self.query_one("#timer-list", Static).update("")
            self._background(self.selected_bulb.update_state)
        elif isinstance(event.item, PatternItem) and self.selected_bulb:
            self._apply_pattern(event.item.pattern)

    def on_button_pressed(self, event: Button.Pressed) -> None:
        button_id = event.button.id

        if button_id == "btn-refresh":
            self.action_refresh()
        elif not self.selected_bulb:
            return
        elif button_id == "btn-power-on":
            self._set_power(True)
        elif button_id == "btn-power-off":
            self._set_power(False)
        elif button_id == "btn-timers":
            self._load_timers()
        elif button_id == "btn-clock":
            bulb = self.selected_bulb
            self._background(bulb.set_clock, lambda _: self.notify("Clock synchronized"))

    def on_slider_changed(self, event: Slider.Changed) -> None:
        if not self.selected_bulb:
            return
        slider_id = event.slider.id

        if slider_id == "slider-bright":
            # keep the hue, rescale the channels
            color = self._slider_color().with_brightness(event.value / 100)
            r, g, b = color.as_bytes()
            self.query_one("#slider-red", Slider).set_quietly(r)
            self.query_one("#slider-green", Slider).set_quietly(g)
            self.query_one("#slider-blue", Slider).set_quietly(b)
        elif slider_id in ("slider-red", "slider-green", "slider-blue"):
            brightness = byte_to_percent(self._slider_color().brightness_byte)
            self.query_one("#slider-bright", Slider).set_quietly(brightness)

        if slider_id in ("slider-red", "slider-green", "slider-blue", "slider-bright"):
            self.query_one("#color-preview", ColorPreview).show_color(self._slider_color())
            self._schedule_apply(self._apply_color)
        elif slider_id in ("slider-warm", "slider-cold"):
            self._schedule_apply(self._apply_white)

    def _slider_color(self) -> RGBColor:
        return RGBColor.from_bytes(
            self.query_one("#slider-red", Slider).value,
            self.query_one("#slider-green", Slider).value,
            self.query_one("#slider-blue", Slider).value,
        )

    def _schedule_apply(self, callback: Callable) -> None:
        """Send slider changes once the user pauses."""
        if self._apply_timer is not None:
            self._apply_timer.stop()
        self._apply_timer = self.set_timer(APPLY_DELAY, callback)

    # -------------------------------------------------------------------------
    # Bulb commands
    # -------------------------------------------------------------------------

    def _set_power(self, on: bool) -> None:
        bulb = self.selected_bulb
        self._background(bulb.turn_on if on else bulb.turn_off)

    def _apply_color(self) -> None:
        bulb = self.selected_bulb
        if bulb:
            color = self._slider_color()
            self._background(lambda: bulb.set_rgb(color))

    def _apply_white(self) -> None:
        bulb = self.selected_bulb
        if not bulb:
            return
        white = WhiteColor(
            percent_to_byte(self.query_one("#slider-warm", Slider).value),
            percent_to_byte(self.query_one("#slider-cold", Slider).value),
        )
        self._background(lambda: bulb.set_white(white))

    def _apply_pattern(self, pattern: PresetPattern) -> None:
        bulb = self.selected_bulb
        speed = self.query_one("#slider-speed", Slider).value
        self.notify(f"Pattern: {pattern.label} ({speed}%)")
        self._background(lambda: bulb.set_preset_pattern(pattern, speed))

    def _load_timers(self) -> None:
        bulb = self.selected_bulb
        panel = self.query_one(ControlPanel)
        self._background(bulb.get_timers, panel.show_timers)


# =============================================================================
# Entry Point
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        description='FluxLED TUI Controller - Control Magic Home lights from the terminal'
    )
    parser.add_argument(
        '-b', '--broadcast',
        default=BROADCAST_ADDRESS,
        help=f'Discovery broadcast address (default: {BROADCAST_ADDRESS})'
    )
    parser.add_argument(
        '-t', '--timeout',
        type=float,
        default=DEFAULT_TIMEOUT,
        help=f'Response timeout in seconds (default: {DEFAULT_TIMEOUT})'
    )
    args = parser.parse_args()

    app = FluxApp(broadcast=args.broadcast, timeout=args.timeout)
    app.run()


if __name__ == "__main__":
    main()
