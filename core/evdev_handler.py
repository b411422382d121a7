"""evdev keyboard event source for keytally (works on Wayland and X11)."""

import logging
import threading
from select import select
from typing import Callable, List, Optional

try:
    from evdev import InputDevice, list_devices, ecodes
    EVDEV_AVAILABLE = True
except ImportError:
    EVDEV_AVAILABLE = False

from utils.keycodes import get_key_name

log = logging.getLogger('keytally.evdev')

KEY_PRESS = 1


class EvdevHandler:
    """Reads key presses from keyboard devices and forwards labeled events.

    Only press events reach the callback; releases and autorepeat are
    ignored so one physical keystroke counts once.
    """

    def __init__(self, on_key: Callable[[int, str], None],
                 layout_getter: Callable[[], str]):
        """Initialize evdev event handler.

        Args:
            on_key: Called with (timestamp_ms, key_label) for every press
            layout_getter: Function to get current keyboard layout
        """
        if not EVDEV_AVAILABLE:
            raise ImportError("evdev module is not installed. Install it with: pip install evdev")

        self.on_key = on_key
        self.layout_getter = layout_getter
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.device_paths: List[str] = []
        self.events_seen = 0
        self.callback_errors = 0

    def _find_keyboard_devices(self) -> List[str]:
        """Find paths of all input devices that look like keyboards."""
        keyboards = []
        for path in list_devices():
            try:
                device = InputDevice(path)
                caps = device.capabilities().get(ecodes.EV_KEY, [])
                has_letter_keys = any(
                    ecodes.KEY_A <= code <= ecodes.KEY_Z or
                    code in (ecodes.KEY_SPACE, ecodes.KEY_ENTER, ecodes.KEY_ESC)
                    for code in caps
                )
                if has_letter_keys:
                    keyboards.append(path)
                    log.info(f"Found keyboard: {device.name} at {path}")
                device.close()
            except PermissionError:
                log.error(f"Permission denied accessing {path}. You may need to be in the 'input' group.")
            except OSError as e:
                log.error(f"Error accessing {path}: {e}")

        return keyboards

    def start(self) -> None:
        """Start listening for keyboard events in background thread."""
        if self.running:
            return

        self.device_paths = self._find_keyboard_devices()
        if not self.device_paths:
            raise RuntimeError("No keyboard devices found. Make sure you're in the 'input' group: sudo usermod -aG input $USER")

        self.running = True
        self.thread = threading.Thread(target=self._run_listener, name="keytally-evdev", daemon=True)
        self.thread.start()

    def stop(self) -> None:
        """Stop listening for keyboard events."""
        self.running = False
        if self.thread:
            self.thread.join(timeout=1)
            self.thread = None

    def _run_listener(self) -> None:
        """Main event loop that reads from devices."""
        devices = []
        for path in self.device_paths:
            try:
                devices.append(InputDevice(path))
            except OSError as e:
                log.error(f"Error reopening device {path}: {e}")

        if not devices:
            log.error("No keyboard devices available in listener thread")
            self.running = False
            return

        log.info(f"Listening on {len(devices)} keyboard device(s)...")
        try:
            while self.running:
                ready, _, _ = select(devices, [], [], 0.1)
                for device in ready:
                    try:
                        for event in device.read():
                            if event.type == ecodes.EV_KEY:
                                self._process_key_event(event)
                    except OSError:
                        # Device disconnected
                        log.warning(f"Lost keyboard device {device.path}")
                        devices.remove(device)
                if not devices:
                    log.error("All keyboard devices disconnected")
                    break
        finally:
            for device in devices:
                device.close()
            self.running = False

    def _process_key_event(self, event) -> None:
        """Process a single key event from evdev."""
        # event.value: 0 = release, 1 = press, 2 = repeat
        if event.value != KEY_PRESS:
            return

        try:
            timestamp_ms = int(event.timestamp() * 1000)
            key_name = get_key_name(event.code, self.layout_getter())
        except (AttributeError, TypeError, ValueError) as e:
            log.error(f"Error processing keyboard event: {e}")
            return

        self.events_seen += 1
        if self.events_seen <= 5:
            log.info(f"Received key press: {key_name} ({event.code})")

        try:
            self.on_key(timestamp_ms, key_name)
        except Exception as e:
            self.callback_errors += 1
            # Log every 100th failure to avoid spam
            if self.callback_errors % 100 == 1:
                log.warning(f"Key callback failed ({self.callback_errors} total): {e}")

    def get_state(self) -> dict:
        """Get current handler state.

        Returns:
            Dictionary with state information
        """
        return {
            'running': self.running,
            'devices': len(self.device_paths),
            'events_seen': self.events_seen,
            'callback_errors': self.callback_errors,
            'handler_type': 'evdev',
        }
