"""Key code to display label mappings and key label ordering for keytally."""

UNKNOWN_KEY = 'Unknown'
BACKSPACE_KEY = 'Backspace'

# Keys with a fixed display name regardless of layout
NAMED_KEYS = {
    1: 'Escape', 14: 'Backspace', 15: 'Tab', 28: 'Return',
    29: 'Control', 42: 'Shift', 54: 'RightShift', 56: 'Option',
    57: 'Space', 58: 'CapsLock',
    59: 'F1', 60: 'F2', 61: 'F3', 62: 'F4', 63: 'F5',
    64: 'F6', 65: 'F7', 66: 'F8', 67: 'F9', 68: 'F10',
    87: 'F11', 88: 'F12',
    69: 'NumLock', 70: 'ScrollLock',
    96: 'Enter', 97: 'RightControl', 100: 'RightOption',
    102: 'Home', 103: 'ArrowUp', 104: 'PageUp', 105: 'ArrowLeft',
    106: 'ArrowRight', 107: 'End', 108: 'ArrowDown', 109: 'PageDown',
    110: 'Insert', 111: 'DeleteForward',
    113: 'Mute', 114: 'VolumeDown', 115: 'VolumeUp',
    119: 'Pause', 125: 'Meta', 126: 'RightMeta', 138: 'Help',
    464: 'Fn',
}

US_KEYCODE_TO_CHAR = {
    2: '1', 3: '2', 4: '3', 5: '4', 6: '5',
    7: '6', 8: '7', 9: '8', 10: '9', 11: '0',
    12: '-', 13: '=',
    16: 'q', 17: 'w', 18: 'e', 19: 'r', 20: 't',
    21: 'y', 22: 'u', 23: 'i', 24: 'o', 25: 'p',
    26: '[', 27: ']',
    30: 'a', 31: 's', 32: 'd', 33: 'f', 34: 'g',
    35: 'h', 36: 'j', 37: 'k', 38: 'l', 39: ';', 40: "'",
    41: '`', 43: '\\',
    44: 'z', 45: 'x', 46: 'c', 47: 'v', 48: 'b',
    49: 'n', 50: 'm', 51: ',', 52: '.', 53: '/',
    55: '*', 71: '7', 72: '8', 73: '9', 74: '-',
    75: '4', 76: '5', 77: '6', 78: '+',
    79: '1', 80: '2', 81: '3', 82: '0', 83: '.',
    98: '/',
}

DE_KEYCODE_TO_CHAR = {
    **US_KEYCODE_TO_CHAR,
    12: 'ß', 13: "'",
    21: 'z', 26: 'ü', 27: '+',
    39: 'ö', 40: 'ä', 41: '^', 43: '#',
    44: 'y', 53: '-',
}

LAYOUT_KEYCODE_MAPPINGS = {
    'us': US_KEYCODE_TO_CHAR,
    'de': DE_KEYCODE_TO_CHAR,
}

LETTER_CATEGORY = 0
OTHER_CATEGORY = 1


def get_key_name(keycode: int, layout: str = 'us') -> str:
    """Get display label for keycode in given layout.

    Args:
        keycode: Linux evdev keycode
        layout: Keyboard layout identifier ('us', 'de')

    Returns:
        Named key label, printable character, or 'KeyCode <n>' if unmapped
    """
    if keycode in NAMED_KEYS:
        return NAMED_KEYS[keycode]
    mapping = LAYOUT_KEYCODE_MAPPINGS.get(layout, US_KEYCODE_TO_CHAR)
    char = mapping.get(keycode)
    if char:
        return char
    return f'KeyCode {keycode}'


def is_supported_layout(layout: str) -> bool:
    """Check if layout has keycode mapping."""
    return layout in LAYOUT_KEYCODE_MAPPINGS


def normalize_event_label(key_label: str) -> str:
    """Replace an empty label with the 'Unknown' sentinel."""
    return key_label if key_label else UNKNOWN_KEY


def is_backspace(key_label: str) -> bool:
    return key_label.casefold() == BACKSPACE_KEY.casefold()


def _is_ascii_letter(key_label: str) -> bool:
    return len(key_label) == 1 and ('a' <= key_label <= 'z' or 'A' <= key_label <= 'Z')


def normalize_key_label(key_label: str) -> str:
    """Upper-case single ASCII letters; other labels pass through unchanged."""
    if _is_ascii_letter(key_label):
        return key_label.upper()
    return key_label


def key_category(key_label: str) -> int:
    """Letters sort before everything else."""
    if _is_ascii_letter(key_label):
        return LETTER_CATEGORY
    return OTHER_CATEGORY


def key_sort_key(key_label: str) -> tuple[int, str, str]:
    """Display ordering: category, then normalized label, then raw label."""
    return (key_category(key_label), normalize_key_label(key_label), key_label)


def category_label(key_label: str) -> str:
    """Human-readable category used in exports."""
    if key_category(key_label) == LETTER_CATEGORY:
        return 'Letter'
    return 'Symbol / Other'
