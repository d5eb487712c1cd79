"""
Amateur band labels for MQTT topics and spot messages.

Ranges are inclusive in MHz, except 630m whose upper edge is exclusive.
Anything outside the table is labelled "other".
"""

from typing import List, Tuple

# (label, low MHz, high MHz, high edge inclusive)
AMATEUR_BANDS: List[Tuple[str, float, float, bool]] = [
    ("2200m", 0.1357, 0.1378, True),
    ("630m", 0.470, 0.480, False),
    ("160m", 1.8, 2.0, True),
    ("80m", 3.5, 4.0, True),
    ("60m", 5.25, 5.45, True),
    ("40m", 7.0, 7.3, True),
    ("30m", 10.1, 10.15, True),
    ("20m", 14.0, 14.35, True),
    ("17m", 18.068, 18.168, True),
    ("15m", 21.0, 21.45, True),
    ("12m", 24.89, 24.99, True),
    ("10m", 28.0, 29.7, True),
    ("6m", 50.0, 54.0, True),
]

OTHER_BAND = "other"


def frequency_to_band(frequency_khz: float) -> str:
    """
    Map a dial frequency in kHz to its amateur band label.

    Examples:
        frequency_to_band(14097.0)  -> "20m"
        frequency_to_band(474.2)    -> "630m"
        frequency_to_band(10000.0)  -> "other"
    """
    freq_mhz = frequency_khz / 1000.0
    for label, low, high, high_inclusive in AMATEUR_BANDS:
        if freq_mhz < low:
            continue
        if freq_mhz < high or (high_inclusive and freq_mhz == high):
            return label
    return OTHER_BAND
