"""
dtmf_decoder.py
====================================================

Block-wise DTMF keypad decoder.

Feed successive blocks of float samples (normalized to [-1, 1]) to
`DTMFDecoder.decode()`. Each call returns at most one symbol:

  - the block is shaped with an exact Blackman window,
  - a Goertzel bank measures normalized energy at the 8 DTMF frequencies,
  - the strongest low-group and high-group frequency must both reach the
    energy threshold, and the pair is looked up on the keypad grid,
  - a held key is reported once: the same symbol is suppressed until
    `press_interval` seconds of audio have passed since it was last accepted.

Example:

    decoder = DTMFDecoder(8000)
    for block in blocks:                 # e.g. 160 samples = 20 ms
        sym, ok = decoder.decode(block)
        if ok:
            print(sym)

A decoder holds per-stream state and is not thread safe; give every stream its own.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from fractions import Fraction
from functools import lru_cache
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

from dtmf_goertzel import ToneEnergyBank

LOG = logging.getLogger("dtmf_decoder")

DEFAULT_ENERGY_THRESHOLD = 0.032
DEFAULT_PRESS_INTERVAL_S = 0.2

# -------------------------
# Keypad
# -------------------------

LOW_FREQUENCIES: Tuple[int, ...] = (697, 770, 852, 941)
HIGH_FREQUENCIES: Tuple[int, ...] = (1209, 1336, 1477, 1633)

# KEYPAD[low index][high index]
KEYPAD: Tuple[str, ...] = (
    "123A",
    "456B",
    "789C",
    "*0#D",
)

DTMF: Dict[str, Tuple[int, int]] = {
    sym: (LOW_FREQUENCIES[r], HIGH_FREQUENCIES[c])
    for r, row in enumerate(KEYPAD)
    for c, sym in enumerate(row)
}
SYMBOLS = "".join(KEYPAD)

Seconds = Union[int, float, str, Fraction]


def _seconds(value: Seconds) -> Fraction:
    # str() keeps the decimal the caller wrote (0.2 -> 1/5, not the nearest binary float)
    if isinstance(value, Fraction):
        return value
    return Fraction(str(value))


# -------------------------
# Window
# -------------------------

def exact_blackman_window(sample: float, index: int, block_size: int) -> float:
    return sample * (
        0.426591
        - 0.496561 * math.cos((2 * math.pi * index) / block_size)
        + 0.076849 * math.cos((4 * math.pi * index) / block_size)
    )


@lru_cache(maxsize=32)
def blackman_window(block_size: int) -> np.ndarray:
    """
    Weights of exact_blackman_window() for a whole block (read-only, cached).
    """
    k = np.arange(block_size, dtype=np.float64)
    w = (
        0.426591
        - 0.496561 * np.cos((2 * np.pi * k) / block_size)
        + 0.076849 * np.cos((4 * np.pi * k) / block_size)
    )
    w.setflags(write=False)
    return w


# -------------------------
# Decoder
# -------------------------

class DecodeResult(NamedTuple):
    symbol: Optional[str]
    detected: bool


NOT_DETECTED = DecodeResult(None, False)


@dataclass
class DTMFEvent:
    t: float      # stream time at the end of the accepting block
    sym: str


class DTMFDecoder:
    """
    DTMF decoder for one audio stream.

    energy_threshold: minimum normalized energy (0..1) for a frequency to count as
        present. Default 0.032.
    sample_rate: samples per second; 8000, 16000 and 44100 are common.
    press_interval: seconds of audio that must pass before the same symbol is
        reported again. Default 0.2. May be changed at any time.
    """

    def __init__(
        self,
        sample_rate: int,
        energy_threshold: float = DEFAULT_ENERGY_THRESHOLD,
        press_interval: Seconds = DEFAULT_PRESS_INTERVAL_S,
    ):
        if not math.isfinite(energy_threshold):
            raise ValueError(f"energy_threshold must be finite, got {energy_threshold!r}")

        self.energy_threshold = float(energy_threshold)
        self.low_frequencies = LOW_FREQUENCIES
        self.high_frequencies = HIGH_FREQUENCIES
        self.bank = ToneEnergyBank(self.low_frequencies + self.high_frequencies, sample_rate)
        self.sample_rate = self.bank.sample_rate
        self.press_interval = press_interval

        self.duration = Fraction(0)
        self.last_key: Optional[str] = None
        self.last_duration = Fraction(0)

    @property
    def press_interval(self) -> Fraction:
        return self._press_interval

    @press_interval.setter
    def press_interval(self, value: Seconds) -> None:
        interval = _seconds(value)
        if interval < 0:
            raise ValueError(f"press_interval must be >= 0, got {value!r}")
        self._press_interval = interval

    @property
    def elapsed(self) -> float:
        return float(self.duration)

    def reset(self) -> None:
        """Forget stream time and the last key, e.g. before reusing for a new stream."""
        self.duration = Fraction(0)
        self.last_key = None
        self.last_duration = Fraction(0)
        self.bank.reset()

    def decode(self, samples) -> DecodeResult:
        x = _as_block(samples)
        self.duration += Fraction(len(x), self.sample_rate)

        sym = self.process(x)
        if sym is None:
            return NOT_DETECTED

        if sym == self.last_key and self.duration - self.last_duration < self.press_interval:
            LOG.debug(
                "DTMF '%s' held at %.3f s (accepted at %.3f s), suppressed",
                sym, self.elapsed, float(self.last_duration),
            )
            return NOT_DETECTED

        self.last_key = sym
        self.last_duration = self.duration
        LOG.debug("DTMF '%s' accepted at %.3f s", sym, self.elapsed)
        return DecodeResult(sym, True)

    def process(self, samples) -> Optional[str]:
        """
        Symbol present in one block, without debounce. The bank is reset afterwards.
        """
        x = _as_block(samples)
        n = len(x)
        if n == 0:
            return None

        self.bank.process_block(x * blackman_window(n))
        sym = self.energy_profile_to_symbol(self.bank.energies)
        self.bank.reset()
        return sym

    def energy_profile_to_symbol(self, energies: Mapping[int, float]) -> Optional[str]:
        r_idx = self._dominant(energies, self.low_frequencies)
        if r_idx is None:
            return None
        c_idx = self._dominant(energies, self.high_frequencies)
        if c_idx is None:
            return None
        return KEYPAD[r_idx][c_idx]

    def _dominant(self, energies: Mapping[int, float], group: Sequence[int]) -> Optional[int]:
        # strictly highest energy at or above threshold; ties keep the first frequency
        best_idx: Optional[int] = None
        best = 0.0
        for i, f in enumerate(group):
            e = energies.get(f, 0.0)
            if e > best and e >= self.energy_threshold:
                best = e
                best_idx = i
        return best_idx


def _as_block(samples) -> np.ndarray:
    x = np.asarray(samples, dtype=np.float64)
    if x.ndim != 1:
        raise ValueError(f"expected a 1-D block of samples, got shape {x.shape}")
    return x


def decode_blocks(decoder: DTMFDecoder, blocks: Iterable) -> List[DTMFEvent]:
    events: List[DTMFEvent] = []
    for block in blocks:
        sym, ok = decoder.decode(block)
        if ok:
            events.append(DTMFEvent(t=decoder.elapsed, sym=sym))
    return events
