"""
dtmf_goertzel.py

Per-frequency Goertzel resonators with an amplitude-normalized energy estimate.

Each resonator runs the usual second-order recurrence

    s[n] = x[n] + c * s[n-1] - s[n-2],    c = 2 cos(2 pi f / sr)

and after every sample reports

    energy = power / total_power / filter_length

where `power` is the Goertzel power of the samples seen so far and `total_power` is
their summed square. The result is a dimensionless "fraction of the block's power
sitting at f", comparable across block sizes and signal levels.

State is per block: call `ToneEnergyBank.reset()` between blocks.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, Sequence

import numpy as np
from scipy import signal

LOG = logging.getLogger("dtmf_decoder.goertzel")


@dataclass
class Resonator:
    frequency: int
    coefficient: float
    first_previous: float = 0.0
    second_previous: float = 0.0
    filter_length: int = 0
    total_power: float = 0.0
    energy: float = 0.0

    def process_sample(self, sample: float) -> None:
        c = self.coefficient
        f2 = self.first_previous
        f1 = sample + c * f2 - self.second_previous
        self.filter_length += 1
        power = (f2 * f2) + (f1 * f1) - (c * f1 * f2)
        total_power = self.total_power + sample * sample
        if total_power == 0:
            total_power = 1.0
        self.energy = power / total_power / self.filter_length
        self.first_previous = f1
        self.second_previous = f2
        self.total_power = total_power

    def process_block(self, x: np.ndarray) -> None:
        """
        Same result as process_sample() over x, using lfilter for the recurrence.
        """
        n = len(x)
        if n == 0:
            return

        c = self.coefficient
        b = [1.0]
        a = [1.0, -c, 1.0]
        zi = signal.lfiltic(b, a, [self.first_previous, self.second_previous])
        y, _ = signal.lfilter(b, a, x, zi=zi)

        f1 = float(y[-1])
        f2 = float(y[-2]) if n > 1 else self.first_previous

        # Zero running power at the first sample is clamped to 1 and kept.
        total_power = self.total_power
        if total_power + float(x[0]) * float(x[0]) == 0:
            total_power = 1.0
        total_power += float(np.dot(x, x))

        self.filter_length += n
        power = (f2 * f2) + (f1 * f1) - (c * f1 * f2)
        self.energy = power / total_power / self.filter_length
        self.first_previous = f1
        self.second_previous = f2
        self.total_power = total_power

    def reset(self) -> None:
        self.first_previous = 0.0
        self.second_previous = 0.0
        self.filter_length = 0
        self.total_power = 0.0
        self.energy = 0.0


def goertzel_coefficient(frequency: float, sample_rate: int) -> float:
    omega = 2.0 * math.pi * (float(frequency) / float(sample_rate))
    return 2.0 * math.cos(omega)


class ToneEnergyBank:
    """
    One Resonator per target frequency, all fed the same samples.

    The coefficients depend only on frequency and sample rate, so they are fixed for
    the lifetime of the bank; only the running state is cleared by reset().
    """

    def __init__(self, frequencies: Iterable[int], sample_rate: int):
        if int(sample_rate) != sample_rate or sample_rate <= 0:
            raise ValueError(f"sample_rate must be a positive integer, got {sample_rate!r}")

        self.sample_rate = int(sample_rate)
        self.frequencies: Sequence[int] = tuple(int(f) for f in frequencies)
        self.resonators: Dict[int, Resonator] = {
            f: Resonator(frequency=f, coefficient=goertzel_coefficient(f, self.sample_rate))
            for f in self.frequencies
        }
        LOG.debug(
            "Goertzel bank: sr=%d, coefficients=%s",
            self.sample_rate,
            {f: round(r.coefficient, 6) for f, r in self.resonators.items()},
        )

    def process_sample(self, sample: float) -> None:
        sample = float(sample)
        for r in self.resonators.values():
            r.process_sample(sample)

    def process_block(self, samples) -> None:
        x = np.asarray(samples, dtype=np.float64)
        for r in self.resonators.values():
            r.process_block(x)

    def reset(self) -> None:
        for r in self.resonators.values():
            r.reset()

    @property
    def energies(self) -> Dict[int, float]:
        return {f: r.energy for f, r in self.resonators.items()}

    def energy(self, frequency: int) -> float:
        r = self.resonators.get(frequency)
        return r.energy if r is not None else 0.0
