from fractions import Fraction

import numpy as np
import pytest

import dtmf_decoder as dd
from dtmf_decoder import DecodeResult, DTMFDecoder, decode_blocks, exact_blackman_window

SR = 8000
BLOCK = 160  # 20 ms at 8 kHz


def tone(sym, n, sr=SR, amp=0.5, start=0):
    f1, f2 = dd.DTMF[sym]
    t = (start + np.arange(n)) / sr
    return amp * 0.5 * (np.sin(2 * np.pi * f1 * t) + np.sin(2 * np.pi * f2 * t))


def blocks_of(x, n=BLOCK):
    return [x[i:i + n] for i in range(0, len(x), n)]


# -------------------------
# Keypad / window
# -------------------------

def test_keypad_table():
    assert len(dd.DTMF) == 16
    assert len(set(dd.DTMF.values())) == 16
    assert dd.DTMF["1"] == (697, 1209)
    assert dd.DTMF["0"] == (941, 1336)
    assert dd.DTMF["#"] == (941, 1477)
    assert dd.DTMF["D"] == (941, 1633)


def test_window_values():
    assert exact_blackman_window(1.0, 0, 160) == pytest.approx(0.006879, abs=1e-12)
    assert exact_blackman_window(1.0, 80, 160) == pytest.approx(1.000001, abs=1e-12)
    assert exact_blackman_window(0.5, 40, 160) == pytest.approx(0.5 * (0.426591 - 0.076849), abs=1e-12)
    assert exact_blackman_window(0.0, 17, 160) == 0.0


def test_window_array_matches_scalar():
    n = 320
    w = dd.blackman_window(n)
    assert w.shape == (n,)
    assert not w.flags.writeable
    for i in (0, 1, 33, 160, 319):
        assert w[i] == pytest.approx(exact_blackman_window(1.0, i, n), rel=1e-12, abs=1e-15)


# -------------------------
# Symbol selection
# -------------------------

def test_energy_profile_picks_dominant_pair():
    d = DTMFDecoder(SR)
    energies = {697: 0.05, 770: 0.2, 852: 0.01, 941: 0.0, 1209: 0.0, 1336: 0.04, 1477: 0.15, 1633: 0.1}
    assert d.energy_profile_to_symbol(energies) == "6"


def test_energy_profile_tie_keeps_first():
    d = DTMFDecoder(SR)
    energies = {697: 0.3, 770: 0.3, 1209: 0.1, 1336: 0.2}
    assert d.energy_profile_to_symbol(energies) == "2"


def test_energy_profile_threshold_is_inclusive():
    d = DTMFDecoder(SR, energy_threshold=0.1)
    assert d.energy_profile_to_symbol({941: 0.1, 1477: 0.1}) == "#"
    assert d.energy_profile_to_symbol({941: 0.1, 1477: 0.0999}) is None
    assert d.energy_profile_to_symbol({941: 0.0999, 1477: 0.5}) is None


def test_energy_profile_needs_both_groups():
    d = DTMFDecoder(SR)
    assert d.energy_profile_to_symbol({697: 0.5}) is None
    assert d.energy_profile_to_symbol({1209: 0.5}) is None
    assert d.energy_profile_to_symbol({}) is None


@pytest.mark.parametrize("sym", list(dd.SYMBOLS))
def test_every_symbol(sym):
    d = DTMFDecoder(SR)
    assert d.process(tone(sym, BLOCK)) == sym


def test_every_symbol_at_44100():
    for sym in dd.SYMBOLS:
        d = DTMFDecoder(44100)
        assert d.decode(tone(sym, 882, sr=44100, start=123)) == (sym, True)


def test_process_resets_bank():
    d = DTMFDecoder(SR)
    d.process(tone("5", BLOCK))
    assert all(r.filter_length == 0 for r in d.bank.resonators.values())
    assert all(e == 0.0 for e in d.bank.energies.values())


# -------------------------
# Decode
# -------------------------

def test_decode_result_unpacks():
    d = DTMFDecoder(SR)
    sym, ok = d.decode(tone("9", BLOCK))
    assert (sym, ok) == ("9", True)
    assert isinstance(d.decode(np.zeros(BLOCK)), DecodeResult)


def test_silence_is_not_detected():
    d = DTMFDecoder(SR)
    assert d.decode(np.zeros(BLOCK)) == (None, False)
    assert d.duration == Fraction(BLOCK, SR)


def test_threshold_gating():
    d = DTMFDecoder(SR, energy_threshold=0.99)
    assert d.decode(tone("1", BLOCK)) == (None, False)


def test_single_tone_is_not_a_key():
    t = np.arange(BLOCK) / SR
    d = DTMFDecoder(SR)
    assert d.decode(0.5 * np.sin(2 * np.pi * 697 * t)) == (None, False)
    assert d.decode(0.5 * np.sin(2 * np.pi * 1336 * t)) == (None, False)


def test_empty_block():
    d = DTMFDecoder(SR)
    d.decode(tone("3", BLOCK))
    duration = d.duration
    assert d.decode([]) == (None, False)
    assert d.duration == duration
    assert d.last_key == "3"
    assert d.process(np.array([])) is None


def test_held_key_is_reported_once_per_press_interval():
    d = DTMFDecoder(SR)
    held = tone("5", 11 * BLOCK)
    results = [d.decode(b).detected for b in blocks_of(held)]
    # accepted at 20 ms, again once 200 ms have passed since then (block 11)
    assert results == [True] + [False] * 9 + [True]
    assert d.last_duration == Fraction(11 * BLOCK, SR)


def test_short_gap_does_not_release_key():
    d = DTMFDecoder(SR)
    x = np.concatenate([tone("7", BLOCK), np.zeros(3 * BLOCK), tone("7", BLOCK, start=4 * BLOCK)])
    results = [d.decode(b) for b in blocks_of(x)]
    assert [r.detected for r in results] == [True, False, False, False, False]


def test_other_key_is_reported_immediately():
    d = DTMFDecoder(SR)
    assert d.decode(tone("1", BLOCK)) == ("1", True)
    assert d.decode(tone("2", BLOCK)) == ("2", True)
    assert d.decode(tone("1", BLOCK)) == ("1", True)


def test_press_interval_zero_reports_every_block():
    d = DTMFDecoder(SR, press_interval=0)
    held = tone("C", 4 * BLOCK)
    assert [d.decode(b).detected for b in blocks_of(held)] == [True] * 4


def test_press_interval_can_be_changed():
    d = DTMFDecoder(SR)
    assert d.press_interval == Fraction(1, 5)
    d.press_interval = 0.04
    assert d.press_interval == Fraction(1, 25)
    held = tone("4", 4 * BLOCK)
    assert [d.decode(b).detected for b in blocks_of(held)] == [True, False, True, False]


def test_reset_starts_a_new_stream():
    d = DTMFDecoder(SR)
    assert d.decode(tone("8", BLOCK)).detected
    d.reset()
    assert d.duration == 0
    assert d.last_key is None
    assert d.decode(tone("8", BLOCK)).detected


def test_at_most_one_symbol_per_block():
    rng = np.random.default_rng(11)
    d = DTMFDecoder(SR, press_interval=0)
    for i in range(40):
        block = rng.normal(0, 0.1, BLOCK)
        if i % 3 == 0:
            block = block + tone(dd.SYMBOLS[i % 16], BLOCK)
        sym, ok = d.decode(block)
        if ok:
            assert isinstance(sym, str) and len(sym) == 1 and sym in dd.SYMBOLS
        else:
            assert sym is None


def test_decode_blocks_events():
    d = DTMFDecoder(SR)
    x = np.concatenate([np.zeros(2 * BLOCK), tone("A", 2 * BLOCK), np.zeros(10 * BLOCK), tone("A", BLOCK)])
    events = decode_blocks(d, blocks_of(x))
    assert [e.sym for e in events] == ["A", "A"]
    assert events[0].t == pytest.approx(0.06)
    assert events[1].t == pytest.approx(0.30)


# -------------------------
# Construction
# -------------------------

@pytest.mark.parametrize("kwargs", [
    {"sample_rate": 0},
    {"sample_rate": 8000, "energy_threshold": float("nan")},
    {"sample_rate": 8000, "press_interval": -0.1},
])
def test_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        DTMFDecoder(**kwargs)


def test_rejects_multichannel_block():
    d = DTMFDecoder(SR)
    with pytest.raises(ValueError):
        d.decode(np.zeros((BLOCK, 2)))
