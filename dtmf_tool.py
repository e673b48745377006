#!/usr/bin/env python3
"""
dtmf_tool.py
====================================================

Command-line front end for dtmf_decoder.

1) gen:
   Writes raw PCM (signed 16-bit little-endian, mono) for a DTMF sequence:
     [pre_silence] [tone] [gap] [tone] [gap] ... [post_silence]
   optionally mixed with white noise and a hum tone so detection can be
   exercised against non-tone audio.

2) decode:
   Streams raw s16le mono PCM (file or stdin) through a DTMFDecoder in
   fixed-size blocks and prints the decoded keys:
   - block size from --block-ms (default 20 ms) or --block-samples
   - energy threshold and press interval are the decoder's knobs
   - optional JSON summary, per-event dump, timing stats and a plot

Config:
   Defaults for both commands may come from a TOML file (see load_toml_config).

Dependencies:
  python3 -m pip install .
"""

from __future__ import annotations

import argparse
import json
import math
import os
import sys
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Tuple, Dict

import numpy as np
from scipy import signal
import matplotlib.pyplot as plt

try:
    import tomllib  # py3.11+
except ModuleNotFoundError:  # py3.10-
    import tomli as tomllib  # type: ignore

import logging
LOG = logging.getLogger("dtmf_decoder.tool")

import dtmf_decoder as dd  # noqa: E402

# -------------------------
# Config loaders & helpers
# -------------------------

def _scan_argv_value(argv: List[str], opt: str) -> Optional[str]:
    """
    Find --opt VALUE or --opt=VALUE anywhere in argv.
    """
    for i, a in enumerate(argv):
        if a == opt and i + 1 < len(argv):
            return argv[i + 1]
        if a.startswith(opt + "="):
            return a.split("=", 1)[1]
    return None


def load_toml_config(path: Optional[str]) -> dict:
    """
    Load TOML config dict. If path is None, try a few defaults.
    """
    candidates: List[Path] = []
    if path:
        candidates.append(Path(path).expanduser())
    else:
        # Local project file first
        candidates.append(Path("dtmf_tool.toml"))
        candidates.append(Path("dtmf-tool.toml"))
        # XDG-ish fallback
        xdg = os.environ.get("XDG_CONFIG_HOME")
        if xdg:
            candidates.append(Path(xdg) / "dtmf-tool" / "config.toml")
        else:
            candidates.append(Path.home() / ".config" / "dtmf-tool" / "config.toml")

    cfg_path = next((p for p in candidates if p.exists()), None)
    if cfg_path is None:
        if path:
            raise SystemExit(f"Config file not found: '{path}'")
        return {}

    try:
        with cfg_path.open("rb") as f:
            cfg = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise SystemExit(f"Failed to read TOML config '{cfg_path}': {e}")

    cfg["_config_path"] = str(cfg_path)
    return cfg


def flatten_cmd_defaults(cmd: str, section: dict) -> dict:
    """
    Turn a TOML section into argparse defaults (flat dict of dest->value).
    Dashed keys are accepted as well ("block-ms" == "block_ms").
    """
    out: dict = {}
    if not isinstance(section, dict):
        return out

    for k, v in section.items():
        out[str(k).replace("-", "_")] = v

    # Config injection bypasses argparse type=..., so normalize here.
    if cmd == "decode" and out.get("block_samples") is not None:
        out["block_samples"] = int(out["block_samples"])

    return out


def apply_config_to_subparser(cmd_parser: argparse.ArgumentParser, defaults: dict, *, label: str = "") -> None:
    """
    Apply defaults only for dests that exist in this parser. Warn on unknown keys.
    """
    dests = {a.dest for a in cmd_parser._actions}  # pylint: disable=protected-access
    usable = {}
    unknown = []

    for k, v in (defaults or {}).items():
        if k in dests:
            usable[k] = v
        else:
            unknown.append(k)

    if usable:
        cmd_parser.set_defaults(**usable)

    if unknown:
        where = f" ({label})" if label else ""
        print(f"[warn] Ignoring unknown config keys{where}: {', '.join(sorted(unknown))}", file=sys.stderr)


def _strip_known_opts(argv: List[str], opts: List[str]) -> List[str]:
    out = []
    i = 0
    while i < len(argv):
        a = argv[i]
        matched = False
        for opt in opts:
            if a == opt:
                i += 2  # drop opt + value
                matched = True
                break
            if a.startswith(opt + "="):
                i += 1  # drop opt=value
                matched = True
                break
        if not matched:
            out.append(a)
            i += 1
    return out

# -------------------------
# Utility
# -------------------------

def amp_from_dbfs(dbfs: float) -> float:
    # 0 dBFS -> 1.0 peak. -20 dBFS -> 0.1 peak.
    return float(10.0 ** (dbfs / 20.0))

def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)

def json_sanitize(obj):
    """Convert NaN/Inf into None and make common NumPy types JSON-safe."""
    if isinstance(obj, (float, np.floating)):
        v = float(obj)
        return v if math.isfinite(v) else None
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, np.ndarray):
        return json_sanitize(obj.tolist())
    if isinstance(obj, dict):
        return {k: json_sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [json_sanitize(v) for v in obj]
    return obj

# -------------------------
# Raw PCM (s16le, mono)
# -------------------------

def pcm16_to_float(data: bytes) -> np.ndarray:
    n = len(data) // 2
    y = np.frombuffer(data[:2 * n], dtype="<i2")
    return y.astype(np.float64) / 32768.0

def float_to_pcm16(x: np.ndarray) -> bytes:
    x = np.clip(np.asarray(x, dtype=np.float64), -1.0, 1.0)
    return (x * 32767.0).astype("<i2").tobytes()

def iter_pcm_blocks(stream: BinaryIO, block_samples: int) -> Iterator[np.ndarray]:
    """
    Yield float blocks of block_samples from a binary s16le stream.
    The last block may be shorter.
    """
    if block_samples <= 0:
        raise ValueError("block_samples must be positive")
    nbytes = 2 * block_samples
    while True:
        data = stream.read(nbytes)
        if not data:
            break
        block = pcm16_to_float(data)
        if len(block):
            yield block

def block_size_for(sr: int, block_ms: float, block_samples: Optional[int]) -> int:
    if block_samples:
        return int(block_samples)
    n = int(round(sr * block_ms / 1000.0))
    if n <= 0:
        raise SystemExit(f"Block too short: {block_ms} ms at {sr} Hz")
    return n

# -------------------------
# DTMF synthesis
# -------------------------

def raised_cosine_env(n: int, sr: int, ramp_ms: float) -> np.ndarray:
    env = np.ones(n, dtype=np.float64)
    r = int(round(sr * ramp_ms / 1000.0))
    if r <= 0:
        return env
    if 2 * r >= n:
        # too short tone for the ramp; fall back to full Hann
        return signal.windows.hann(n, sym=False)

    k = np.arange(1, r + 1, dtype=np.float64) / r
    ramp = 0.5 - 0.5 * np.cos(np.pi * k)  # 0 -> 1
    env[:r] = ramp
    env[-r:] = ramp[::-1]
    return env

def dtmf_tone(sym: str, sr: int, dur_s: float, amp: float, ramp_ms: float = 5.0) -> np.ndarray:
    if sym not in dd.DTMF:
        raise ValueError(f"Unknown DTMF symbol: {sym}")
    f1, f2 = dd.DTMF[sym]
    n = int(round(sr * dur_s))
    t = np.arange(n, dtype=np.float64) / sr

    y = amp * 0.5 * (np.sin(2 * np.pi * f1 * t) + np.sin(2 * np.pi * f2 * t))
    y *= raised_cosine_env(n, sr, ramp_ms)
    return y

def dtmf_sequence(seq: str, sr: int, tone_dur: float, gap: float, amp: float, ramp_ms: float = 5.0) -> np.ndarray:
    parts: List[np.ndarray] = []
    z_gap = np.zeros(int(round(sr * gap)), dtype=np.float64)
    for ch in seq:
        parts.append(dtmf_tone(ch, sr, tone_dur, amp, ramp_ms=ramp_ms))
        parts.append(z_gap)
    return np.concatenate(parts) if parts else np.zeros(0, dtype=np.float64)

def background(n: int, sr: int, noise_dbfs: Optional[float], hum_hz: float, hum_dbfs: Optional[float],
               seed: Optional[int] = None) -> np.ndarray:
    """White noise (RMS at noise_dbfs) plus a hum sinusoid (peak at hum_dbfs)."""
    y = np.zeros(n, dtype=np.float64)
    if noise_dbfs is not None:
        rng = np.random.default_rng(seed)
        y += rng.normal(0.0, amp_from_dbfs(noise_dbfs), n)
    if hum_dbfs is not None and hum_hz > 0:
        t = np.arange(n, dtype=np.float64) / sr
        y += amp_from_dbfs(hum_dbfs) * np.sin(2 * np.pi * hum_hz * t)
    return y

# -------------------------
# Commands
# -------------------------

def cmd_gen(args: argparse.Namespace) -> None:
    sr = args.sr
    seq = str(args.seq).upper()
    bad = sorted({ch for ch in seq if ch not in dd.DTMF})
    if bad:
        raise SystemExit(f"Unknown DTMF symbol(s) in '{args.seq}': {' '.join(bad)}")

    out_path = Path(args.out)
    ensure_dir(out_path.parent if out_path.parent != Path(".") else Path("."))

    pre = np.zeros(int(round(sr * args.pre_s)), dtype=np.float64)
    post = np.zeros(int(round(sr * args.post_s)), dtype=np.float64)
    tones = dtmf_sequence(seq, sr, args.tone_s, args.gap_s, amp_from_dbfs(args.dbfs), ramp_ms=args.ramp_ms)

    x = np.concatenate([pre, tones, post])
    x += background(len(x), sr, args.noise_dbfs, args.hum_hz, args.hum_dbfs, seed=args.seed)

    peak = float(np.max(np.abs(x))) if len(x) else 0.0
    if peak > 1.0:
        LOG.warning("Peak %.3f exceeds full scale; samples will clip", peak)

    out_path.write_bytes(float_to_pcm16(x))
    print(f"Wrote: {out_path}")
    print(f"  sr={sr}, dur={len(x)/sr:.2f}s, peak={peak:.3f}")
    print(f"  seq='{seq}', tone={args.tone_s}s, gap={args.gap_s}s at {args.dbfs} dBFS peak")
    if args.noise_dbfs is not None:
        print(f"  noise={args.noise_dbfs} dBFS rms (seed={args.seed})")
    if args.hum_dbfs is not None:
        print(f"  hum={args.hum_hz}Hz at {args.hum_dbfs} dBFS peak")


def _open_pcm(path: str) -> BinaryIO:
    if path == "-":
        return sys.stdin.buffer
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"Input not found: '{path}'")
    return p.open("rb")


def cmd_decode(args: argparse.Namespace) -> None:
    sr = args.sr
    block = block_size_for(sr, args.block_ms, args.block_samples)

    try:
        decoder = dd.DTMFDecoder(sr, energy_threshold=args.threshold, press_interval=args.press_interval_s)
    except ValueError as e:
        raise SystemExit(f"Invalid decoder settings: {e}")

    stream = _open_pcm(args.pcm)
    try:
        events = dd.decode_blocks(decoder, iter_pcm_blocks(stream, block))
    finally:
        if stream is not sys.stdin.buffer:
            stream.close()

    decoded = "".join(e.sym for e in events)

    if args.stats and events:
        dts = np.diff([e.t for e in events])
        if len(dts):
            LOG.info(
                "DTMF stats: events=%d, dt median=%.3f s, min=%.3f s, max=%.3f s",
                len(events), float(np.median(dts)), float(np.min(dts)), float(np.max(dts)),
            )
        else:
            LOG.info("DTMF stats: events=%d", len(events))

    result = {
        "pcm": str(args.pcm),
        "sr": sr,
        "block_samples": block,
        "threshold": args.threshold,
        "press_interval_s": float(decoder.press_interval),
        "duration_s": decoder.elapsed,
        "decoded": decoded,
        "events": [{"t": e.t, "sym": e.sym} for e in events],
    }

    if args.json:
        print(json.dumps(json_sanitize(result), indent=2))
        return

    print(f"Decoded {len(events)} DTMF keys from {decoder.elapsed:.2f}s of audio: {decoded or '(none)'}")

    if args.dump_events:
        for e in events:
            print(f"{e.t:8.3f}s  {e.sym}")

    if args.plot:
        times = [e.t for e in events]
        plt.figure()
        plt.scatter(times, np.arange(len(times)))
        for i, e in enumerate(events):
            plt.annotate(e.sym, (e.t, i), textcoords="offset points", xytext=(4, 4))
        plt.grid(True)
        plt.xlabel("Time (s)")
        plt.ylabel("Event index")
        plt.title(f"DTMF detections over time (sr={sr}, block={block})")
        plt.show()

# -------------------------
# CLI
# -------------------------

def build_parser() -> Tuple[argparse.ArgumentParser, Dict[str, argparse.ArgumentParser]]:
    ap = argparse.ArgumentParser(prog="dtmf-tool")
    sub = ap.add_subparsers(dest="cmd", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="TOML config path (default: auto-search)")
    common.add_argument("--preset", default=None, help="Preset name under [presets.<name>.<cmd>]")
    common.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    g = sub.add_parser("gen", help="Write raw s16le PCM for a DTMF sequence", parents=[common])
    d = sub.add_parser("decode", help="Decode DTMF keys from raw s16le PCM", parents=[common])

    # -------- gen --------
    g.add_argument("seq", help="symbols to encode (0-9, *, #, A-D)")
    g.add_argument("--out", default="dtmf.raw")
    g.add_argument("--sr", type=int, default=8000)
    g.add_argument("--tone-s", type=float, default=0.10)
    g.add_argument("--gap-s", type=float, default=0.14,
                   help="silence after each tone (keep tone+gap above the decoder's press interval for repeats)")
    g.add_argument("--pre-s", type=float, default=0.20)
    g.add_argument("--post-s", type=float, default=0.20)
    g.add_argument("--dbfs", type=float, default=-6.0, help="tone level (peak dBFS)")
    g.add_argument("--ramp-ms", type=float, default=5.0,
                   help="attack/release ramp in ms (0 = hard gate)")
    g.add_argument("--noise-dbfs", type=float, default=None, help="mix in white noise at this RMS level")
    g.add_argument("--hum-hz", type=float, default=300.0)
    g.add_argument("--hum-dbfs", type=float, default=None, help="mix in a hum tone at this peak level")
    g.add_argument("--seed", type=int, default=None, help="noise seed")
    g.set_defaults(func=cmd_gen)

    # ------- decode -------
    d.add_argument("pcm", help="raw s16le mono PCM file, or - for stdin")
    d.add_argument("--sr", type=int, default=8000)
    d.add_argument("--block-ms", type=float, default=20.0)
    d.add_argument("--block-samples", type=int, default=None, help="overrides --block-ms")
    d.add_argument("--threshold", type=float, default=dd.DEFAULT_ENERGY_THRESHOLD,
                   help="minimum normalized energy per frequency (0..1)")
    d.add_argument("--press-interval-s", type=float, default=dd.DEFAULT_PRESS_INTERVAL_S,
                   help="same key is reported again only after this much audio")
    d.add_argument("--dump-events", action="store_true")
    d.add_argument("--plot", action="store_true")
    d.add_argument("--json", action="store_true", help="print JSON to stdout")
    d.add_argument("--stats", action="store_true", help="print DTMF timing stats")
    d.set_defaults(func=cmd_decode)

    return ap, {"gen": g, "decode": d}

# ----------------------
# MAIN
# ----------------------

def main(argv: Optional[List[str]] = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)

    # Grab config/preset anywhere in argv (before/after subcommand)
    cfg_path = _scan_argv_value(argv, "--config")
    preset = _scan_argv_value(argv, "--preset")

    cfg = load_toml_config(cfg_path)

    ap, cmd_parsers = build_parser()

    # Apply base sections: [gen], [decode]
    for cmd, p in cmd_parsers.items():
        base = flatten_cmd_defaults(cmd, cfg.get(cmd, {}))
        apply_config_to_subparser(p, base, label=f"{cmd}")

    # Apply optional presets: [presets.<name>.<cmd>]
    if preset:
        presets = cfg.get("presets", {})
        pset = presets.get(preset, {}) if isinstance(presets, dict) else {}
        if not isinstance(pset, dict):
            pset = {}
        for cmd, p in cmd_parsers.items():
            override = flatten_cmd_defaults(cmd, pset.get(cmd, {}))
            apply_config_to_subparser(p, override, label=f"presets.{preset}.{cmd}")

    argv2 = _strip_known_opts(argv, ["--config", "--preset"])
    args = ap.parse_args(argv2)

    # Basic console logging (only if nothing configured yet)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("dtmf_decoder").setLevel(logging.DEBUG)

    # If user asked for DTMF stats, ensure INFO is visible even if env preconfigured logging
    if bool(getattr(args, "stats", False)):
        LOG.setLevel(logging.INFO)

    args.func(args)

if __name__ == "__main__":
    main()
