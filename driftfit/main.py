#!/usr/bin/env python3
r"""
Drift-chamber track fitting runner.

Reads JSON event files holding track candidates (seed kinematics plus the
CDC straw and FDC pseudo-point hits assigned to them), fits every candidate
wire-based and then time-based under each mass hypothesis, keeps the best
hypothesis per candidate by :math:`\chi^2/n_\mathrm{dof}` and reports a
summary per event. Results can be written to CSV.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   driftfit -f events/ -n 10 --config config.json --out results.csv
   driftfit -f "events/run_*.json" -v
"""

from __future__ import annotations

import argparse
import logging
import re
import time
from glob import glob
from pathlib import Path
from typing import List, MutableMapping, Sequence, Tuple

import numpy as np
import pandas as pd

import driftfit.data as dft_data
from driftfit.config import FitterConfig, SwimConfig, load_config
from driftfit.fitter import LeastSquaresTrackFitter
from driftfit.hits import LorentzDeflectionTable
from driftfit.track_builder import DEFAULT_MASS_HYPOTHESES, TrackBuilder

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
        Parser with options for input events, configuration, output and verbosity.
    """
    p = argparse.ArgumentParser(description="Fit drift-chamber track candidates.")
    p.add_argument(
        "-f", "--file", type=str, default="event.json",
        help=(
            "Input JSON event, a directory containing *.json, or a glob "
            "(e.g. data/run_*.json). Default: event.json"
        ),
    )
    p.add_argument(
        "-n", "--n-events", type=int, default=1,
        help=(
            "Number of events to run. When --file is a directory or glob, take the "
            "first N matches (natural order). When --file is a single file, start at "
            "that file and continue through its siblings. Default: 1."
        ),
    )
    p.add_argument("--config", type=str, default=None,
                   help="JSON config with 'fitter', 'swimmer', 'lorentz' and 'mass_hypotheses' blocks.")
    p.add_argument("-o", "--out", type=str, default=None,
                   help="If set, write a CSV with one row per fitted track to this path.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S``
    timestamps; ``DEBUG`` when ``verbose`` else ``INFO``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _natural_key(path: Path):
    """Natural sort key (split digits) so run_2 comes before run_10."""
    parts = re.split(r"(\d+)", path.name)
    return [int(p) if p.isdigit() else p.lower() for p in parts]


def _resolve_event_paths(file_arg: str, n_events: int) -> List[Path]:
    """
    Turn --file into a list of up to n_events .json paths.

    Supports a single file, a directory (``*.json`` inside) or a glob pattern.
    For a single file with n_events>1, continue through its siblings in natural
    order starting at the given file.
    """
    n = max(1, int(n_events))
    s = file_arg
    p = Path(s)

    if any(ch in s for ch in "*?[]"):
        cands = sorted((Path(x) for x in glob(s)), key=_natural_key)
        return cands[:n]

    if p.is_dir():
        cands = sorted(p.glob("*.json"), key=_natural_key)
        return cands[:n]

    if p.is_file():
        sibs = sorted(p.parent.glob("*.json"), key=_natural_key)
        if p in sibs:
            i = sibs.index(p)
            return sibs[i:i + n]
        return [p]
    return []


def build_fitter(config: MutableMapping) -> Tuple[LeastSquaresTrackFitter, Sequence[float]]:
    """Fitter and mass hypotheses from a parsed config (missing blocks take defaults)."""
    fitter = LeastSquaresTrackFitter(
        FitterConfig.from_mapping(config.get("fitter")),
        SwimConfig.from_mapping(config.get("swimmer")),
        LorentzDeflectionTable.from_mapping(config.get("lorentz")),
    )
    masses = tuple(float(m) for m in config.get("mass_hypotheses", DEFAULT_MASS_HYPOTHESES))
    return fitter, masses


def run_event(builder: TrackBuilder, path: Path) -> pd.DataFrame:
    """Fit all candidates of one event file and return their results frame."""
    candidates = dft_data.load_event(path)
    ids, tracks = [], []
    for cand in candidates:
        res = builder.fit_candidate(cand)
        if res is not None:
            ids.append(cand.candidate_id)
            tracks.append(res)
    frame = builder.results_frame(tracks, ids)
    frame.insert(0, "event", path.stem)
    return frame


def main(argv: Sequence[str] | None = None) -> None:
    r"""
    Pipeline: **resolve events → load config → fit candidates → summarise → write**.

    Raises
    ------
    FileNotFoundError
        If ``--file`` matches no event.
    ValueError
        If the config or an event file is malformed.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    event_paths = _resolve_event_paths(args.file, args.n_events)
    if not event_paths:
        raise FileNotFoundError(f"No events found for --file={args.file}")
    if len(event_paths) > 1:
        logger.info("Running on %d events. First: %s", len(event_paths), event_paths[0].name)
    else:
        logger.info("Running on event: %s", event_paths[0].name)

    config: MutableMapping = {}
    if args.config:
        logger.info("Reading config from %s", args.config)
        config = load_config(Path(args.config))
    fitter, masses = build_fitter(config)
    builder = TrackBuilder(fitter, masses)

    frames: List[pd.DataFrame] = []
    for idx, ev_path in enumerate(event_paths, start=1):
        logger.info("=== Event %d/%d: %s ===", idx, len(event_paths), ev_path.name)
        t0 = time.time()
        frame = run_event(builder, ev_path)
        dt = time.time() - t0
        if frame.empty:
            logger.warning("No tracks were successfully fitted for event %s.", ev_path.name)
        else:
            logger.info("Fitted %d tracks in %.2fs | median chisq/dof=%.3f | median p=%.3f GeV",
                        len(frame), dt, float(np.nanmedian(frame["chisq_per_dof"])),
                        float(np.nanmedian(frame["p"])))
        frames.append(frame)

    stats = builder.get_track_statistics()
    logger.info("Track fitting statistics:")
    for k, v in stats.items():
        logger.info("  %s: %s", k, v)

    if args.out:
        dft_data.write_results(pd.concat(frames, ignore_index=True), Path(args.out))
        logger.info("Wrote results to %s", args.out)


if __name__ == "__main__":
    main()
