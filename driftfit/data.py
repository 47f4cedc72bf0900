from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Mapping

import orjson
import pandas as pd

from driftfit.fitter import KinematicData, TrackCandidate
from driftfit.geometry import Wire
from driftfit.hits import CDCTrackHit, FDCPseudoHit

logger = logging.getLogger(__name__)

__all__ = ["load_event", "parse_candidate", "write_results"]


def _cdc_hit(h: Mapping[str, Any]) -> CDCTrackHit:
    wire = Wire.cdc(h["origin"], h["direction"], h.get("ring", 0), h.get("straw", 0),
                    h.get("stereo", 0.0), h.get("length", 150.0))
    return CDCTrackHit(wire, float(h["dist"]), float(h["tdrift"]), int(h.get("id", -1)))


def _fdc_hit(h: Mapping[str, Any]) -> FDCPseudoHit:
    wire = Wire.fdc(h["origin"], h["direction"], h.get("layer", 0), h.get("wire", 0),
                    h.get("angle", 0.0), h.get("length", float("inf")))
    return FDCPseudoHit(wire, float(h["dist"]), float(h["time"]), float(h["s"]), int(h.get("id", -1)))


def parse_candidate(block: Mapping[str, Any], default_id: int = -1) -> TrackCandidate:
    r"""
    Build a :class:`~driftfit.fitter.TrackCandidate` from one event-file block.

    Expected layout::

        {"id": 3,
         "seed": {"position": [x, y, z], "momentum": [px, py, pz],
                  "charge": 1, "mass": 0.13957},
         "cdc_hits": [{"origin": [...], "direction": [...], "ring": 5, "straw": 12,
                       "stereo": 0.0, "dist": 0.31, "tdrift": 180.0, "id": 17}, ...],
         "fdc_hits": [{"origin": [...], "direction": [...], "layer": 2, "wire": 40,
                       "angle": 1.047, "dist": 0.12, "time": 60.0, "s": 3.2, "id": 99}, ...]}

    Raises
    ------
    ValueError
        If a required key is missing or a value is malformed.
    """
    try:
        seed = block["seed"]
        kin = KinematicData(seed["position"], seed["momentum"],
                            seed.get("charge", 1.0), seed.get("mass", 0.13957018))
        cdc = [_cdc_hit(h) for h in block.get("cdc_hits", ())]
        fdc = [_fdc_hit(h) for h in block.get("fdc_hits", ())]
    except KeyError as e:
        raise ValueError(f"candidate {block.get('id', default_id)}: missing key {e.args[0]!r}") from e
    except (TypeError, ValueError) as e:
        raise ValueError(f"candidate {block.get('id', default_id)}: {e}") from e
    return TrackCandidate(kin, cdc, fdc, int(block.get("id", default_id)))


def load_event(path: Path) -> List[TrackCandidate]:
    r"""
    Read the track candidates of one JSON event file.

    Parameters
    ----------
    path : pathlib.Path
        File with a top-level ``"candidates"`` list (see :func:`parse_candidate`).

    Returns
    -------
    list of TrackCandidate

    Raises
    ------
    ValueError
        If the file is not valid JSON or does not have the expected layout.
    """
    path = Path(path)
    try:
        doc = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    if not isinstance(doc, dict) or not isinstance(doc.get("candidates"), list):
        raise ValueError(f"{path}: expected an object with a 'candidates' list")
    cands = [parse_candidate(b, i) for i, b in enumerate(doc["candidates"])]
    logger.debug("Loaded %d candidates from %s", len(cands), path.name)
    return cands


def write_results(frame: pd.DataFrame, path: Path) -> None:
    """Write a results frame to CSV, creating parent directories as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=False)
