from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from driftfit.fitter import FitResult, LeastSquaresTrackFitter, TrackCandidate
from driftfit.hit_model import FitMode

logger = logging.getLogger(__name__)

__all__ = ["TrackBuilder", "DEFAULT_MASS_HYPOTHESES"]

# pion, proton (GeV)
DEFAULT_MASS_HYPOTHESES = (0.13957, 0.938)

_RESULT_COLUMNS = [
    "candidate_id", "fit_mode", "status", "charge", "mass", "p", "pt", "theta", "phi",
    "x", "y", "z", "px", "py", "pz", "chisq", "ndof", "chisq_per_dof",
    "n_cdc", "n_fdc", "n_iterations",
]


class TrackBuilder:
    r"""
    Turn track candidates into fitted tracks under several mass hypotheses.

    Each candidate is first fitted wire-based from its seed. The wire-based
    result then seeds one time-based fit per mass: the wire-based mass first,
    followed by each entry of ``mass_hypotheses`` that differs from it. Failed
    fits and fits with ``ndof < 1`` are dropped; of the rest, the one with the
    lowest figure of merit

    .. math::

        \mathrm{FOM} = \chi^2 / n_\mathrm{dof}

    is kept.

    Parameters
    ----------
    fitter : LeastSquaresTrackFitter
    mass_hypotheses : sequence of float
        Masses (GeV) tried after the wire-based one.
    """

    def __init__(self,
                 fitter: LeastSquaresTrackFitter,
                 mass_hypotheses: Sequence[float] = DEFAULT_MASS_HYPOTHESES) -> None:
        self.fitter = fitter
        self.mass_hypotheses = tuple(float(m) for m in mass_hypotheses)
        self.reset()

    def reset(self) -> None:
        """Clear the counters behind :meth:`get_track_statistics`."""
        self._n_candidates = 0
        self._n_wire_based_failed = 0
        self._n_time_based_fits = 0
        self._n_time_based_failed = 0
        self._n_low_ndof = 0
        self._n_tracks = 0

    def _masses_for(self, wire_based_mass: float) -> List[float]:
        masses = [wire_based_mass]
        for m in self.mass_hypotheses:
            if not math.isclose(m, wire_based_mass, rel_tol=1e-4):
                masses.append(m)
        return masses

    def fit_candidate(self, candidate: TrackCandidate) -> Optional[FitResult]:
        """Best time-based fit of ``candidate``, or ``None`` if every attempt fails."""
        self._n_candidates += 1
        wb = self.fitter.fit(candidate, FitMode.WIRE_BASED)
        if not wb.succeeded:
            self._n_wire_based_failed += 1
            logger.warning("Candidate %d: wire-based fit failed", candidate.candidate_id)
            return None

        tb_candidate = replace(candidate, seed=wb.kinematics)
        best: Optional[FitResult] = None
        for mass in self._masses_for(wb.kinematics.mass):
            self._n_time_based_fits += 1
            res = self.fitter.fit(tb_candidate, FitMode.TIME_BASED, mass)
            if not res.succeeded:
                self._n_time_based_failed += 1
                continue
            if res.ndof < 1:
                self._n_low_ndof += 1
                continue
            if best is None or res.chisq_per_dof < best.chisq_per_dof:
                best = res

        if best is None:
            logger.warning("Candidate %d: no usable time-based fit", candidate.candidate_id)
            return None
        self._n_tracks += 1
        logger.debug("Candidate %d: mass=%.5f chisq/dof=%.4g",
                     candidate.candidate_id, best.kinematics.mass, best.chisq_per_dof)
        return best

    def build(self, candidates: Iterable[TrackCandidate]) -> List[FitResult]:
        """Fit every candidate and return the tracks that survived, in input order."""
        tracks: List[FitResult] = []
        for cand in candidates:
            res = self.fit_candidate(cand)
            if res is not None:
                tracks.append(res)
        return tracks

    def get_track_statistics(self) -> Dict:
        r"""
        Counters accumulated since construction or the last :meth:`reset`.

        Returns
        -------
        dict
            ``candidates``, ``wire_based_failed``, ``time_based_fits``,
            ``time_based_failed``, ``low_ndof``, ``tracks`` and
            ``efficiency`` (tracks over candidates, ``0`` when empty).
        """
        return {
            "candidates": self._n_candidates,
            "wire_based_failed": self._n_wire_based_failed,
            "time_based_fits": self._n_time_based_fits,
            "time_based_failed": self._n_time_based_failed,
            "low_ndof": self._n_low_ndof,
            "tracks": self._n_tracks,
            "efficiency": self._n_tracks / self._n_candidates if self._n_candidates else 0.0,
        }

    @staticmethod
    def results_frame(tracks: Sequence[FitResult], candidate_ids: Sequence[int] | None = None) -> pd.DataFrame:
        """One row per fitted track; failed results get NaN kinematics."""
        rows = []
        for i, t in enumerate(tracks):
            kin = t.kinematics
            row = {
                "candidate_id": candidate_ids[i] if candidate_ids is not None else i,
                "fit_mode": t.fit_mode.value,
                "status": t.status.value,
                "chisq": t.chisq,
                "ndof": t.ndof,
                "chisq_per_dof": t.chisq_per_dof,
                "n_cdc": len(t.cdchits),
                "n_fdc": len(t.fdchits),
                "n_iterations": t.n_iterations,
            }
            if kin is not None:
                row.update(
                    charge=kin.charge, mass=kin.mass, p=kin.p, pt=kin.pt, theta=kin.theta, phi=kin.phi,
                    x=kin.position[0], y=kin.position[1], z=kin.position[2],
                    px=kin.momentum[0], py=kin.momentum[1], pz=kin.momentum[2],
                )
            rows.append(row)
        return pd.DataFrame(rows, columns=_RESULT_COLUMNS)
