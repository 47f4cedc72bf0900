from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
from scipy import linalg

from driftfit.chisq import (
    CHISQ_SENTINEL,
    N_PARAMETERS,
    ChiSq,
    ChiSqEvaluator,
    StateIndex,
    TrackState,
)
from driftfit.config import FitterConfig
from driftfit.hit_model import HitInfo, measurement_errors
from driftfit.trajectory import TrajectoryOracle

logger = logging.getLogger(__name__)

__all__ = ["FitStatus", "LeastSquaresStepper"]


class FitStatus(Enum):
    """Outcome of a least-squares step or of a whole fit."""
    NOT_DONE = "not_done"
    SUCCESS = "success"
    NO_IMPROVEMENT = "no_improvement"
    FAILED = "failed"


class LeastSquaresStepper:
    r"""
    One linearised least-squares step on the 5 track parameters, with a damped
    line search.

    Let :math:`r_i(\mathbf{a})` be the residuals (in sigma) for parameters
    :math:`\mathbf{a}` and :math:`\sigma_i` their errors. The Jacobian is built
    by forward differences,

    .. math::

        F_{ij} = \sigma_i\,\frac{r_i(\mathbf{a}+\delta_j\hat{e}_j) - r_i(\mathbf{a})}{\delta_j},

    restricted to the *good* slots: finite and within
    :math:`R_\mathrm{max}\cdot\max(1,\chi^2_0/n_\mathrm{dof})` sigma in the
    baseline and in all five perturbed evaluations. With
    :math:`V=\mathrm{diag}(\sigma_i^2)` and :math:`m_i=-r_i\sigma_i`,

    .. math::

        B = (F^\top V^{-1} F)^{-1},\qquad
        \Delta\mathbf{a} = B\,F^\top V^{-1}\mathbf{m}.

    :math:`B` is the parameter covariance. The step is scaled by
    :math:`\lambda\in\{1,\tfrac12,\dots\}` and, if no trial is good enough,
    by :math:`\lambda\in\{-1,-\tfrac12,\dots\}`; the :math:`\lambda` with the
    lowest :math:`\chi^2/n_\mathrm{dof}` wins. A trial ends the search early
    when it is within ``line_search_accept_delta`` of the baseline and below
    ``line_search_accept_chisq``.

    After :meth:`fit_step`, :attr:`chisq`, :attr:`ndof` and
    :attr:`chisq_per_dof` describe the trajectory as it was left (baseline on
    ``NO_IMPROVEMENT``, the sentinel on ``FAILED``) and :attr:`covariance`
    holds :math:`B` of the last step that solved the normal equations.

    Parameters
    ----------
    config : FitterConfig
    evaluator : ChiSqEvaluator

    Notes
    -----
    The stepper carries per-fit results and must not be shared between
    concurrent fits.
    """
    __slots__ = ("config", "evaluator", "chisq", "ndof", "chisq_per_dof", "covariance")

    def __init__(self, config: FitterConfig, evaluator: ChiSqEvaluator) -> None:
        self.config = config
        self.evaluator = evaluator
        self.chisq = CHISQ_SENTINEL
        self.ndof = 0
        self.chisq_per_dof = CHISQ_SENTINEL
        self.covariance: Optional[np.ndarray] = None

    def _store(self, res: ChiSq) -> None:
        self.chisq = res.chisq
        self.ndof = res.ndof
        self.chisq_per_dof = res.chisq_per_dof

    def _fail(self, reason: str, *args) -> FitStatus:
        logger.debug("Least-squares step failed: " + reason, *args)
        return FitStatus.FAILED

    def fit_step(self,
                 hinfo: Sequence[HitInfo],
                 rt: TrajectoryOracle,
                 scratch: Optional[TrajectoryOracle] = None) -> FitStatus:
        r"""
        Improve the track parameters of ``rt`` against ``hinfo``.

        Parameters
        ----------
        hinfo : sequence of HitInfo
            Records built against the current ``rt``.
        rt : TrajectoryOracle
            Trajectory whose first step holds the current parameters. Re-swum
            only on ``SUCCESS``.
        scratch : TrajectoryOracle, optional
            Trajectory used for every finite-difference and line-search swim.
            Created with ``rt.make_scratch()`` when not given.

        Returns
        -------
        FitStatus
            ``SUCCESS``, ``NO_IMPROVEMENT`` or ``FAILED``.
        """
        cfg = self.config
        self.chisq = CHISQ_SENTINEL
        self.ndof = 0
        self.chisq_per_dof = CHISQ_SENTINEL

        if rt.n_steps < 1:
            return self._fail("empty reference trajectory")
        if scratch is None:
            scratch = rt.make_scratch()
        scratch.charge = rt.charge

        start_step = rt.first_step()
        state = TrackState.from_step(start_step)
        errs = measurement_errors(hinfo)

        base = self.evaluator.evaluate(rt, hinfo)

        # Forward differences; the step actually taken is perturbed - base
        steps = (
            (StateIndex.PX, cfg.least_squares_dp),
            (StateIndex.PY, cfg.least_squares_dp),
            (StateIndex.PZ, cfg.least_squares_dp),
            (StateIndex.X, cfg.least_squares_dx),
            (StateIndex.V, cfg.least_squares_dx),
        )
        deltas = np.empty(N_PARAMETERS)
        hi_resid: List[np.ndarray] = []
        for idx, step in steps:
            tweaked = state.perturbed(idx, step)
            deltas[idx] = tweaked.values[idx] - state.values[idx]
            res = self.evaluator.evaluate_state(tweaked, start_step, scratch, hinfo)
            hi_resid.append(res.residuals)
            logger.debug("d%s: chisq/dof=%.5g", idx.name.lower(), res.chisq_per_dof)
        logger.debug("baseline chisq/dof=%.5g over %d slots", base.chisq_per_dof, base.residuals.size)

        n_slots = base.residuals.size
        if n_slots != errs.size or any(r.size != n_slots for r in hi_resid):
            logger.error("Residual/error length mismatch (%d residuals, %d errors)", n_slots, errs.size)
            return FitStatus.FAILED

        # Slot cut, loosened while the track is still poor
        max_sigmas = cfg.chisq_max_resi_sigmas * max(1.0, base.chisq_per_dof)
        samples = np.vstack([base.residuals] + hi_resid)
        with np.errstate(invalid="ignore"):
            good = np.all(np.isfinite(samples) & (np.abs(samples) <= max_sigmas), axis=0)
        n_good = int(np.count_nonzero(good))
        if n_good < cfg.least_squares_min_hits:
            return self._fail("%d good slots, need %d", n_good, cfg.least_squares_min_hits)

        # Column j follows hi_resid order, which is StateIndex order
        e = errs[good]
        F = np.empty((n_good, N_PARAMETERS))
        for j in range(N_PARAMETERS):
            F[:, j] = e * (hi_resid[j][good] - base.residuals[good]) / deltas[j]

        f_norm = float(np.linalg.norm(F))
        if not np.isfinite(f_norm) or f_norm > cfg.jacobian_max_norm:
            return self._fail("Jacobian norm %.3g out of range", f_norm)

        v_inv = 1.0 / (e * e)
        FtVinv = F.T * v_inv
        try:
            B = linalg.inv(FtVinv @ F)
        except (linalg.LinAlgError, ValueError) as exc:
            return self._fail("normal matrix not invertible (%s)", exc)
        b_norm = float(np.linalg.norm(B))
        if not np.isfinite(b_norm) or b_norm > cfg.least_squares_max_norm:
            return self._fail("covariance norm %.3g out of range", b_norm)
        self.covariance = B

        m = -base.residuals[good] * e
        delta = B @ (FtVinv @ m)

        min_chisq_per_dof = base.chisq_per_dof
        min_lambda = 0.0
        accepted = False
        for sign in (1.0, -1.0):
            lam = sign
            for _ in range(cfg.line_search_max_tries):
                trial = self.evaluator.evaluate_state(state.stepped(delta, lam), start_step, scratch, hinfo)
                if trial.chisq_per_dof < min_chisq_per_dof:
                    min_chisq_per_dof = trial.chisq_per_dof
                    min_lambda = lam
                logger.debug("line search: lambda=%g chisq/dof=%.5g (baseline %.5g)",
                             lam, trial.chisq_per_dof, base.chisq_per_dof)
                if (trial.chisq_per_dof - base.chisq_per_dof < cfg.line_search_accept_delta
                        and trial.chisq_per_dof < cfg.line_search_accept_chisq):
                    accepted = True
                    break
                lam /= 2.0
            if accepted:
                break

        if min_lambda == 0.0:
            logger.debug("No improvement in either direction (chisq/dof=%.5g)", base.chisq_per_dof)
            self._store(base)
            return FitStatus.NO_IMPROVEMENT

        final = self.evaluator.evaluate_state(state.stepped(delta, min_lambda), start_step, rt, hinfo)
        self._store(final)
        logger.debug("Step accepted: lambda=%g chisq/dof %.5g -> %.5g",
                     min_lambda, base.chisq_per_dof, final.chisq_per_dof)
        return FitStatus.SUCCESS
