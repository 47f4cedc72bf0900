from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence

import numpy as np

from driftfit.chisq import CHISQ_SENTINEL, ChiSqEvaluator
from driftfit.config import FitterConfig, SwimConfig
from driftfit.hit_model import FitMode, HitModelBuilder
from driftfit.hits import CDCTrackHit, FDCPseudoHit, LorentzDeflections, LorentzDeflectionTable
from driftfit.least_squares import FitStatus, LeastSquaresStepper
from driftfit.trajectory import ReferenceTrajectory, TrajectoryOracle

logger = logging.getLogger(__name__)

__all__ = ["KinematicData", "TrackCandidate", "FitResult", "LeastSquaresTrackFitter"]


@dataclass(slots=True)
class KinematicData:
    r"""
    Position, momentum, charge and mass of a track at one point.

    Attributes
    ----------
    position : ndarray, shape (3,)
        cm.
    momentum : ndarray, shape (3,)
        GeV/c.
    charge : float
        Units of :math:`e`.
    mass : float
        GeV.
    """
    position: np.ndarray
    momentum: np.ndarray
    charge: float = 1.0
    mass: float = 0.13957018

    def __post_init__(self) -> None:
        self.position = np.array(self.position, dtype=np.float64).reshape(3)
        self.momentum = np.array(self.momentum, dtype=np.float64).reshape(3)
        self.charge = float(self.charge)
        self.mass = float(self.mass)

    @property
    def p(self) -> float:
        return float(np.linalg.norm(self.momentum))

    @property
    def pt(self) -> float:
        return float(math.hypot(self.momentum[0], self.momentum[1]))

    @property
    def theta(self) -> float:
        return float(math.atan2(self.pt, self.momentum[2]))

    @property
    def phi(self) -> float:
        phi = math.atan2(self.momentum[1], self.momentum[0])
        return phi + 2.0 * math.pi if phi < 0.0 else phi


@dataclass(slots=True)
class TrackCandidate:
    """Seed kinematics plus the chamber hits pattern recognition assigned to it."""
    seed: KinematicData
    cdchits: List[CDCTrackHit] = field(default_factory=list)
    fdchits: List[FDCPseudoHit] = field(default_factory=list)
    candidate_id: int = -1


@dataclass(slots=True)
class FitResult:
    r"""
    Outcome of one track fit.

    Attributes
    ----------
    status : FitStatus
        ``SUCCESS`` or ``FAILED``.
    fit_mode : FitMode
    kinematics : KinematicData or None
        Vertex (first swim step) of the fitted trajectory; ``None`` on failure.
    chisq : float
        Total :math:`\chi^2` recomputed on the final trajectory.
    ndof : int
        Contributing measurements minus 5.
    covariance : ndarray, shape (5, 5), or None
        Parameter covariance of the last step that solved the normal equations.
    cdchits, fdchits : list
        Hits used in the fit.
    n_iterations : int
        Outer iterations that produced a usable step.
    last_step_status : FitStatus
        Status of the last least-squares step.
    """
    status: FitStatus
    fit_mode: FitMode
    kinematics: Optional[KinematicData] = None
    chisq: float = CHISQ_SENTINEL
    ndof: int = 0
    covariance: Optional[np.ndarray] = None
    cdchits: List[CDCTrackHit] = field(default_factory=list)
    fdchits: List[FDCPseudoHit] = field(default_factory=list)
    n_iterations: int = 0
    last_step_status: FitStatus = FitStatus.NOT_DONE

    @property
    def succeeded(self) -> bool:
        return self.status is FitStatus.SUCCESS

    @property
    def chisq_per_dof(self) -> float:
        return self.chisq / self.ndof if self.ndof > 0 else math.inf


TrajectoryFactory = Callable[[float, float], TrajectoryOracle]


class LeastSquaresTrackFitter:
    r"""
    Iterate least-squares steps until the track :math:`\chi^2` settles.

    Each outer iteration rebuilds the hit records against the current
    trajectory (the drift-time corrections depend on it) and takes one
    :class:`~driftfit.least_squares.LeastSquaresStepper` step:

    * ``FAILED`` before ``salvage_min_iteration``: the fit fails;
    * ``FAILED`` on or after it: the last good trajectory is kept;
    * total :math:`\chi^2` above ``chisq_divergence_limit``: the fit fails;
    * :math:`|\Delta\chi^2|` below ``max_chisq_diff``: converged.

    The fit is accepted if at least one iteration produced a step, or the
    :math:`\chi^2` is at most ``chisq_good_limit``, or ``max_fit_iterations`` is
    zero. The vertex is taken from the first step of the final trajectory.

    Parameters
    ----------
    config : FitterConfig, optional
    swim_config : SwimConfig, optional
        Used by the default trajectory factory.
    lorentz : LorentzDeflections, optional
        Defaults to no Lorentz correction.
    trajectory_factory : callable, optional
        ``(charge, mass) -> TrajectoryOracle``; defaults to
        :class:`~driftfit.trajectory.ReferenceTrajectory`.

    Notes
    -----
    Every call owns its reference and scratch trajectories and its stepper,
    so one fitter may serve concurrent callers.
    """
    __slots__ = ("config", "swim_config", "lorentz", "trajectory_factory", "builder", "evaluator")

    def __init__(self,
                 config: FitterConfig | None = None,
                 swim_config: SwimConfig | None = None,
                 lorentz: LorentzDeflections | None = None,
                 trajectory_factory: TrajectoryFactory | None = None) -> None:
        self.config = config or FitterConfig()
        self.swim_config = swim_config or SwimConfig()
        self.lorentz = lorentz if lorentz is not None else LorentzDeflectionTable.constant(0.0)
        self.trajectory_factory = trajectory_factory or self._default_trajectory
        self.builder = HitModelBuilder(self.config, self.lorentz)
        self.evaluator = ChiSqEvaluator(self.config)

    def _default_trajectory(self, charge: float, mass: float) -> TrajectoryOracle:
        return ReferenceTrajectory(self.swim_config, charge, mass)

    def fit(self, candidate: TrackCandidate, fit_mode: FitMode, mass: float | None = None) -> FitResult:
        """Fit ``candidate`` under a mass hypothesis (the seed's mass when ``None``)."""
        seed = candidate.seed if mass is None else replace(candidate.seed, mass=float(mass))
        return self.fit_track(seed, candidate.cdchits, candidate.fdchits, fit_mode)

    def fit_track(self,
                  seed: KinematicData,
                  cdchits: Sequence[CDCTrackHit],
                  fdchits: Sequence[FDCPseudoHit],
                  fit_mode: FitMode) -> FitResult:
        cfg = self.config
        logger.debug("Fitting %s: %d CDC hits, %d FDC hits, p=%.4f",
                     fit_mode.value, len(cdchits), len(fdchits), seed.p)

        rt = self.trajectory_factory(seed.charge, seed.mass)
        rt.swim(seed.position, seed.momentum, seed.charge)
        if rt.n_steps < 1:
            logger.debug("Seed swim produced no steps")
            return FitResult(FitStatus.FAILED, fit_mode)
        scratch = rt.make_scratch()
        stepper = LeastSquaresStepper(cfg, self.evaluator)

        chisq = CHISQ_SENTINEL
        last_chisq = CHISQ_SENTINEL
        covariance = None
        n_iterations = 0
        step_status = FitStatus.NOT_DONE
        for iteration in range(cfg.max_fit_iterations):
            hinfo = self.builder.build(fit_mode, rt, cdchits, fdchits)
            step_status = stepper.fit_step(hinfo, rt, scratch)

            if step_status is FitStatus.FAILED:
                if iteration < cfg.salvage_min_iteration:
                    logger.debug("Fit failed on iteration %d", iteration)
                    return FitResult(FitStatus.FAILED, fit_mode, n_iterations=n_iterations,
                                     last_step_status=step_status)
                logger.debug("Step failed on iteration %d; keeping previous iteration", iteration)
                break

            n_iterations += 1
            chisq = stepper.chisq
            covariance = stepper.covariance
            logger.debug("iteration %d: %s chisq=%.5g ndof=%d",
                         iteration, step_status.value, chisq, stepper.ndof)

            if chisq > cfg.chisq_divergence_limit:
                logger.debug("Fit chisq %.4g too large on iteration %d", chisq, iteration)
                return FitResult(FitStatus.FAILED, fit_mode, n_iterations=n_iterations,
                                 last_step_status=step_status)

            if abs(last_chisq - chisq) < cfg.max_chisq_diff:
                break
            last_chisq = chisq

        if not (n_iterations > 0 or chisq <= cfg.chisq_good_limit or cfg.max_fit_iterations == 0):
            return FitResult(FitStatus.FAILED, fit_mode, n_iterations=n_iterations,
                             last_step_status=step_status)
        if rt.n_steps < 1:
            logger.debug("Final trajectory has no steps")
            return FitResult(FitStatus.FAILED, fit_mode, n_iterations=n_iterations,
                             last_step_status=step_status)

        final = self.evaluator.evaluate(rt, self.builder.build(fit_mode, rt, cdchits, fdchits))
        vertex = rt.first_step()
        kin = KinematicData(vertex.origin, vertex.mom, rt.charge, seed.mass)
        logger.debug("Fit succeeded after %d iterations: q=%+.0f p=%.4f theta=%.2f deg phi=%.2f deg chisq=%.4g ndof=%d",
                     n_iterations, kin.charge, kin.p, math.degrees(kin.theta), math.degrees(kin.phi),
                     final.chisq, final.ndof)
        return FitResult(
            status=FitStatus.SUCCESS,
            fit_mode=fit_mode,
            kinematics=kin,
            chisq=final.chisq,
            ndof=final.ndof,
            covariance=covariance,
            cdchits=list(cdchits),
            fdchits=list(fdchits),
            n_iterations=n_iterations,
            last_step_status=step_status,
        )
