from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, MutableMapping

import orjson

logger = logging.getLogger(__name__)

__all__ = ["FitterConfig", "SwimConfig", "load_config"]


def _from_mapping(cls, values: Mapping[str, Any] | None):
    r"""
    Build a frozen config dataclass from a plain mapping, rejecting unknown keys.

    Values are coerced to the type of the field's default (``bool``, ``int``,
    ``float`` or ``tuple``) so JSON numbers such as ``50.0`` land as ``int``
    where an integer is expected.
    """
    values = dict(values or {})
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(values) - set(known))
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    kwargs: dict[str, Any] = {}
    for name, raw in values.items():
        default = known[name].default
        try:
            if isinstance(default, bool):
                kwargs[name] = bool(raw)
            elif isinstance(default, int):
                kwargs[name] = int(raw)
            elif isinstance(default, float):
                kwargs[name] = float(raw)
            elif isinstance(default, tuple):
                kwargs[name] = tuple(float(v) for v in raw)
            else:
                kwargs[name] = raw
        except (TypeError, ValueError) as e:
            raise ValueError(f"Bad value for {cls.__name__}.{name}: {raw!r}") from e
    return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class FitterConfig:
    r"""
    Immutable tunables for the least-squares track fitter.

    One instance is built per fitter and handed by reference to the hit model
    builder, the :math:`\chi^2` evaluator and the least-squares stepper. Units
    are cm, ns and GeV.

    Attributes
    ----------
    max_fit_iterations : int
        Cap on outer fit iterations. ``0`` is a debug passthrough that accepts
        the seed as the fit.
    max_chisq_diff : float
        Convergence threshold on the change of total :math:`\chi^2` between
        consecutive iterations.
    chisq_max_resi_sigmas : float
        Per-hit rejection threshold in units of sigma. Scaled up by the
        baseline :math:`\chi^2/\mathrm{dof}` when that exceeds one.
    chisq_good_limit : float
        :math:`\chi^2` at or below which a fit is accepted even if no
        iteration completed.
    chisq_divergence_limit : float
        Total :math:`\chi^2` above which a fit is abandoned as divergent.
    salvage_min_iteration : int
        A numerical failure on this iteration or later keeps the previous
        iteration instead of failing the fit. This is a heuristic, not a law.
    least_squares_dp, least_squares_dx : float
        Finite-difference steps for the momentum (GeV/c) and position (cm)
        parameters.
    least_squares_min_hits : int
        Minimum number of clean residual slots to attempt a step.
    least_squares_max_norm : float
        Ceiling on the Frobenius norm of the parameter covariance
        :math:`B=(F^\top V^{-1}F)^{-1}`.
    jacobian_max_norm : float
        Ceiling on the Frobenius norm of the Jacobian :math:`F`.
    line_search_max_tries : int
        Halvings of the step scale per search direction.
    line_search_accept_delta, line_search_accept_chisq : float
        A trial stops the search when its :math:`\chi^2/\mathrm{dof}` is within
        ``accept_delta`` of the baseline and below ``accept_chisq``.
    max_state_position, max_state_offset : float
        Bounds on the reconstructed start position magnitude and on the
        ``x``/``v`` offsets beyond which a state is not swum at all.
    sigma_cdc, sigma_fdc_anode, sigma_fdc_cathode : float
        Time-based measurement resolutions.
    cdc_cell_size, fdc_cell_size : float
        Cell widths used for the wire-based (uniform illumination) errors
        :math:`w/\sqrt{12}`.
    tof_mass : float
        Mass hypothesis used for the time-of-flight correction of drift times.
    target_constraint : bool
        Add a beam-line pseudo-measurement at the head of the hit list.
    target_z, target_length, target_sigma : float
        Target centre, length and the beam-width proxy used as its error.
    use_cdc, use_fdc_anode, use_fdc_cathode : bool
        Detector switches. Cathode measurements need the anode to be on.
    """
    max_fit_iterations: int = 50
    max_chisq_diff: float = 1.0e-2
    chisq_max_resi_sigmas: float = 100.0
    chisq_good_limit: float = 2.0
    chisq_divergence_limit: float = 1.0e4
    salvage_min_iteration: int = 5

    least_squares_dp: float = 1.0e-4
    least_squares_dx: float = 0.010
    least_squares_min_hits: int = 3
    least_squares_max_norm: float = 1.0e8
    jacobian_max_norm: float = 1.0e18
    line_search_max_tries: int = 8
    line_search_accept_delta: float = 0.1
    line_search_accept_chisq: float = 2.0

    max_state_position: float = 200.0
    max_state_offset: float = 100.0

    sigma_cdc: float = 0.0150
    sigma_fdc_anode: float = 0.0200
    sigma_fdc_cathode: float = 0.0200
    cdc_cell_size: float = 0.8
    fdc_cell_size: float = 0.5
    tof_mass: float = 0.13957018

    target_constraint: bool = False
    target_z: float = 65.0
    target_length: float = 30.0
    target_sigma: float = 0.1

    use_cdc: bool = True
    use_fdc_anode: bool = True
    use_fdc_cathode: bool = True

    def __post_init__(self) -> None:
        if self.max_fit_iterations < 0:
            raise ValueError("max_fit_iterations must be >= 0")
        if self.least_squares_min_hits < 1:
            raise ValueError("least_squares_min_hits must be >= 1")
        if self.line_search_max_tries < 1:
            raise ValueError("line_search_max_tries must be >= 1")
        for name in ("least_squares_dp", "least_squares_dx", "sigma_cdc",
                     "sigma_fdc_anode", "sigma_fdc_cathode", "cdc_cell_size",
                     "fdc_cell_size", "target_sigma"):
            if not getattr(self, name) > 0.0:
                raise ValueError(f"{name} must be > 0")
        if self.tof_mass < 0.0:
            raise ValueError("tof_mass must be >= 0")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None) -> "FitterConfig":
        """Build from a mapping such as the ``"fitter"`` block of a JSON config."""
        return _from_mapping(cls, values)


@dataclass(frozen=True, slots=True)
class SwimConfig:
    r"""
    Stepping parameters of :class:`~driftfit.trajectory.ReferenceTrajectory`.

    Attributes
    ----------
    bz : float
        Uniform solenoidal field along :math:`z` (Tesla). ``0`` gives straight lines.
    step_size : float
        Path length between stored swim steps (cm).
    max_path_length : float
        Upper bound on the swum path length (cm).
    max_radius, z_min, z_max : float
        Tracking volume. Swimming stops at the first step outside it.
    """
    bz: float = 2.0
    step_size: float = 0.5
    max_path_length: float = 600.0
    max_radius: float = 65.0
    z_min: float = -50.0
    z_max: float = 450.0

    def __post_init__(self) -> None:
        if not self.step_size > 0.0:
            raise ValueError("step_size must be > 0")
        if not self.max_path_length >= self.step_size:
            raise ValueError("max_path_length must be >= step_size")
        if not self.z_max > self.z_min:
            raise ValueError("z_max must be > z_min")
        if not self.max_radius > 0.0:
            raise ValueError("max_radius must be > 0")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None) -> "SwimConfig":
        """Build from a mapping such as the ``"swimmer"`` block of a JSON config."""
        return _from_mapping(cls, values)


def load_config(config_path: Path) -> MutableMapping[str, Any]:
    r"""
    Load a JSON configuration file.

    Parameters
    ----------
    config_path : pathlib.Path
        Path to the JSON file. Recognised top-level blocks are ``"fitter"``,
        ``"swimmer"``, ``"lorentz"`` and ``"mass_hypotheses"``.

    Returns
    -------
    dict
        Parsed configuration.

    Raises
    ------
    ValueError
        If the file cannot be parsed or is not a JSON object.
    """
    try:
        cfg = orjson.loads(Path(config_path).read_bytes())
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ValueError(f"{config_path}: top level must be a JSON object")
    logger.debug("Loaded config blocks from %s: %s", config_path, ", ".join(cfg))
    return cfg
