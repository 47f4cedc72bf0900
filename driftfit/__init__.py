__all__ = [
    "FitterConfig", "SwimConfig", "load_config",
    "Wire", "WireKind", "StrawId", "PlaneWireId",
    "CDCTrackHit", "FDCPseudoHit", "LorentzDeflections", "LorentzDeflectionTable",
    "SwimStep", "TrajectoryOracle", "ReferenceTrajectory",
    "FitMode", "HitInfo", "HitModelBuilder",
    "ChiSq", "ChiSqEvaluator", "TrackState", "StateIndex", "CHISQ_SENTINEL",
    "FitStatus", "LeastSquaresStepper",
    "KinematicData", "TrackCandidate", "FitResult", "LeastSquaresTrackFitter",
    "TrackBuilder",
    "load_event", "write_results",
]

# Configuration
from .config import FitterConfig, SwimConfig, load_config

# Geometry & hits
from .geometry import Wire, WireKind, StrawId, PlaneWireId
from .hits import CDCTrackHit, FDCPseudoHit, LorentzDeflections, LorentzDeflectionTable

# Trajectory
from .trajectory import SwimStep, TrajectoryOracle, ReferenceTrajectory

# Fitting core
from .hit_model import FitMode, HitInfo, HitModelBuilder
from .chisq import ChiSq, ChiSqEvaluator, TrackState, StateIndex, CHISQ_SENTINEL
from .least_squares import FitStatus, LeastSquaresStepper
from .fitter import KinematicData, TrackCandidate, FitResult, LeastSquaresTrackFitter

# Track assembly & I/O
from .track_builder import TrackBuilder
from .data import load_event, write_results
