import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from driftfit.config import FitterConfig, SwimConfig  # noqa: E402

import synthetic  # noqa: E402


@pytest.fixture
def fitter_config():
    return FitterConfig()


@pytest.fixture
def swim_config():
    return SwimConfig()


@pytest.fixture
def straight_config():
    return SwimConfig(bz=0.0)


@pytest.fixture
def barrel_truth(swim_config):
    return synthetic.swim_truth(synthetic.BARREL_MOM, config=swim_config)


@pytest.fixture
def forward_truth(swim_config):
    return synthetic.swim_truth(synthetic.FORWARD_MOM, config=swim_config)


@pytest.fixture
def linear_problem():
    return synthetic.LinearProblem.make(n_wires=8, seed=3)


@pytest.fixture
def rng():
    return np.random.default_rng(12345)
