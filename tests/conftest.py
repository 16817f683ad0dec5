"""Shared test fixtures for potentiostat tests."""

import os
import sys

# Add project root to path so tests can import protocol, server, etc.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from experiment_session import ExperimentSession
from telemetry import Reassembler
from tests.helpers import make_cv


@pytest.fixture
def sess():
    """Fresh ExperimentSession instance."""
    return ExperimentSession()


@pytest.fixture
def ready_sess(sess):
    """Connected session with valid CV parameters (configuring)."""
    sess.set_connected(True)
    sess.set_params(make_cv())
    return sess


@pytest.fixture
def reassembler():
    return Reassembler()
