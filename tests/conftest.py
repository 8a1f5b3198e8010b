"""
Shared fixtures: an isolated data directory and a fresh session per test.
"""

import matplotlib
matplotlib.use("Agg")

import pytest

from symcalc import Session


@pytest.fixture(autouse=True)
def data_home(tmp_path, monkeypatch):
    """Point SYMCALC_HOME at an empty temporary directory."""
    home = tmp_path / "symcalc-home"
    home.mkdir()
    monkeypatch.setenv("SYMCALC_HOME", str(home))
    return home


@pytest.fixture
def calc(data_home):
    session = Session()
    yield session
    session.close()
