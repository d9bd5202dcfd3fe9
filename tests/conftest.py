"""
Pytest configuration and shared fixtures for NR CSI feedback tests.

Provides:
- Test fixtures for report and carrier configurations
- Channel estimate generators (flat, beam-aligned, frequency selective)
- CSI-RS resource element grids
- Fake selectors for rank selection tests
"""

import pytest
import numpy as np
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from nr_csi.config import (
    CarrierConfig,
    CSIReportConfig,
    ReportingMode,
    TypeISinglePanelConfig,
    TypeIMultiPanelConfig,
    TypeIIConfig,
    EnhancedTypeIIConfig,
)
from nr_csi.beam_codebook import vlm, phi
from nr_csi.pmi_selector import PMISet, PMIInfo
from nr_csi.cqi_selector import CQIInfo


# Small carrier used throughout: 24 RBs, 14 symbols
N_RB = 24
NUM_SYMBOLS = 14
NUM_SUBCARRIERS = 12 * N_RB


# ==============================================================================
# Configuration Fixtures
# ==============================================================================

@pytest.fixture
def carrier() -> CarrierConfig:
    """24 RB carrier."""
    return CarrierConfig(n_size_grid=N_RB)


@pytest.fixture
def wideband_config() -> CSIReportConfig:
    """Type I single-panel, wideband PMI and CQI over the whole carrier."""
    return CSIReportConfig(n_size_bwp=N_RB)


@pytest.fixture
def subband_config() -> CSIReportConfig:
    """Type I single-panel, subband PMI and CQI with 8 RB subbands."""
    return CSIReportConfig(
        n_size_bwp=N_RB,
        pmi_mode=ReportingMode.SUBBAND,
        cqi_mode=ReportingMode.SUBBAND,
        subband_size=8,
    )


@pytest.fixture
def multi_panel_config() -> CSIReportConfig:
    """Type I multi-panel, 2 panels of (2, 1), 8 ports."""
    return CSIReportConfig(
        n_size_bwp=N_RB,
        codebook=TypeIMultiPanelConfig(panel_dimensions=(2, 2, 1)),
    )


@pytest.fixture
def type2_config() -> CSIReportConfig:
    """Type II, (2, 1) panel, L = 2."""
    return CSIReportConfig(
        n_size_bwp=N_RB,
        codebook=TypeIIConfig(panel_dimensions=(2, 1), number_of_beams=2),
    )


@pytest.fixture
def etype2_config() -> CSIReportConfig:
    """Enhanced Type II, (2, 1) panel, parameter combination 1."""
    return CSIReportConfig(
        n_size_bwp=N_RB,
        codebook=EnhancedTypeIIConfig(panel_dimensions=(2, 1), parameter_combination=1),
    )


# ==============================================================================
# Channel Generators
# ==============================================================================

class ChannelGenerator:
    """Generate channel estimates of shape (K, L, nRx, P) for testing."""

    @staticmethod
    def flat(
        num_rx: int,
        num_ports: int,
        matrix: Optional[np.ndarray] = None,
        seed: int = 0,
        num_subcarriers: int = NUM_SUBCARRIERS,
        num_symbols: int = NUM_SYMBOLS,
    ) -> np.ndarray:
        """
        Generate a frequency-flat, time-invariant channel.

        Args:
            num_rx: Receive antennas
            num_ports: CSI-RS ports
            matrix: nRx x P channel matrix, random Rayleigh when None
            seed: Random seed used when matrix is None
            num_subcarriers: K
            num_symbols: L

        Returns:
            Channel estimate
        """
        if matrix is None:
            rng = np.random.default_rng(seed)
            matrix = (
                rng.standard_normal((num_rx, num_ports))
                + 1j * rng.standard_normal((num_rx, num_ports))
            ) / np.sqrt(2)
        matrix = np.asarray(matrix, dtype=complex).reshape(num_rx, num_ports)
        return np.broadcast_to(
            matrix, (num_subcarriers, num_symbols, num_rx, num_ports)
        ).copy()

    @staticmethod
    def beam_aligned(
        n1: int,
        n2: int,
        o1: int,
        o2: int,
        l: int,
        m: int,
        n: int,
        num_subcarriers: int = NUM_SUBCARRIERS,
        num_symbols: int = NUM_SYMBOLS,
    ) -> np.ndarray:
        """
        Generate a single-receive-antenna channel matched to one rank-1
        Type I precoder [v_lm; phi(n) v_lm].

        Returns:
            Channel estimate with nRx = 1 and P = 2*N1*N2
        """
        v = vlm(n1, n2, o1, o2, l, m)
        w = np.concatenate([v, phi(n) * v]) / np.sqrt(2 * n1 * n2)
        row = np.conj(w)[None, :]
        return ChannelGenerator.flat(
            1, row.shape[1], matrix=row,
            num_subcarriers=num_subcarriers, num_symbols=num_symbols,
        )

    @staticmethod
    def frequency_selective(
        num_rx: int,
        num_ports: int,
        num_taps: int = 4,
        delay_spread: int = 6,
        seed: int = 0,
        num_subcarriers: int = NUM_SUBCARRIERS,
        num_symbols: int = NUM_SYMBOLS,
    ) -> np.ndarray:
        """
        Generate a tapped-delay-line Rayleigh channel, constant over time.

        Args:
            num_rx: Receive antennas
            num_ports: CSI-RS ports
            num_taps: Number of delay taps
            delay_spread: Largest tap delay in samples of a 4096-point FFT
            seed: Random seed

        Returns:
            Channel estimate
        """
        rng = np.random.default_rng(seed)
        delays = np.sort(rng.integers(0, delay_spread + 1, num_taps))
        powers = np.exp(-np.arange(num_taps) / 2.0)
        powers /= powers.sum()
        taps = (
            rng.standard_normal((num_taps, num_rx, num_ports))
            + 1j * rng.standard_normal((num_taps, num_rx, num_ports))
        ) * np.sqrt(powers / 2)[:, None, None]

        k = np.arange(num_subcarriers)
        phases = np.exp(-2j * np.pi * np.outer(k, delays) / 4096)
        H_freq = np.einsum("kt,trp->krp", phases, taps)
        return np.repeat(H_freq[:, None], num_symbols, axis=1)


@pytest.fixture
def channel_generator() -> ChannelGenerator:
    """Provide channel generator."""
    return ChannelGenerator()


# ==============================================================================
# CSI-RS Grids
# ==============================================================================

def csirs_grid(
    n_rb: int = N_RB,
    subcarriers: Tuple[int, ...] = (0,),
    symbols: Tuple[int, ...] = (5,),
) -> Tuple[np.ndarray, np.ndarray]:
    """
    CSI-RS REs of the first port: the given subcarriers of every RB at
    the given symbols.

    Returns:
        (csirs_k, csirs_l) as 0-based carrier indices
    """
    k = []
    l = []
    for symbol in symbols:
        for rb in range(n_rb):
            for sc in subcarriers:
                k.append(12 * rb + sc)
                l.append(symbol)
    return np.array(k), np.array(l)


@pytest.fixture
def csirs() -> Tuple[np.ndarray, np.ndarray]:
    """One CSI-RS RE per RB at symbol 5."""
    return csirs_grid()


@pytest.fixture
def dense_csirs() -> Tuple[np.ndarray, np.ndarray]:
    """Three CSI-RS REs per RB at symbols 5 and 9."""
    return csirs_grid(subcarriers=(0, 4, 8), symbols=(5, 9))


@pytest.fixture
def empty_csirs() -> Tuple[np.ndarray, np.ndarray]:
    """No CSI-RS REs."""
    return np.zeros(0, dtype=int), np.zeros(0, dtype=int)


@pytest.fixture
def csirs_factory():
    """Provide the CSI-RS grid builder."""
    return csirs_grid


# ==============================================================================
# Fake Selectors
# ==============================================================================

class FakePMISelector:
    """
    PMI selector returning fixed per-layer SINRs for each rank.

    sinr_by_rank maps a rank to its per-layer linear SINR; a rank mapped
    to None reports no PMI.
    """

    def __init__(self, sinr_by_rank: Dict[int, Optional[List[float]]]):
        self.sinr_by_rank = sinr_by_rank
        self.calls: List[int] = []

    def nan_result(self, num_ports: int, num_layers: int):
        return PMISet(i1=np.full(3, np.nan), i2=np.full(1, np.nan)), None

    def select(self, H, csirs_k, csirs_l, num_layers, noise_variance=1e-10):
        self.calls.append(num_layers)
        num_re = len(csirs_k)
        layers = self.sinr_by_rank.get(num_layers)
        if layers is None:
            pmi = PMISet(i1=np.full(3, np.nan), i2=np.full(1, np.nan))
            sinr = np.full((1, num_layers), np.nan)
        else:
            pmi = PMISet(i1=np.array([1.0, 1.0, float(num_layers)]), i2=np.ones(1))
            sinr = np.asarray(layers, dtype=float)[None]
        info = PMIInfo(
            W=np.zeros((H.shape[3], num_layers), dtype=complex),
            sinr_per_re_pmi=np.repeat(sinr, num_re, axis=0),
            sinr_per_subband=sinr,
            csirs_k=np.asarray(csirs_k),
            csirs_l=np.asarray(csirs_l),
        )
        return pmi, info


class FakeCQISelector:
    """CQI selector returning a fixed wideband CQI (and zero BLER) per rank."""

    def __init__(self, cqi_by_rank: Dict[int, List[float]]):
        self.cqi_by_rank = cqi_by_rank

    def select(self, H, csirs_k, csirs_l, num_layers, noise_variance=1e-10):
        cqi = np.asarray(self.cqi_by_rank[num_layers], dtype=float)[None]
        info = CQIInfo(
            subband_cqi=cqi,
            transport_bler=np.zeros(cqi.shape),
            sinr_per_subband_per_cw=np.ones(cqi.shape),
            sinr_per_rb_per_cw=np.zeros((N_RB, NUM_SYMBOLS, cqi.shape[1])),
        )
        pmi = PMISet(i1=np.array([1.0, 1.0, float(num_layers)]), i2=np.ones(1))
        return cqi, pmi, info, None


@pytest.fixture
def fake_pmi_selector():
    """Provide the fake PMI selector class."""
    return FakePMISelector


@pytest.fixture
def fake_cqi_selector():
    """Provide the fake CQI selector class."""
    return FakeCQISelector


# ==============================================================================
# Flask Test Client Fixtures
# ==============================================================================

@pytest.fixture
def flask_app():
    """Create Flask test application on the small carrier."""
    from nr_csi.server import create_app

    app = create_app({
        "carrier": {"n_size_grid": N_RB},
        "report": {"n_size_bwp": N_RB},
        "max_workers": 1,
    })
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


# ==============================================================================
# Performance Test Helpers
# ==============================================================================

@dataclass
class PerformanceResult:
    """Performance test result."""
    name: str
    iterations: int
    total_time_ms: float
    avg_time_ms: float
    min_time_ms: float
    max_time_ms: float
    std_time_ms: float


class PerformanceTimer:
    """Helper for performance measurements."""

    def __init__(self):
        self.times = []

    def record(self, time_ms: float):
        """Record a measurement."""
        self.times.append(time_ms)

    def result(self, name: str) -> PerformanceResult:
        """Get performance result."""
        times = np.array(self.times)
        return PerformanceResult(
            name=name,
            iterations=len(times),
            total_time_ms=float(np.sum(times)),
            avg_time_ms=float(np.mean(times)),
            min_time_ms=float(np.min(times)),
            max_time_ms=float(np.max(times)),
            std_time_ms=float(np.std(times)),
        )


@pytest.fixture
def performance_timer() -> PerformanceTimer:
    """Provide performance timer."""
    return PerformanceTimer()


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "performance: marks tests as performance benchmarks"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection based on markers."""
    if config.getoption("-m"):
        # If marker specified, use default behavior
        return

    # Add skip marker to slow tests by default
    skip_slow = pytest.mark.skip(reason="slow test - use -m slow to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)
