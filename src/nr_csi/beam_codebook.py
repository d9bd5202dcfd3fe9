"""
Precoding Codebooks for 5G NR CSI Feedback

Implements codebook generation per 3GPP TS 38.214 Section 5.2.2.2:
- Type I single-panel codebooks (1 to 32 ports, 1 to 8 layers, modes 1/2)
- Type I multi-panel codebooks (8 to 32 ports, 1 to 4 layers, modes 1/2)
- Type II / enhanced Type II oversampled DFT beam groups and W1 matrices
- Codebook subset restriction (vlm/vbarlm, i2, Type II amplitude bitmaps)

Type I codebooks are enumerated explicitly; restricted entries are returned
as zero matrices. Type II families are parametric: only the beam basis is
built here, coefficients are computed on demand by the PMI selector.

References:
- 3GPP TS 38.214: Physical layer procedures for data
- 3GPP TS 38.214 Tables 5.2.2.2.1-1 to 5.2.2.2.1-12: Type I single-panel
- 3GPP TS 38.214 Tables 5.2.2.2.2-1 to 5.2.2.2.2-6: Type I multi-panel
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import block_diag
from scipy.special import comb

from .config import (
    CSIConfigurationError,
    CSIReportConfig,
    TypeIMultiPanelConfig,
    TypeISinglePanelConfig,
)

logger = logging.getLogger(__name__)

SINGLE_PANEL_INDEX_NAMES = ("i2", "i11", "i12", "i13")
MULTI_PANEL_INDEX_NAMES = ("i20", "i21", "i22", "i11", "i12", "i13", "i141", "i142", "i143")

# Maximum Type II amplitudes per restriction bit pair, Table 5.2.2.2.3-6
TYPE_II_RESTRICTION_AMPLITUDES = np.round([0.0, 0.5, 1 / np.sqrt(2), 1.0], 4)

# (l, m) offsets for codebook mode 2 beam selection from i2
_MODE2_LM_OFFSETS = ((0, 0), (1, 0), (0, 1), (1, 1))


def phi(n) -> complex:
    """Co-phasing factor exp(j*pi*n/2)"""
    return np.exp(1j * np.pi * n / 2)


def _a(p) -> complex:
    return np.exp(1j * np.pi / 4 + 1j * np.pi * p / 2)


def _b(n) -> complex:
    return np.exp(-1j * np.pi / 4 + 1j * np.pi * n / 2)


def vlm(n1: int, n2: int, o1: int, o2: int, l: int, m: int) -> np.ndarray:
    """
    Oversampled 2D DFT beam v_{l,m}

    Args:
        n1, n2: Panel dimensions
        o1, o2: Oversampling factors
        l, m: Horizontal and vertical beam indices

    Returns:
        Vector of length n1*n2, vertical index varying fastest
    """
    um = np.exp(2j * np.pi * m * np.arange(n2) / (o2 * n2))
    ul = np.exp(2j * np.pi * l * np.arange(n1) / (o1 * n1))
    return np.kron(ul, um)


def vbar_lm(n1: int, n2: int, o1: int, o2: int, l: int, m: int) -> np.ndarray:
    """Half-panel DFT beam used by 3/4 layer codebooks with 16+ ports"""
    half = n1 // 2
    um = np.exp(2j * np.pi * m * np.arange(n2) / (o2 * n2))
    ul = np.exp(2j * np.pi * l * np.arange(half) / (o1 * half))
    return np.kron(ul, um)


@dataclass
class Codebook:
    """
    Enumerated precoding codebook

    matrices has shape (ports, layers, *index_sizes). Candidate order is
    column-major over the index dimensions, so the first index varies
    fastest, which also fixes the tie-breaking order of the search.
    """
    matrices: np.ndarray
    index_names: Tuple[str, ...]

    @property
    def num_ports(self) -> int:
        return self.matrices.shape[0]

    @property
    def num_layers(self) -> int:
        return self.matrices.shape[1]

    @property
    def index_sizes(self) -> Tuple[int, ...]:
        return tuple(self.matrices.shape[2:])

    @property
    def num_candidates(self) -> int:
        return int(np.prod(self.index_sizes))

    def flat(self) -> np.ndarray:
        """Candidates as an array of shape (num_candidates, ports, layers)"""
        flat = self.matrices.reshape(
            self.num_ports, self.num_layers, self.num_candidates, order="F"
        )
        return np.moveaxis(flat, 2, 0)

    def unravel(self, flat_index: int) -> Tuple[int, ...]:
        """Zero-based index tuple of a flat candidate position"""
        return tuple(int(i) for i in np.unravel_index(flat_index, self.index_sizes, order="F"))

    def ravel(self, index: Sequence[int]) -> int:
        """Flat candidate position of a zero-based index tuple"""
        return int(np.ravel_multi_index(tuple(index), self.index_sizes, order="F"))

    def matrix(self, index: Sequence[int]) -> np.ndarray:
        """Precoding matrix at a zero-based index tuple"""
        return self.matrices[(slice(None), slice(None)) + tuple(index)]

    def restricted_mask(self) -> np.ndarray:
        """True for zero (restricted) candidates, in flat order"""
        return ~np.any(self.flat() != 0, axis=(1, 2))

    @property
    def is_fully_restricted(self) -> bool:
        return not np.any(self.matrices)


def _layer_offsets(n1: int, n2: int, o1: int, o2: int) -> Tuple[List[int], List[int]]:
    """(k1, k2) beam offsets for 2 layer codebooks, Table 5.2.2.2.1-3"""
    if n1 > n2 > 1:
        return [0, o1, 0, 2 * o1], [0, 0, o2, 0]
    if n1 == n2:
        return [0, o1, 0, o1], [0, 0, o2, o2]
    if (n1, n2) == (2, 1):
        return [0, o1], [0, 0]
    return [0, o1, 2 * o1, 3 * o1], [0, 0, 0, 0]


def _layer34_offsets(n1: int, n2: int, o1: int, o2: int,
                     multi_panel: bool = False) -> Tuple[List[int], List[int]]:
    """(k1, k2) beam offsets for 3/4 layer codebooks, Tables 5.2.2.2.1-4 and 5.2.2.2.2-2"""
    long_n1 = 8 if multi_panel else 6
    wide_n1 = 4 if multi_panel else 3
    table = {
        (2, 1): ([o1], [0]),
        (4, 1): ([o1, 2 * o1, 3 * o1], [0, 0, 0]),
        (long_n1, 1): ([o1, 2 * o1, 3 * o1, 4 * o1], [0, 0, 0, 0]),
        (2, 2): ([o1, 0, o1], [0, o2, o2]),
        (wide_n1, 2): ([o1, 0, o1, 2 * o1], [0, o2, o2, 0]),
    }
    if (n1, n2) not in table:
        raise CSIConfigurationError(
            f"Panel ({n1}, {n2}) does not support 3 or 4 layers"
        )
    return table[(n1, n2)]


# =============================================================================
# Type I Single-Panel
# =============================================================================

class TypeISinglePanelCodebook:
    """
    Type I single-panel codebook generator

    Builds the full candidate array for a (ports, layers) pair. Entries
    whose beam is disabled by the codebook subset restriction, or whose
    i2 is disabled by the i2 restriction, are left as zero matrices.
    """

    def __init__(self, config: TypeISinglePanelConfig, num_ports: int):
        self.config = config
        self.num_ports = num_ports
        self.n1, self.n2 = config.panel_dimensions
        self.o1, self.o2 = config.oversampling_factors
        self.mode = config.codebook_mode
        self.restriction = config.subset_restriction(num_ports)
        self.i2_restriction = config.i2_restriction_bits(num_ports)

    def build(self, num_layers: int) -> Codebook:
        """
        Generate the codebook for a number of layers

        Args:
            num_layers: Transmission layers, 1..8

        Returns:
            Codebook with index order (i2, i11, i12, i13)
        """
        if self.num_ports == 1:
            matrices = np.ones((1, 1, 1, 1, 1, 1), dtype=complex)
        elif self.num_ports == 2:
            matrices = self._generate_two_port(num_layers)
        elif num_layers in (1, 2):
            matrices = self._generate_one_two_layer(num_layers)
        elif num_layers in (3, 4):
            if self.num_ports < 16:
                matrices = self._generate_three_four_layer(num_layers)
            else:
                matrices = self._generate_three_four_layer_vbar(num_layers)
        elif num_layers in (5, 6):
            matrices = self._generate_five_six_layer(num_layers)
        elif num_layers in (7, 8):
            matrices = self._generate_seven_eight_layer(num_layers)
        else:
            raise CSIConfigurationError(f"Unsupported number of layers: {num_layers}")

        codebook = Codebook(matrices=matrices, index_names=SINGLE_PANEL_INDEX_NAMES)
        logger.debug(
            f"Type I single-panel codebook: {self.num_ports} ports, "
            f"{num_layers} layers, index sizes {codebook.index_sizes}"
        )
        return codebook

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _v(self, l: int, m: int) -> np.ndarray:
        return vlm(self.n1, self.n2, self.o1, self.o2, l, m)

    def _is_restricted(self, bit_indices: Sequence[int], i2: int) -> bool:
        if any(self.restriction[b] == 0 for b in bit_indices):
            return True
        return self.i2_restriction[i2] == 0

    def _fill(
        self,
        num_layers: int,
        sizes: Tuple[int, int, int, int],
        entry: Callable[[int, int, int, int], Optional[np.ndarray]],
    ) -> np.ndarray:
        """Evaluate entry() over every (i2, i11, i12, i13), None means restricted"""
        matrices = np.zeros((self.num_ports, num_layers) + tuple(sizes), dtype=complex)
        for i2, i11, i12, i13 in itertools.product(*(range(s) for s in sizes)):
            w = entry(i2, i11, i12, i13)
            if w is not None:
                matrices[:, :, i2, i11, i12, i13] = w
        return matrices

    def _mode2_lm(self, i11: int, i12: int, offset_index: int) -> Tuple[int, int]:
        """Beam (l, m) selected by codebook mode 2"""
        if self.n2 == 1:
            return 2 * i11 + offset_index, 0
        dl, dm = _MODE2_LM_OFFSETS[offset_index]
        return 2 * i11 + dl, 2 * i12 + dm

    # -------------------------------------------------------------------------
    # Generators
    # -------------------------------------------------------------------------

    def _generate_two_port(self, num_layers: int) -> np.ndarray:
        """Table 5.2.2.2.1-1"""
        if num_layers == 1:
            candidates = [np.array([[1], [c]]) / np.sqrt(2) for c in (1, 1j, -1, -1j)]
            bits = range(4)
        elif num_layers == 2:
            candidates = [
                np.array([[1, 1], [1, -1]]) / 2,
                np.array([[1, 1], [1j, -1j]]) / 2,
            ]
            bits = range(4, 6)
        else:
            raise CSIConfigurationError("2-port codebooks support at most 2 layers")

        matrices = np.zeros((2, num_layers, len(candidates), 1, 1, 1), dtype=complex)
        for i2, (w, bit) in enumerate(zip(candidates, bits)):
            if self.restriction[bit]:
                matrices[:, :, i2, 0, 0, 0] = w
        return matrices

    def _generate_one_two_layer(self, num_layers: int) -> np.ndarray:
        """Tables 5.2.2.2.1-5 and 5.2.2.2.1-6"""
        n1, n2, o1, o2 = self.n1, self.n2, self.o1, self.o2
        p = self.num_ports

        if num_layers == 1:
            k1, k2 = [0], [0]
        else:
            k1, k2 = _layer_offsets(n1, n2, o1, o2)

        if self.mode == 1:
            i2_len = 4 if num_layers == 1 else 2
            sizes = (i2_len, n1 * o1, n2 * o2, len(k1))
        else:
            i2_len = 16 if num_layers == 1 else 8
            i12_len = 1 if n2 == 1 else n2 * o2 // 2
            sizes = (i2_len, n1 * o1 // 2, i12_len, len(k1))
        beams_per_i2 = i2_len // 4

        def entry(i2, i11, i12, i13):
            if self.mode == 1:
                l, m, n = i11, i12, i2
            else:
                l, m = self._mode2_lm(i11, i12, i2 // beams_per_i2)
                n = i2 % beams_per_i2
            if self._is_restricted([n2 * o2 * l + m], i2):
                return None
            v = self._v(l, m)
            if num_layers == 1:
                return np.concatenate([v, phi(n) * v])[:, None] / np.sqrt(p)
            v2 = self._v(l + k1[i13], m + k2[i13])
            return np.block([[v[:, None], v2[:, None]],
                             [phi(n) * v[:, None], -phi(n) * v2[:, None]]]) / np.sqrt(2 * p)

        return self._fill(num_layers, sizes, entry)

    def _generate_three_four_layer(self, num_layers: int) -> np.ndarray:
        """Tables 5.2.2.2.1-7 and 5.2.2.2.1-8, fewer than 16 ports"""
        n1, n2, o1, o2 = self.n1, self.n2, self.o1, self.o2
        p = self.num_ports
        k1, k2 = _layer34_offsets(n1, n2, o1, o2)
        sizes = (2, n1 * o1, n2 * o2, len(k1))

        def entry(i2, i11, i12, i13):
            l, m, n = i11, i12, i2
            if self._is_restricted([n2 * o2 * l + m], i2):
                return None
            v = self._v(l, m)[:, None]
            v2 = self._v(l + k1[i13], m + k2[i13])[:, None]
            top = [v, v2, v, v2][:num_layers]
            bottom = [phi(n) * v, phi(n) * v2, -phi(n) * v, -phi(n) * v2][:num_layers]
            return np.block([top, bottom]) / np.sqrt(num_layers * p)

        return self._fill(num_layers, sizes, entry)

    def _generate_three_four_layer_vbar(self, num_layers: int) -> np.ndarray:
        """Tables 5.2.2.2.1-7 and 5.2.2.2.1-8, 16 or more ports"""
        n1, n2, o1, o2 = self.n1, self.n2, self.o1, self.o2
        p = self.num_ports
        sizes = (2, n1 * o1 // 2, n2 * o2, 4)
        wrap = n1 * o1 * n2 * o2

        def entry(i2, i11, i12, i13):
            l, m, n = i11, i12, i2
            bits = [(n2 * o2 * (2 * l - 1) + m) % wrap,
                    n2 * o2 * (2 * l) + m,
                    n2 * o2 * (2 * l + 1) + m]
            if self._is_restricted(bits, i2):
                return None
            theta = np.exp(1j * np.pi * i13 / 4)
            vb = vbar_lm(n1, n2, o1, o2, l, m)[:, None]
            ph = phi(n)
            rows = [
                [vb, vb, vb, vb],
                [theta * vb, -theta * vb, theta * vb, -theta * vb],
                [ph * vb, ph * vb, -ph * vb, -ph * vb],
                [ph * theta * vb, -ph * theta * vb, -ph * theta * vb, ph * theta * vb],
            ]
            return np.block([row[:num_layers] for row in rows]) / np.sqrt(num_layers * p)

        return self._fill(num_layers, sizes, entry)

    def _generate_five_six_layer(self, num_layers: int) -> np.ndarray:
        """Tables 5.2.2.2.1-9 and 5.2.2.2.1-10"""
        n1, n2, o1, o2 = self.n1, self.n2, self.o1, self.o2
        p = self.num_ports
        sizes = (2, n1 * o1, 1 if n2 == 1 else n2 * o2, 1)

        def entry(i2, i11, i12, i13):
            l, m, n = i11, i12, i2
            if n2 == 1:
                beams = [(l, 0), (l + o1, 0), (l + 2 * o1, 0)]
            else:
                beams = [(l, m), (l + o1, m), (l + o1, m + o2)]
            if self._is_restricted([n2 * o2 * beams[0][0] + beams[0][1]], i2):
                return None
            v, v1, v2 = (self._v(*b)[:, None] for b in beams)
            ph = phi(n)
            top = [v, v, v1, v1, v2, v2]
            if num_layers == 5:
                bottom = [ph * v, -ph * v, v1, -v1, v2]
            else:
                bottom = [ph * v, -ph * v, ph * v1, -ph * v1, v2, -v2]
            return np.block([top[:num_layers], bottom]) / np.sqrt(num_layers * p)

        return self._fill(num_layers, sizes, entry)

    def _generate_seven_eight_layer(self, num_layers: int) -> np.ndarray:
        """Tables 5.2.2.2.1-11 and 5.2.2.2.1-12"""
        n1, n2, o1, o2 = self.n1, self.n2, self.o1, self.o2
        p = self.num_ports
        if n2 == 1:
            i11_len = n1 * o1 // 2 if n1 == 4 else n1 * o1
            i12_len = 1
        else:
            i11_len = n1 * o1
            if (n1 == 2 and n2 == 2) or (n1 > 2 and n2 > 2):
                i12_len = n2 * o2
            else:
                i12_len = n2 * o2 // 2
        sizes = (2, i11_len, i12_len, 1)

        def entry(i2, i11, i12, i13):
            l, m, n = i11, i12, i2
            if n2 == 1:
                beams = [(l, 0), (l + o1, 0), (l + 2 * o1, 0), (l + 3 * o1, 0)]
            else:
                beams = [(l, m), (l + o1, m), (l, m + o2), (l + o1, m + o2)]
            if self._is_restricted([n2 * o2 * beams[0][0] + beams[0][1]], i2):
                return None
            v, v1, v2, v3 = (self._v(*b)[:, None] for b in beams)
            ph = phi(n)
            if num_layers == 7:
                top = [v, v, v1, v2, v2, v3, v3]
                bottom = [ph * v, -ph * v, ph * v1, v2, -v2, v3, -v3]
            else:
                top = [v, v, v1, v1, v2, v2, v3, v3]
                bottom = [ph * v, -ph * v, ph * v1, -ph * v1, v2, -v2, v3, -v3]
            return np.block([top, bottom]) / np.sqrt(num_layers * p)

        return self._fill(num_layers, sizes, entry)


# =============================================================================
# Type I Multi-Panel
# =============================================================================

class TypeIMultiPanelCodebook:
    """
    Type I multi-panel codebook generator

    Each panel carries the single-panel beam pair with its own inter-panel
    co-phasing. Mode 1 uses QPSK panel phases phi(p); mode 2 (two panels)
    uses the a(p)b(n) wideband/subband phase split.
    """

    # Per-layer column base and second-polarization sign patterns
    _COLUMN_SIGNS = {1: [1], 2: [1, -1], 3: [1, 1, -1], 4: [1, 1, -1, -1]}

    def __init__(self, config: TypeIMultiPanelConfig):
        self.config = config
        self.ng, self.n1, self.n2 = config.panel_dimensions
        self.o1, self.o2 = config.oversampling_factors
        self.mode = config.codebook_mode
        self.num_ports = config.expected_ports()
        self.restriction = config.subset_restriction()

    def index_sizes(self, num_layers: int) -> Tuple[int, ...]:
        """(i20, i21, i22, i11, i12, i13, i141, i142, i143) lengths"""
        if num_layers == 1:
            i13_len = 1
        elif num_layers == 2:
            i13_len = len(_layer_offsets(self.n1, self.n2, self.o1, self.o2)[0])
        else:
            i13_len = len(_layer34_offsets(self.n1, self.n2, self.o1, self.o2, True)[0])
        i20_len = 4 if num_layers == 1 else 2
        if self.mode == 1:
            i21_len = i22_len = 1
            i142_len = i143_len = 1 if self.ng == 2 else 4
        else:
            i21_len = i22_len = 2
            i142_len, i143_len = 4, 1
        return (i20_len, i21_len, i22_len, self.n1 * self.o1, self.n2 * self.o2,
                i13_len, 4, i142_len, i143_len)

    def build(self, num_layers: int) -> Codebook:
        """
        Generate the codebook for a number of layers

        Args:
            num_layers: Transmission layers, 1..4

        Returns:
            Codebook with index order (i20, i21, i22, i11, i12, i13, i141, i142, i143)
        """
        if not 1 <= num_layers <= 4:
            raise CSIConfigurationError(
                f"Multi-panel codebooks support 1 to 4 layers, got {num_layers}"
            )
        n1, n2, o1, o2 = self.n1, self.n2, self.o1, self.o2
        sizes = self.index_sizes(num_layers)
        if num_layers == 1:
            k1, k2 = [0], [0]
        elif num_layers == 2:
            k1, k2 = _layer_offsets(n1, n2, o1, o2)
        else:
            k1, k2 = _layer34_offsets(n1, n2, o1, o2, multi_panel=True)

        signs = np.array(self._COLUMN_SIGNS[num_layers])
        norm = 1 / np.sqrt(num_layers * self.num_ports)
        matrices = np.zeros((self.num_ports, num_layers) + sizes, dtype=complex)
        phase_ranges = [range(sizes[i]) for i in (0, 1, 2, 6, 7, 8)]

        for i11, i12, i13 in itertools.product(range(sizes[3]), range(sizes[4]), range(sizes[5])):
            l, m = i11, i12
            if self.restriction[n2 * o2 * l + m] == 0:
                continue
            v = vlm(n1, n2, o1, o2, l, m)
            v2 = vlm(n1, n2, o1, o2, l + k1[i13], m + k2[i13])
            base = np.column_stack([v, v2, v, v2][:num_layers])
            for i20, i21, i22, i141, i142, i143 in itertools.product(*phase_ranges):
                blocks = self._panel_blocks(base, signs, i20, i21, i22, (i141, i142, i143))
                matrices[:, :, i20, i21, i22, i11, i12, i13, i141, i142, i143] = (
                    norm * np.vstack(blocks)
                )

        codebook = Codebook(matrices=matrices, index_names=MULTI_PANEL_INDEX_NAMES)
        logger.debug(
            f"Type I multi-panel codebook: {self.num_ports} ports, "
            f"{num_layers} layers, index sizes {codebook.index_sizes}"
        )
        return codebook

    def _panel_blocks(self, base, signs, i20, i21, i22, panel_phases) -> List[np.ndarray]:
        if self.mode == 1:
            blocks = []
            for g in range(self.ng):
                panel = 1 if g == 0 else phi(panel_phases[g - 1])
                blocks.append(panel * base)
                blocks.append(panel * phi(i20) * signs * base)
            return blocks
        p1, p2 = panel_phases[0], panel_phases[1]
        return [
            base,
            phi(i20) * signs * base,
            _a(p1) * _b(i21) * base,
            _a(p2) * _b(i22) * signs * base,
        ]


# =============================================================================
# Type II Beam Groups
# =============================================================================

def get_beam_groups(n1: int, n2: int, o1: int, o2: int,
                    num_beams: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Orthogonal beam groups for Type II codebooks

    Enumerates every choice of num_beams out of the N1*N2 orthogonal beams
    (i12), for every rotation (q1, q2) of the oversampled grid (i11).

    Returns:
        (m1, m2) with shapes (num_groups, num_beams, o1) and
        (num_groups, num_beams, o2)
    """
    n = np.array(list(itertools.combinations(range(n1 * n2), num_beams)))[::-1]
    n1_idx = n % n1
    n2_idx = n // n1
    m1 = o1 * n1_idx[:, :, None] + np.arange(o1)
    m2 = o2 * n2_idx[:, :, None] + np.arange(o2)
    return m1, m2


def build_w1(n1: int, n2: int, o1: int, o2: int,
             m1: Sequence[int], m2: Sequence[int]) -> np.ndarray:
    """Dual-polarized beam matrix W1 of shape (2*N1*N2, 2*L)"""
    beams = np.column_stack([vlm(n1, n2, o1, o2, a, b) for a, b in zip(m1, m2)])
    return block_diag(beams, beams)


def decode_type2_restriction(bits: np.ndarray, n1: int, n2: int) -> np.ndarray:
    """
    Decode a Type II codebook subset restriction bitmap

    The optional 11-bit B1 field selects four beam groups (r1, r2) through a
    combinatorial number; B2 carries a 2-bit maximum amplitude per beam of
    each group.

    Args:
        bits: Restriction bits, 8*N1*N2 (+11 when N2 > 1)
        n1, n2: Panel dimensions

    Returns:
        Array of rows [m1, m2, max_amplitude]
    """
    o1 = 4
    o2 = 1 + 3 * (n2 > 1)
    r1 = list(range(o1))
    r2 = list(np.tile(np.arange(o2), 4 // o2))
    groups = o1 * o2
    bits = np.asarray(bits, dtype=int)

    if n2 > 1:
        beta1 = int(sum(int(b) << i for i, b in enumerate(bits[:11])))
        s = 0
        for k in range(4):
            y = np.full(groups, np.nan)
            for x in range(3 - k, groups - k):
                y[x] = comb(x, 4 - k, exact=True) if x >= 4 - k else 0
            e = np.nanmax(np.where(y <= beta1 - s, y, np.nan))
            x = int(np.flatnonzero(y == e)[0])
            s += int(e)
            g = groups - 1 - x
            r1[k] = g % o1
            r2[k] = (g - r1[k]) // o1
        b2 = bits[11:]
    else:
        b2 = bits

    rows = []
    seq_len = 2 * n1 * n2
    for k in range(4):
        seq = b2[seq_len * k:seq_len * (k + 1)]
        for x1 in range(n1):
            for x2 in range(n2):
                j = 2 * (n1 * x2 + x1)
                level = 2 * seq[j + 1] + seq[j]
                rows.append([n1 * r1[k] + x1, n2 * r2[k] + x2,
                             TYPE_II_RESTRICTION_AMPLITUDES[level]])
    return np.array(rows, dtype=float)


def beam_max_amplitudes(restriction_table: np.ndarray,
                        m1: Sequence[int], m2: Sequence[int]) -> np.ndarray:
    """
    Maximum allowed amplitude of each beam, repeated for both polarizations

    Beams without an entry in the restriction table are unrestricted (1).
    """
    amps = np.ones(len(m1))
    for beam, (a, b) in enumerate(zip(m1, m2)):
        match = np.flatnonzero(
            (restriction_table[:, 0] == a) & (restriction_table[:, 1] == b)
        )
        if match.size:
            amps[beam] = restriction_table[match[0], 2]
    return np.concatenate([amps, amps])


# =============================================================================
# Builder Facade
# =============================================================================

class CodebookBuilder:
    """
    Codebook construction entry point

    Selects the generator from the report configuration's codebook variant
    and caches enumerated Type I codebooks per (ports, layers).
    """

    def __init__(self, config: CSIReportConfig):
        self.config = config
        self._cache: Dict[Tuple[int, int], Codebook] = {}

    def type1(self, num_ports: int, num_layers: int) -> Codebook:
        """Enumerated Type I codebook for the configured variant"""
        key = (num_ports, num_layers)
        if key not in self._cache:
            cb_config = self.config.codebook
            if isinstance(cb_config, TypeISinglePanelConfig):
                generator = TypeISinglePanelCodebook(cb_config, num_ports)
            elif isinstance(cb_config, TypeIMultiPanelConfig):
                generator = TypeIMultiPanelCodebook(cb_config)
            else:
                raise CSIConfigurationError(
                    f"{self.config.codebook_type.value} codebooks are not enumerable"
                )
            self._cache[key] = generator.build(num_layers)
        return self._cache[key]

    def beam_groups(self, num_beams: int) -> Tuple[np.ndarray, np.ndarray]:
        """Type II beam groups for the configured panel"""
        n1, n2 = self.config.codebook.panel_dimensions
        o1, o2 = self.config.codebook.oversampling_factors
        return get_beam_groups(n1, n2, o1, o2, num_beams)

    def restriction_table(self) -> np.ndarray:
        """Decoded Type II amplitude restriction"""
        n1, n2 = self.config.codebook.panel_dimensions
        return decode_type2_restriction(self.config.codebook.subset_restriction(), n1, n2)
