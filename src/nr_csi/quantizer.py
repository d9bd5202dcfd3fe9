"""
Coefficient Quantization for Type II and Enhanced Type II Codebooks

Implements the amplitude/phase quantization of beam combining coefficients:
- Rel-15 wideband amplitudes (TS 38.214 Table 5.2.2.2.3-2)
- Rel-16 reference and differential amplitudes (Tables 5.2.2.2.5-2/3)
- N-PSK phase quantization relative to the strongest coefficient
- Type II wideband and subband coefficient quantization
- Enhanced Type II DFT-domain compression, overhead reduction and
  average amplitude restriction (Section 5.2.2.2.6)
- Combinatorial index of the selected DFT basis vectors (i16)

Amplitude ladders are searched for the nearest value in the log domain.

References:
- 3GPP TS 38.214 Section 5.2.2.2.3: Type II codebook
- 3GPP TS 38.214 Section 5.2.2.2.5: Enhanced Type II codebook
- R1-1906348: Phase alignment of subband coefficients before compression
"""

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy.linalg import dft
from scipy.special import comb

logger = logging.getLogger(__name__)

# Wideband amplitudes p(1), Table 5.2.2.2.3-2
REL15_AMPLITUDES = np.round(
    [0, np.sqrt(1 / 64), np.sqrt(1 / 32), np.sqrt(1 / 16),
     np.sqrt(1 / 8), np.sqrt(1 / 4), np.sqrt(1 / 2), 1], 4
)

# Subband amplitudes p(2), Table 5.2.2.2.3-3
REL15_SUBBAND_AMPLITUDES = np.array([1 / np.sqrt(2), 1.0])

# Reference amplitudes p(1), Table 5.2.2.2.5-2 (index 1 reserved)
REL16_P1_AMPLITUDES = 2.0 ** (np.arange(-15, 1) / 4)

# Differential amplitudes p(2), Table 5.2.2.2.5-3 (index 0 means zero)
REL16_P2_AMPLITUDES = 2.0 ** (np.arange(-8, 1) / 2)

# Enhanced Type II phase alphabet
ENHANCED_TYPE_II_PSK = 16

# Exhaustive DFT basis selection limit on the number of PMI subbands
MAX_SUBBANDS_FULL_SEARCH = 19

_LADDER_TOL = 1e-9


def _truncate(ladder: np.ndarray, max_amplitude: float) -> np.ndarray:
    return ladder[ladder <= max_amplitude + _LADDER_TOL]


def _nearest_log(values: np.ndarray, log_ladder: np.ndarray) -> np.ndarray:
    """Index of the nearest ladder entry of each value, log domain"""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_values = np.log(values)
        distance = np.abs(log_values[..., None] - log_ladder)
    distance = np.where(np.isnan(distance), np.inf, distance)
    return np.argmin(distance, axis=-1)


# =============================================================================
# Scalar Quantizers
# =============================================================================

def quantize_amplitude_rel15(amplitudes, max_amplitude: float = 1.0) -> np.ndarray:
    """
    Quantize wideband amplitudes to the Rel-15 ladder

    Args:
        amplitudes: Normalized linear amplitudes in [0, 1]
        max_amplitude: Ceiling from the codebook subset restriction

    Returns:
        Quantized amplitudes, same shape as the input
    """
    amps = np.asarray(amplitudes, dtype=float)
    allowed = _truncate(REL15_AMPLITUDES, max_amplitude)
    if allowed.size <= 1:
        return np.zeros_like(amps)

    # Zero has no logarithm, extrapolate one ladder step below sqrt(1/64)
    log_ladder = np.log(np.where(REL15_AMPLITUDES > 0, REL15_AMPLITUDES, 1.0))
    log_ladder[0] = 2 * log_ladder[1] - log_ladder[2]
    idx = _nearest_log(amps, log_ladder[:allowed.size])
    return allowed[idx]


def amplitude_rel15_index(amplitudes) -> np.ndarray:
    """1-based ladder index (i14 value) of already quantized Rel-15 amplitudes"""
    amps = np.asarray(amplitudes, dtype=float)
    distance = np.abs(amps[..., None] - REL15_AMPLITUDES)
    return np.argmin(distance, axis=-1) + 1


def quantize_amplitude_rel16_p1(amplitudes, max_amplitude: float = 1.0
                                ) -> Tuple[np.ndarray, np.ndarray]:
    """
    Quantize polarization reference amplitudes

    Returns:
        (p1, k1): quantized amplitudes and their 1-based ladder indices.
        Index 1 is reserved and quantizes to zero.
    """
    amps = np.asarray(amplitudes, dtype=float)
    allowed = _truncate(REL16_P1_AMPLITUDES, max_amplitude)
    idx = _nearest_log(amps, np.log(allowed))
    k1 = idx + 1
    p1 = np.where(k1 == 1, 0.0, allowed[idx])
    return p1, k1


def quantize_amplitude_rel16_p2(amplitudes, max_amplitude: float = 1.0
                                ) -> Tuple[np.ndarray, np.ndarray]:
    """
    Quantize differential amplitudes

    Returns:
        (p2, k2): quantized amplitudes and ladder indices. k2 = 0 means a
        zero coefficient and is reported as NaN with p2 = 0.
    """
    amps = np.asarray(amplitudes, dtype=float)
    allowed = _truncate(REL16_P2_AMPLITUDES, max_amplitude)
    idx = _nearest_log(amps, np.log(allowed))
    k2 = idx.astype(float)
    p2 = allowed[idx].astype(float)
    null = k2 == 0
    k2[null] = np.nan
    p2[null] = 0.0
    return p2, k2


def quantize_phase(theta, n_psk: int) -> np.ndarray:
    """Phase index mod(round(theta*N/2pi), N) of an N-PSK alphabet"""
    return np.mod(np.round(np.asarray(theta) * n_psk / (2 * np.pi)), n_psk)


# =============================================================================
# Type II
# =============================================================================

def quantize_type2(W2: np.ndarray, n_psk: int, max_amplitudes: np.ndarray):
    """
    Quantize wideband Type II combining coefficients

    Args:
        W2: Coefficients of shape (2L, layers)
        n_psk: Phase alphabet size (4 or 8)
        max_amplitudes: Per-coefficient amplitude ceilings, length 2L

    Returns:
        (W2q, p1, amplitudes, istar, c): quantized coefficients, quantized
        amplitudes, unquantized absolute amplitudes, 0-based strongest
        coefficient per layer and phase indices
    """
    num_coeffs, num_layers = W2.shape
    amplitudes = np.abs(W2)
    theta = np.angle(W2)
    layers = np.arange(num_layers)

    istar = np.argmax(np.nan_to_num(amplitudes, nan=-np.inf), axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        normalized = amplitudes / amplitudes[istar, layers]

    p1 = np.zeros((num_coeffs, num_layers))
    for beam in range(num_coeffs):
        p1[beam] = quantize_amplitude_rel15(normalized[beam], max_amplitudes[beam])

    c = quantize_phase(theta - theta[istar, layers], n_psk)
    W2q = p1 * np.exp(2j * np.pi * c / n_psk)
    return W2q, p1, amplitudes, istar, c


def quantize_type2_subband(
    W2: np.ndarray,
    wideband_amplitudes: np.ndarray,
    wideband_p1: np.ndarray,
    istar: np.ndarray,
    n_psk: int,
    subband_amplitude: bool,
    invalid_subbands: np.ndarray,
):
    """
    Quantize per-subband Type II combining coefficients

    With subband amplitudes, only the K2 strongest wideband coefficients
    carry a subband amplitude and a full resolution phase; the remaining
    non-zero coefficients use a 4-PSK phase.

    Args:
        W2: Coefficients of shape (2L, layers, subbands)
        wideband_amplitudes: Unquantized wideband amplitudes (2L, layers)
        wideband_p1: Quantized wideband amplitudes (2L, layers)
        istar: 0-based strongest coefficient per layer (i13 - 1)
        n_psk: Phase alphabet size
        subband_amplitude: Whether subband amplitudes are reported
        invalid_subbands: True for subbands without CSI-RS

    Returns:
        (W2q, p1p2, p2, c) with p2 and c of shape (2L, layers, subbands)
    """
    num_coeffs, num_layers, num_sb = W2.shape
    num_beams = num_coeffs // 2
    layers = np.arange(num_layers)
    valid = ~np.asarray(invalid_subbands, dtype=bool)

    theta = np.angle(W2)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.abs(W2) / wideband_amplitudes[:, :, None]
        normalized = ratio / ratio[istar, layers, :][None]

    p2 = np.full((num_coeffs, num_layers, num_sb), np.nan)
    for layer in range(num_layers):
        for sb in range(num_sb):
            column = normalized[:, layer, sb]
            if np.any(column[~np.isnan(column)] != 0):
                idx = np.argmin(np.abs(column[:, None] - REL15_SUBBAND_AMPLITUDES), axis=1)
                p2[:, layer, sb] = REL15_SUBBAND_AMPLITUDES[idx]

    theta_normalized = theta - theta[istar, layers, :][None]
    c = quantize_phase(theta_normalized, n_psk)
    phase = 2 * np.pi * c / n_psk

    nonzero = wideband_p1 > 0
    if subband_amplitude:
        k2 = 4 + 2 * (num_beams == 4)
        order = np.argsort(-wideband_p1, axis=0, kind="stable")
        for layer in range(num_layers):
            zero = np.flatnonzero(~nonzero[:, layer])
            nnz = int(nonzero[:, layer].sum())
            if nnz > k2:
                p2[np.ix_(order[k2:, layer], [layer], valid)] = 1
                weak = np.ix_(order[k2:nnz, layer], [layer], valid)
                c[weak] = quantize_phase(theta_normalized[weak], 4)
                phase[weak] = 2 * np.pi * c[weak] / 4
            else:
                p2[np.ix_(zero, [layer], valid)] = 1
            c[np.ix_(zero, [layer], valid)] = 0
            phase[np.ix_(zero, [layer], valid)] = 0
        p1p2 = wideband_p1[:, :, None] * p2
    else:
        for layer in range(num_layers):
            zero = np.flatnonzero(~nonzero[:, layer])
            c[np.ix_(zero, [layer], valid)] = 0
            phase[np.ix_(zero, [layer], valid)] = 0
        p1p2 = np.repeat(wideband_p1[:, :, None], num_sb, axis=2).astype(float)
        p1p2[:, :, ~valid] = np.nan

    W2q = p1p2 * np.exp(1j * phase)
    return W2q, p1p2, p2, c


# =============================================================================
# Enhanced Type II
# =============================================================================

@dataclass
class EnhancedTypeIIQuantization:
    """Quantized enhanced Type II coefficients"""
    W2: np.ndarray              # (2L, Mv, layers) quantized coefficients
    k1: np.ndarray              # (2, layers) reference amplitude indices
    k2: np.ndarray              # (2L, Mv, layers) differential amplitude indices
    c: np.ndarray               # (2L, Mv, layers) 16-PSK phase indices
    istar: np.ndarray           # 0-based strongest beam per layer
    fstar: np.ndarray           # 0-based strongest DFT basis per layer


def compress_enhanced_type2(W2: np.ndarray, istar: np.ndarray, mv: int):
    """
    Compress per-subband coefficients onto Mv DFT basis vectors

    Args:
        W2: Coefficients of shape (2L, layers, N3)
        istar: 0-based strongest beam per layer, used as phase reference
        mv: Number of DFT basis vectors kept per layer

    Returns:
        (W2c, minit, n3, Vm): compressed coefficients (2L, Mv, layers),
        window offset, selected 0-based basis indices (Mv, layers) and
        the selected basis vectors (N3, Mv, layers)
    """
    num_coeffs, num_layers, n3_count = W2.shape
    W2 = np.array(W2, dtype=complex)

    if n3_count > 1:
        for layer in range(num_layers):
            reference = np.angle(W2[istar[layer], layer, :])
            W2[:, layer, :] *= np.exp(-1j * reference)

    V = np.conj(dft(n3_count))
    W2 = W2.transpose(0, 2, 1)                      # (2L, N3, layers)
    W2v = np.einsum("bnl,nf->bfl", W2, np.conj(V))
    proj = np.sum(np.abs(W2v) ** 2, axis=0)         # (N3, layers)

    if n3_count <= MAX_SUBBANDS_FULL_SEARCH:
        order = np.argsort(-proj, axis=0, kind="stable")
        n3 = order[:mv, :]
        minit = 0
    else:
        minit_range = np.arange(-2 * mv + 1, 1)
        windows = np.mod(minit_range[:, None] + n3_count + np.arange(2 * mv), n3_count)
        proj_win = proj[windows, :]                 # (2Mv, 2Mv, layers)
        order = np.argsort(-proj_win, axis=1, kind="stable")
        strongest = np.take_along_axis(proj_win, order, axis=1)[:, :mv, :]
        best = int(np.argmax(strongest.sum(axis=(1, 2))))
        n3 = windows[best][order[best, :mv, :]]
        minit = int(minit_range[best])

    Vm = V[:, n3]                                   # (N3, Mv, layers)
    W2c = np.einsum("bnl,nml->bml", W2, np.conj(Vm))
    logger.debug(f"DFT compression: N3={n3_count}, Mv={mv}, Minit={minit}")
    return W2c, minit, n3, Vm


def reduce_overhead(beta: float, num_beams: int, mv: int,
                    amps: np.ndarray, c: np.ndarray, phase: np.ndarray):
    """
    Limit the number of non-zero coefficients

    Keeps the strongest coefficients, at most K0 = ceil(beta*2L*Mv) per layer
    and 2*K0 across all layers.

    Returns:
        (amps, c, phase, null) with null the mask of discarded coefficients
    """
    k0 = int(np.ceil(beta * 2 * num_beams * mv))
    num_layers = amps.shape[2]
    flat = amps.reshape(-1, num_layers, order="F")
    order = np.argsort(-flat, axis=None, kind="stable")

    keep = np.zeros(flat.shape, dtype=bool)
    per_layer = np.zeros(num_layers, dtype=int)
    total = 0
    for position in order:
        coeff, layer = np.unravel_index(position, flat.shape)
        if per_layer[layer] < k0 and total < 2 * k0:
            keep[coeff, layer] = True
            per_layer[layer] += 1
            total += 1

    null = ~keep.reshape(amps.shape, order="F")
    amps = np.where(null, 0.0, amps)
    c = np.where(null, np.nan, c)
    phase = np.where(null, 0.0, phase)
    return amps, c, phase, null


def quantize_enhanced_type2(W2: np.ndarray, beta: float,
                            max_avg_amplitudes: np.ndarray) -> EnhancedTypeIIQuantization:
    """
    Quantize compressed enhanced Type II coefficients

    Args:
        W2: Compressed coefficients of shape (2L, Mv, layers)
        beta: Fraction of non-zero coefficients
        max_avg_amplitudes: Per-beam average amplitude ceilings, length 2L

    Returns:
        EnhancedTypeIIQuantization
    """
    num_coeffs, mv, num_layers = W2.shape
    num_beams = num_coeffs // 2
    layers = np.arange(num_layers)
    amplitude = np.abs(W2)
    theta = np.angle(W2)

    strongest = np.argmax(
        np.nan_to_num(amplitude ** 2, nan=-np.inf).reshape(-1, num_layers, order="F"), axis=0
    )
    istar = strongest % num_coeffs
    fstar = strongest // num_coeffs

    with np.errstate(divide="ignore", invalid="ignore"):
        normalized = amplitude / amplitude[istar, fstar, layers]
        pol0 = normalized[:num_beams]
        pol1 = normalized[num_beams:]
        max0 = pol0.max(axis=(0, 1))
        max1 = pol1.max(axis=(0, 1))
        pol0 = pol0 / max0
        pol1 = pol1 / max1

    p10, k10 = quantize_amplitude_rel16_p1(max0)
    p11, k11 = quantize_amplitude_rel16_p1(max1)
    p1 = np.stack([p10, p11])
    k1 = np.stack([k10, k11])

    c = quantize_phase(theta - theta[istar, fstar, layers], ENHANCED_TYPE_II_PSK)
    phase = 2 * np.pi * c / ENHANCED_TYPE_II_PSK

    p2_amps = np.concatenate([pol0, pol1], axis=0)
    bitmap = np.ones(W2.shape, dtype=bool)
    if mv > 1:
        p2_amps, c, phase, null = reduce_overhead(beta, num_beams, mv, p2_amps, c, phase)
        p2, k2 = quantize_amplitude_rel16_p2(p2_amps)
        k2[null] = np.nan
        bitmap[null] = False
    else:
        p2, k2 = quantize_amplitude_rel16_p2(p2_amps)

    # Average coefficient amplitude restriction, TS 38.214 Section 5.2.2.2.6
    for layer in range(num_layers):
        for pol in range(2):
            for beam in range(num_beams):
                coeff = beam + pol * num_beams
                mask = bitmap[coeff, :, layer]
                if not mask.any():
                    continue
                for ceiling in REL16_P2_AMPLITUDES[::-1]:
                    row_p2, row_k2 = quantize_amplitude_rel16_p2(p2_amps[coeff, :, layer], ceiling)
                    avg = np.sqrt(np.sum(mask * (p1[pol, layer] * row_p2) ** 2) / mask.sum())
                    if avg <= max_avg_amplitudes[coeff]:
                        break
                p2[coeff, :, layer] = row_p2
                k2[coeff, :, layer] = row_k2

    W2q = np.concatenate([p1[0] * p2[:num_beams], p1[1] * p2[num_beams:]], axis=0)
    W2q = W2q * np.exp(1j * phase)
    return EnhancedTypeIIQuantization(W2=W2q, k1=k1, k2=k2, c=c, istar=istar, fstar=fstar)


# =============================================================================
# Combinatorial Index
# =============================================================================

def _combination_index(n3: np.ndarray, num_bases: int, mv: int) -> np.ndarray:
    indices = np.zeros(n3.shape[1], dtype=int)
    for layer in range(n3.shape[1]):
        total = 0
        for f in range(1, mv):
            n = num_bases - 1 - int(n3[f, layer])
            k = mv - f
            if n > 0 and n >= k:
                total += int(comb(n, k, exact=True))
        indices[layer] = total
    return indices


def combinatorial_index(n3: np.ndarray, n3_count: int, mv: int, i15: int) -> np.ndarray:
    """
    Index i16 of the selected DFT basis vectors of each layer

    Args:
        n3: 0-based selected basis indices, shape (Mv, layers)
        n3_count: Number of PMI subbands N3
        mv: Number of selected basis vectors
        i15: Window offset index (0 when N3 <= 19)

    Returns:
        i16 per layer
    """
    n3 = np.sort(np.asarray(n3, dtype=int), axis=0)
    if n3_count <= MAX_SUBBANDS_FULL_SEARCH:
        return _combination_index(n3, n3_count, mv)

    # Remap the window of 2*Mv bases, which may wrap around N3, to 0..2*Mv-1
    minit = i15 - 2 * mv * (i15 > 0)
    remapped = np.zeros_like(n3)
    low = n3 <= minit + 2 * mv - 1
    high = n3 > minit + n3_count - 1
    remapped[low] = n3[low]
    remapped[high] = n3[high] - (n3_count - 2 * mv)
    return _combination_index(np.sort(remapped, axis=0), 2 * mv, mv)
