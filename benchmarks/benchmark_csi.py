"""
CSI Feedback Performance Benchmarks

Measures:
- PMI search latency per antenna layout and rank
- CQI selection latency (wideband and subband)
- RI selection latency (MaxSINR and MaxSE)
- Full report latency through CSIFeedbackApp
- SINR evaluation scaling with worker threads
"""

import sys
import time
import gc
import statistics
import json
import tracemalloc
from pathlib import Path
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Tuple
import numpy as np

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from nr_csi.config import CarrierConfig, CSIReportConfig, ReportingMode, TypeISinglePanelConfig
from nr_csi.pmi_selector import PMISelector
from nr_csi.cqi_selector import CQISelector
from nr_csi.ri_selector import RIAlgorithm, RISelector
from nr_csi.sinr import SINREvaluator
from nr_csi.messages import create_csi_request
from nr_csi.server import CSIFeedbackApp


# Latency target for a single selection
TARGET_P99_MS = 50.0


@dataclass
class BenchmarkResult:
    """Benchmark result container"""
    name: str
    iterations: int
    latencies_ms: List[float]
    memory_peak_mb: float
    memory_current_mb: float

    def _percentile(self, q: float) -> float:
        sorted_latencies = sorted(self.latencies_ms)
        if not sorted_latencies:
            return 0.0
        idx = int(len(sorted_latencies) * q)
        return sorted_latencies[min(idx, len(sorted_latencies) - 1)]

    @property
    def p50(self) -> float:
        return self._percentile(0.50)

    @property
    def p95(self) -> float:
        return self._percentile(0.95)

    @property
    def p99(self) -> float:
        return self._percentile(0.99)

    @property
    def mean(self) -> float:
        return statistics.mean(self.latencies_ms) if self.latencies_ms else 0.0

    @property
    def std(self) -> float:
        return statistics.stdev(self.latencies_ms) if len(self.latencies_ms) > 1 else 0.0

    @property
    def throughput_ops(self) -> float:
        """Selections per second"""
        total_time = sum(self.latencies_ms) / 1000.0
        return self.iterations / total_time if total_time > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "iterations": self.iterations,
            "latency_ms": {
                "p50": round(self.p50, 4),
                "p95": round(self.p95, 4),
                "p99": round(self.p99, 4),
                "mean": round(self.mean, 4),
                "std": round(self.std, 4),
                "min": round(min(self.latencies_ms), 4) if self.latencies_ms else 0.0,
                "max": round(max(self.latencies_ms), 4) if self.latencies_ms else 0.0,
            },
            "throughput_ops": round(self.throughput_ops, 2),
            "memory_mb": {
                "peak": round(self.memory_peak_mb, 4),
                "current": round(self.memory_current_mb, 4),
            },
            "target_met": self.p99 < TARGET_P99_MS,
        }


# ==============================================================================
# Synthetic Inputs
# ==============================================================================

def rayleigh_channel(num_rb: int, num_rx: int, num_ports: int, seed: int = 0,
                     num_taps: int = 4) -> np.ndarray:
    """Frequency-selective channel (12*num_rb, 14, nRx, P), constant over time"""
    rng = np.random.default_rng(seed)
    taps = (
        rng.standard_normal((num_taps, num_rx, num_ports))
        + 1j * rng.standard_normal((num_taps, num_rx, num_ports))
    ) / np.sqrt(2 * num_taps)
    delays = np.sort(rng.integers(0, 8, num_taps))
    k = np.arange(12 * num_rb)
    phases = np.exp(-2j * np.pi * np.outer(k, delays) / 4096)
    H_freq = np.einsum("kt,trp->krp", phases, taps)
    return np.repeat(H_freq[:, None], 14, axis=1)


def csirs_positions(num_rb: int, symbol: int = 5, spacing: int = 3) -> Tuple[np.ndarray, np.ndarray]:
    """One CSI-RS symbol with an RE every `spacing` subcarriers"""
    k = np.arange(0, 12 * num_rb, spacing)
    return k, np.full(k.shape, symbol)


PANELS = {4: (2, 1), 8: (4, 1), 16: (4, 2), 32: (8, 2)}


def single_panel_config(num_rb: int, num_ports: int, subband: bool = False) -> CSIReportConfig:
    mode = ReportingMode.SUBBAND if subband else ReportingMode.WIDEBAND
    return CSIReportConfig(
        n_size_bwp=num_rb,
        codebook=TypeISinglePanelConfig(panel_dimensions=PANELS[num_ports]),
        pmi_mode=mode,
        cqi_mode=mode,
        subband_size=8,
    )


class CSIBenchmark:
    """Benchmark suite for CSI feedback selection"""

    def __init__(
        self,
        num_rb: int = 52,
        num_rx: int = 4,
        warmup_iterations: int = 3,
        benchmark_iterations: int = 30,
    ):
        self.num_rb = num_rb
        self.num_rx = num_rx
        self.warmup_iterations = warmup_iterations
        self.benchmark_iterations = benchmark_iterations
        self.carrier = CarrierConfig(n_size_grid=num_rb)
        self.csirs = csirs_positions(num_rb)
        self.results: List[BenchmarkResult] = []

    def _measure(self, name: str, operation, iterations: Optional[int] = None) -> BenchmarkResult:
        iterations = iterations or self.benchmark_iterations
        for _ in range(self.warmup_iterations):
            operation()

        gc.collect()
        tracemalloc.start()

        latencies = []
        for _ in range(iterations):
            start = time.perf_counter()
            operation()
            latencies.append((time.perf_counter() - start) * 1000)

        current, peak = tracemalloc.get_traced_memory()
        tracemalloc.stop()

        result = BenchmarkResult(
            name=name,
            iterations=iterations,
            latencies_ms=latencies,
            memory_peak_mb=peak / (1024 * 1024),
            memory_current_mb=current / (1024 * 1024),
        )
        self.results.append(result)
        return result

    def benchmark_pmi_search(self, port_counts: List[int] = [4, 8, 16],
                             ranks: List[int] = [1, 2]) -> List[BenchmarkResult]:
        """Benchmark Type I single-panel PMI search"""
        print("\n[Benchmark] PMI Search (Type I single-panel, wideband)")
        print("-" * 50)

        results = []
        for num_ports in port_counts:
            H = rayleigh_channel(self.num_rb, self.num_rx, num_ports, seed=num_ports)
            selector = PMISelector(single_panel_config(self.num_rb, num_ports), self.carrier)
            for rank in ranks:
                result = self._measure(
                    f"pmi_{num_ports}ports_rank{rank}",
                    lambda: selector.select(H, *self.csirs, rank, 0.1),
                )
                print(f"\n  Ports: {num_ports}, Rank: {rank}")
                self._print_result(result, indent=2)
                results.append(result)
        return results

    def benchmark_cqi_selection(self, num_ports: int = 8) -> List[BenchmarkResult]:
        """Benchmark CQI selection with wideband and subband reporting"""
        print("\n[Benchmark] CQI Selection")
        print("-" * 50)

        H = rayleigh_channel(self.num_rb, self.num_rx, num_ports, seed=1)
        results = []
        for subband in (False, True):
            selector = CQISelector(single_panel_config(self.num_rb, num_ports, subband), self.carrier)
            label = "subband" if subband else "wideband"
            result = self._measure(
                f"cqi_{label}",
                lambda: selector.select(H, *self.csirs, 1, 0.1),
            )
            print(f"\n  Mode: {label}")
            self._print_result(result, indent=2)
            results.append(result)
        return results

    def benchmark_ri_selection(self, num_ports: int = 4) -> List[BenchmarkResult]:
        """Benchmark rank selection with both objectives"""
        print("\n[Benchmark] RI Selection")
        print("-" * 50)

        H = rayleigh_channel(self.num_rb, self.num_rx, num_ports, seed=2)
        config = single_panel_config(self.num_rb, num_ports)
        results = []
        for algorithm in RIAlgorithm:
            selector = RISelector(config, self.carrier, algorithm=algorithm)
            result = self._measure(
                f"ri_{algorithm.value}",
                lambda: selector.select(H, *self.csirs, 0.1),
            )
            print(f"\n  Algorithm: {algorithm.value}")
            self._print_result(result, indent=2)
            results.append(result)
        return results

    def benchmark_full_report(self, num_ports: int = 4) -> BenchmarkResult:
        """Benchmark RI, PMI and CQI through the service, including JSON decoding"""
        print("\n[Benchmark] Full CSI Report")
        print("-" * 50)

        service = CSIFeedbackApp(
            report_config=single_panel_config(self.num_rb, num_ports),
            carrier_config=self.carrier,
        )
        H = rayleigh_channel(self.num_rb, self.num_rx, num_ports, seed=3)
        payload = create_csi_request("ue-bench", H, *self.csirs, 0.1).to_dict()

        result = self._measure("full_report", lambda: service.process_csi_report(payload))
        self._print_result(result)
        return result

    def benchmark_thread_scaling(self, worker_counts: List[int] = [1, 2, 4],
                                 num_ports: int = 16) -> Dict[int, float]:
        """Benchmark PMI search against the SINR evaluator's worker count"""
        print("\n[Benchmark] SINR Evaluation Thread Scaling")
        print("-" * 50)

        H = rayleigh_channel(self.num_rb, self.num_rx, num_ports, seed=4)
        config = single_panel_config(self.num_rb, num_ports)
        scaling = {}
        for workers in worker_counts:
            selector = PMISelector(
                config, self.carrier,
                evaluator=SINREvaluator(max_workers=workers, chunk_elements=200_000),
            )
            result = self._measure(
                f"pmi_rank2_{workers}workers",
                lambda: selector.select(H, *self.csirs, 2, 0.1),
                iterations=max(self.benchmark_iterations // 3, 1),
            )
            scaling[workers] = result.p50
            print(f"  {workers} workers: p50={result.p50:.2f} ms, "
                  f"{result.throughput_ops:.1f} ops/sec")
        return scaling

    def _print_result(self, result: BenchmarkResult, indent: int = 0):
        """Print benchmark result"""
        prefix = "  " * indent
        target_status = "PASS" if result.p99 < TARGET_P99_MS else "FAIL"

        print(f"{prefix}  Iterations: {result.iterations}")
        print(f"{prefix}  Latency (ms): p50={result.p50:.3f}, p95={result.p95:.3f}, "
              f"p99={result.p99:.3f} [{target_status}]")
        print(f"{prefix}  Throughput: {result.throughput_ops:.1f} ops/sec")
        print(f"{prefix}  Memory: {result.memory_peak_mb:.2f} MB (peak)")

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of all benchmark results"""
        return {
            "benchmark": "csi_feedback",
            "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
            "setup": {"num_rb": self.num_rb, "num_rx": self.num_rx},
            "results": [r.to_dict() for r in self.results],
            "summary": {
                "total_benchmarks": len(self.results),
                "targets_met": sum(1 for r in self.results if r.p99 < TARGET_P99_MS),
            }
        }


def run_benchmarks(output_path: Optional[str] = None, quick: bool = False) -> Dict[str, Any]:
    """Run all CSI feedback benchmarks"""
    print("=" * 60)
    print("NR CSI Feedback Performance Benchmarks")
    print("=" * 60)

    benchmark = CSIBenchmark(
        num_rb=24 if quick else 52,
        warmup_iterations=1 if quick else 3,
        benchmark_iterations=5 if quick else 30,
    )

    benchmark.benchmark_pmi_search(port_counts=[4, 8] if quick else [4, 8, 16])
    benchmark.benchmark_cqi_selection()
    benchmark.benchmark_ri_selection()
    benchmark.benchmark_full_report()
    scaling = benchmark.benchmark_thread_scaling()

    summary = benchmark.get_summary()
    summary["thread_scaling_p50_ms"] = {str(k): round(v, 4) for k, v in scaling.items()}

    if output_path:
        with open(output_path, 'w') as f:
            json.dump(summary, f, indent=2)
        print(f"\nResults saved to: {output_path}")

    print("\n" + "=" * 60)
    print(f"Summary: {summary['summary']['targets_met']}/{summary['summary']['total_benchmarks']} "
          f"benchmarks met target (< {TARGET_P99_MS:.0f}ms p99)")
    print("=" * 60)

    return summary


if __name__ == "__main__":
    output_file = Path(__file__).parent / "results" / "csi_results.json"
    output_file.parent.mkdir(exist_ok=True)
    run_benchmarks(str(output_file))
