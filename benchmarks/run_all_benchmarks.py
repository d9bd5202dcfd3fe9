#!/usr/bin/env python3
"""
NR CSI Feedback - Benchmark Runner

Runs the CSI selection benchmarks and writes JSON and HTML reports.
"""

import sys
import time
import json
import argparse
from pathlib import Path
from typing import Dict, Any
from datetime import datetime

from benchmark_csi import TARGET_P99_MS, run_benchmarks as run_csi_benchmarks


# Result name prefix -> report section title
SECTIONS = {
    "pmi_": "PMI Search",
    "cqi_": "CQI Selection",
    "ri_": "RI Selection",
    "full_report": "Full CSI Report",
}


def generate_html_report(results: Dict[str, Any], output_path: str):
    """Generate HTML report from benchmark results"""

    html_template = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>NR CSI Feedback Performance Report</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            max-width: 1200px;
            margin: 0 auto;
            padding: 20px;
            background: #f5f5f5;
        }}
        .header {{
            background: linear-gradient(135deg, #1f6f8b 0%, #2c3e50 100%);
            color: white;
            padding: 30px;
            border-radius: 10px;
            margin-bottom: 30px;
        }}
        .header h1 {{
            margin: 0;
        }}
        .card, .summary-item {{
            background: white;
            border-radius: 10px;
            padding: 20px;
            margin-bottom: 20px;
            box-shadow: 0 2px 10px rgba(0,0,0,0.1);
        }}
        .summary-grid {{
            display: grid;
            grid-template-columns: repeat(auto-fit, minmax(200px, 1fr));
            gap: 20px;
        }}
        .summary-item {{
            text-align: center;
        }}
        .summary-item .value {{
            font-size: 2em;
            font-weight: bold;
            color: #1f6f8b;
        }}
        table {{
            width: 100%;
            border-collapse: collapse;
        }}
        th, td {{
            padding: 12px;
            text-align: left;
            border-bottom: 1px solid #ddd;
        }}
        th {{
            background: #f8f9fa;
        }}
        .pass {{
            color: #28a745;
            font-weight: bold;
        }}
        .fail {{
            color: #dc3545;
            font-weight: bold;
        }}
        .footer {{
            text-align: center;
            color: #666;
            margin-top: 40px;
        }}
    </style>
</head>
<body>
    <div class="header">
        <h1>NR CSI Feedback Performance Report</h1>
        <p>Generated: {timestamp}</p>
    </div>

    <div class="summary-grid">
        <div class="summary-item">
            <div class="value">{total_benchmarks}</div>
            <div>Total Benchmarks</div>
        </div>
        <div class="summary-item">
            <div class="value">{targets_met}</div>
            <div>Targets Met</div>
        </div>
        <div class="summary-item">
            <div class="value">{avg_latency:.2f} ms</div>
            <div>Avg Latency</div>
        </div>
    </div>

    {sections}

    <div class="footer">
        <p>Target: selection latency &lt; {target:.0f}ms (p99)</p>
    </div>
</body>
</html>"""

    section_template = """
    <div class="card">
        <h2>{title}</h2>
        <table>
            <tr>
                <th>Benchmark</th>
                <th>Iterations</th>
                <th>p50 (ms)</th>
                <th>p95 (ms)</th>
                <th>p99 (ms)</th>
                <th>Peak Memory (MB)</th>
                <th>Target</th>
            </tr>
            {rows}
        </table>
    </div>"""

    csi_results = results.get("csi", {}).get("results", [])

    sections = []
    for prefix, title in SECTIONS.items():
        rows = []
        for r in csi_results:
            if not r["name"].startswith(prefix) or "workers" in r["name"]:
                continue
            target_class = "pass" if r.get("target_met", False) else "fail"
            rows.append(f"""
            <tr>
                <td>{r['name']}</td>
                <td>{r['iterations']}</td>
                <td>{r['latency_ms']['p50']:.3f}</td>
                <td>{r['latency_ms']['p95']:.3f}</td>
                <td>{r['latency_ms']['p99']:.3f}</td>
                <td>{r['memory_mb']['peak']:.2f}</td>
                <td class="{target_class}">{target_class.upper()}</td>
            </tr>""")
        if rows:
            sections.append(section_template.format(title=title, rows="\n".join(rows)))

    scaling = results.get("csi", {}).get("thread_scaling_p50_ms", {})
    if scaling:
        rows = [
            f"<tr><td>{workers}</td><td>{p50:.3f}</td></tr>"
            for workers, p50 in sorted(scaling.items(), key=lambda x: int(x[0]))
        ]
        sections.append(f"""
    <div class="card">
        <h2>SINR Evaluation Thread Scaling</h2>
        <table>
            <tr><th>Workers</th><th>p50 (ms)</th></tr>
            {"".join(rows)}
        </table>
    </div>""")

    latencies = [r["latency_ms"]["mean"] for r in csi_results]
    html = html_template.format(
        timestamp=results.get("timestamp", datetime.now().strftime("%Y-%m-%d %H:%M:%S")),
        total_benchmarks=len(csi_results),
        targets_met=sum(1 for r in csi_results if r.get("target_met", False)),
        avg_latency=sum(latencies) / len(latencies) if latencies else 0.0,
        target=TARGET_P99_MS,
        sections="\n".join(sections),
    )

    with open(output_path, 'w') as f:
        f.write(html)

    print(f"HTML report generated: {output_path}")


def run_all_benchmarks(
    output_dir: str = "results",
    quick: bool = False,
    generate_html: bool = True
) -> Dict[str, Any]:
    """Run all benchmarks and generate reports"""

    print("=" * 70)
    print("NR CSI Feedback - Performance Benchmark Suite")
    print("=" * 70)
    print(f"\nStart time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Output directory: {output_dir}")
    print("-" * 70)

    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    results = {
        "timestamp": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "version": "1.0.0",
    }

    start_time = time.time()

    try:
        results["csi"] = run_csi_benchmarks(str(output_path / "csi_results.json"), quick=quick)
    except Exception as e:
        print(f"  ERROR: {e}")
        results["csi"] = {"error": str(e)}

    total_time = time.time() - start_time
    results["total_runtime_seconds"] = round(total_time, 2)

    combined_path = output_path / "combined_results.json"
    with open(combined_path, 'w') as f:
        json.dump(results, f, indent=2)
    print(f"\nCombined results saved to: {combined_path}")

    if generate_html:
        generate_html_report(results, str(output_path / "performance_report.html"))

    print("\n" + "=" * 70)
    print(f"Total runtime: {total_time:.1f} seconds")
    print("=" * 70)

    return results


def main():
    parser = argparse.ArgumentParser(
        description="NR CSI Feedback Performance Benchmark Suite"
    )
    parser.add_argument(
        "--output-dir", "-o",
        default=str(Path(__file__).parent / "results"),
        help="Output directory for results"
    )
    parser.add_argument(
        "--quick",
        action="store_true",
        help="Smaller carrier and fewer iterations"
    )
    parser.add_argument(
        "--no-html",
        action="store_true",
        help="Skip HTML report generation"
    )

    args = parser.parse_args()

    results = run_all_benchmarks(
        output_dir=args.output_dir,
        quick=args.quick,
        generate_html=not args.no_html
    )

    return 0 if "error" not in results.get("csi", {}) else 1


if __name__ == "__main__":
    sys.exit(main())
