#!/usr/bin/env python3
"""Scan pipeline benchmark CLI.

Usage:
    python scripts/benchmark_pipeline.py [--scans 20] [--ocr-latency 0.05]

Runs mock scans through the controller and reports per-phase stats and the
bottleneck phase.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from app.job_backends import InMemoryJobBackend
from app.job_store import JobStatus, JobStore
from app.metrics import MetricsCollector
from app.mock_services import InMemoryResultSaver, MockAnalyzer, MockContextProvider, MockTextExtractor
from app.scan_controller import ScanController, ScanRequest
from app.token_optimizer import default_budget


async def _run(args: argparse.Namespace) -> dict[str, object]:
    collector = MetricsCollector(capacity=max(100, args.scans * 16))
    saver = InMemoryResultSaver()
    controller = ScanController(
        store=JobStore(InMemoryJobBackend()),
        collector=collector,
        budget=default_budget(max_items=args.max_items),
        extractor=MockTextExtractor(latency_s=args.ocr_latency),
        context_provider=MockContextProvider(latency_s=args.context_latency),
        analyzer=MockAnalyzer(latency_s=args.analyzer_latency),
        saver=saver,
        deadline_s=args.deadline,
    )
    requests = [
        ScanRequest(image=f"bench-image-{i}".encode(), user_id="demo" if i % 2 else "vegan")
        for i in range(args.scans)
    ]
    snapshots = await asyncio.gather(*(controller.run(r) for r in requests))
    summary = collector.summary()
    summary["final"] = sum(1 for s in snapshots if s.status is JobStatus.FINAL)
    summary["failed"] = sum(1 for s in snapshots if s.status is JobStatus.FAILED)
    summary["saved"] = saver.save_calls
    return summary


def main() -> None:
    parser = argparse.ArgumentParser(description="Scan pipeline benchmark")
    parser.add_argument("--scans", type=int, default=20, help="Concurrent mock scans")
    parser.add_argument("--ocr-latency", type=float, default=0.05)
    parser.add_argument("--context-latency", type=float, default=0.02)
    parser.add_argument("--analyzer-latency", type=float, default=0.1)
    parser.add_argument("--deadline", type=float, default=30.0)
    parser.add_argument("--max-items", type=int, default=60)
    parser.add_argument("--json", action="store_true", help="Print the raw summary as JSON")
    args = parser.parse_args()

    summary = asyncio.run(_run(args))
    if args.json:
        print(json.dumps(summary, ensure_ascii=False, indent=2))
    else:
        print(f"Ran {args.scans} scans: final={summary['final']} failed={summary['failed']} saved={summary['saved']}\n")
        for stats in summary["phases"]:
            print(
                f"  {stats['phase']:10s}  n={stats['count']:4d}  P50={stats['p50_ms']:8.1f}ms  "
                f"P95={stats['p95_ms']:8.1f}ms  max={stats['max_ms']:8.1f}ms"
            )
        print(f"\nBottleneck: {summary['bottleneck']}")

    sys.exit(0 if summary["failed"] == 0 else 1)


if __name__ == "__main__":
    main()
