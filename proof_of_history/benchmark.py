"""
Tick throughput benchmark.

Measures how fast each hash algorithm produces ticks on one core and how fast
the parallel verifier checks them. The ratio between the two is what decides
whether a verifier can keep up with a producer.
"""
import argparse
import logging
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional

import psutil

from proof_of_history.crypto import ALGORITHMS, Digest, get_algorithm
from proof_of_history.poh import Ticks, verify

logger = logging.getLogger(__name__)


@dataclass
class BenchmarkResult:
    algorithm: str
    ticks: int
    produce_seconds: float
    verify_seconds: Optional[float] = None

    @property
    def ticks_per_second(self) -> float:
        return self.ticks / self.produce_seconds if self.produce_seconds else float('inf')

    @property
    def verified_per_second(self) -> Optional[float]:
        if self.verify_seconds is None:
            return None
        return self.ticks / self.verify_seconds if self.verify_seconds else float('inf')

    @property
    def speedup(self) -> Optional[float]:
        """Verification rate over production rate."""
        rate = self.verified_per_second
        if rate is None:
            return None
        return rate / self.ticks_per_second


def _produce(algorithm: Digest, count: int) -> List[bytes]:
    chain = Ticks(algorithm=algorithm)
    history = [chain.current]
    for _ in range(count):
        history.append(chain.next())
    return history


def benchmark_ticks(algorithm: Digest, count: int) -> BenchmarkResult:
    """Times `count` sequential ticks."""
    started = time.perf_counter()
    _produce(algorithm, count)
    return BenchmarkResult(algorithm.name, count, time.perf_counter() - started)


def benchmark_verify(algorithm: Digest, count: int,
                     max_workers: Optional[int] = None) -> BenchmarkResult:
    """Times producing `count` ticks and then verifying them."""
    started = time.perf_counter()
    history = _produce(algorithm, count)
    produced = time.perf_counter() - started

    started = time.perf_counter()
    verify(history, algorithm=algorithm, max_workers=max_workers)
    return BenchmarkResult(algorithm.name, count, produced, time.perf_counter() - started)


def run_benchmarks(count: int = 100_000, algorithms: Optional[Iterable[str]] = None,
                   max_workers: Optional[int] = None) -> List[BenchmarkResult]:
    names = list(algorithms) if algorithms else sorted(ALGORITHMS)
    results = []
    for name in names:
        algorithm = get_algorithm(name)
        result = benchmark_verify(algorithm, count, max_workers)
        logger.info(
            f"{algorithm.name:>10}: produce {result.ticks_per_second:,.0f} ticks/s, "
            f"verify {result.verified_per_second:,.0f} ticks/s ({result.speedup:.2f}x)"
        )
        results.append(result)
    return results


def main(argv=None):
    parser = argparse.ArgumentParser(description='Benchmark tick production and verification')
    parser.add_argument('--ticks', type=int, default=100_000, help='Ticks per algorithm')
    parser.add_argument('--algorithm', action='append',
                        help=f"Algorithm to run (repeatable; default all of {', '.join(sorted(ALGORITHMS))})")
    parser.add_argument('--workers', type=int, help='Verifier worker threads')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info(f"CPU cores: {psutil.cpu_count(logical=False)} physical, {psutil.cpu_count()} logical")
    run_benchmarks(args.ticks, args.algorithm, args.workers)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
