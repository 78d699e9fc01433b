"""
Runs a producer and a verifier side by side.

The producer thread creates ticks and sends the verifier blocks of them. Once
the last block is sent the threads synchronise and the two histories are
compared. The verifier needs a core of its own or it falls behind.
"""
import argparse
import logging
import sys
from pathlib import Path

import psutil

from proof_of_history.config import VERIFY_EXECUTORS, Config
from proof_of_history.crypto import ALGORITHMS
from proof_of_history.monitoring import PipelineMonitor
from proof_of_history.pipeline import run_pipeline
from proof_of_history.poh import ChainBroken

logger = logging.getLogger(__name__)


def build_config(args) -> Config:
    if args.config and Path(args.config).exists():
        config = Config.from_file(args.config)
    else:
        config = Config.default()

    # Override config with CLI arguments
    if args.algorithm:
        config.chain.algorithm = args.algorithm
    if args.seed is not None:
        config.chain.seed_text = args.seed
    if args.block_size:
        config.pipeline.block_size = args.block_size
    if args.blocks is not None:
        config.pipeline.num_blocks = args.blocks
    if args.data_interval is not None:
        config.pipeline.data_interval = args.data_interval
    if args.workers:
        config.pipeline.verify_workers = args.workers
    if args.executor:
        config.pipeline.verify_executor = args.executor
    if args.metrics_port:
        config.monitoring.enabled = True
        config.monitoring.port = args.metrics_port

    # Re-run the dataclass checks on the overridden values
    return Config.from_dict(config.to_dict())


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Produce and verify a proof of history')
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--algorithm', choices=sorted(ALGORITHMS), help='Hash algorithm')
    parser.add_argument('--seed', type=str, help='Seed text (empty for the zero seed)')
    parser.add_argument('--block-size', type=int, help='Ticks per block')
    parser.add_argument('--blocks', type=int, help='Number of blocks to produce')
    parser.add_argument('--data-interval', type=int,
                        help='Mix a data commitment into every Nth tick (0 disables)')
    parser.add_argument('--workers', type=int, help='Verifier workers')
    parser.add_argument('--executor', choices=VERIFY_EXECUTORS,
                        help='Verify on worker threads or worker processes')
    parser.add_argument('--metrics-port', type=int, help='Expose Prometheus metrics on this port')
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (ValueError, TypeError) as e:
        parser.error(str(e))

    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format=config.logging.format
    )

    if (psutil.cpu_count() or 1) < 2:
        logger.warning("Fewer than 2 CPU cores available; the verifier will fall behind")

    monitor = PipelineMonitor()
    if config.monitoring.enabled:
        monitor.start_server(config.monitoring.host, config.monitoring.port)

    try:
        result = run_pipeline(config, monitor=monitor)
    except ChainBroken as e:
        logger.error(f"History rejected: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        return 130
    finally:
        monitor.stop_server()

    if not result.consistent:
        logger.error("Producer and verifier histories differ")
        return 1

    ticks = len(result.verifier_history)
    rate = ticks / result.elapsed if result.elapsed else float('inf')
    logger.info(f"Verified {ticks} ticks in {result.blocks} blocks ({rate:,.0f} ticks/s)")
    logger.info(f"Seed: {result.seed.hex()}")
    if ticks:
        logger.info(f"Head: {result.verifier_history[-1].hex()}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
