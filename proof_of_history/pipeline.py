"""
Pipelined tick production and verification.

The producer thread runs the tick generator and hands fixed-size blocks to
the verifier thread over a bounded channel. A full channel stalls the
producer instead of buffering, so a verifier that falls behind is visible.
The verifier checks the boundary between consecutive blocks before the block
itself; a lost or reordered block is invisible to the intra-block check.
"""
import functools
import logging
import queue
import threading
import time
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from proof_of_history.config import VERIFY_EXECUTORS, Config
from proof_of_history.crypto import DEFAULT_ALGORITHM, Digest
from proof_of_history.events import Schedule, interval_schedule
from proof_of_history.monitoring import PipelineMonitor
from proof_of_history.poh import ChainBroken, Ticks, verify

logger = logging.getLogger(__name__)

# Queued by close() to wake a receiver blocked on an empty channel
_END_OF_STREAM = object()


@dataclass(frozen=True)
class Block:
    """A contiguous slice of a chain. `start` is the chain position of ticks[0]; the seed is position 0."""
    start: int
    ticks: Tuple[bytes, ...]
    commitments: Mapping[int, bytes] = field(default_factory=dict)

    def __post_init__(self):
        if not self.ticks:
            raise ValueError("A block holds at least one tick")
        if self.start < 1:
            raise ValueError("Blocks start after the seed (position >= 1)")

    @property
    def end(self) -> int:
        """Position just past the last tick."""
        return self.start + len(self.ticks)

    def __len__(self):
        return len(self.ticks)


class BlockChannel:
    """Bounded FIFO of blocks between one producer and one verifier."""

    def __init__(self, capacity: int = 1, poll_interval: float = 0.05):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._queue: "queue.Queue[Block]" = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self.poll_interval = poll_interval

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def depth(self) -> int:
        return self._queue.qsize()

    def send(self, block: Block, cancel: Optional[threading.Event] = None) -> Optional[float]:
        """
        Blocks while the channel is full. Returns the seconds spent waiting,
        or None if `cancel` was set before the block could be delivered.
        """
        if self._closed.is_set():
            raise RuntimeError("send on a closed channel")
        started = time.monotonic()
        while True:
            try:
                self._queue.put(block, timeout=self.poll_interval)
                return time.monotonic() - started
            except queue.Full:
                if cancel is not None and cancel.is_set():
                    return None

    def close(self):
        """End of stream: no more blocks will be sent. Never blocks."""
        self._closed.set()
        try:
            self._queue.put_nowait(_END_OF_STREAM)
        except queue.Full:
            # The receiver checks the flag once it has drained the queue
            pass

    def receive(self) -> Iterator[Block]:
        """Yields blocks in order until the channel is closed and drained."""
        while True:
            # Single consumer: an empty queue stays empty once closed
            if self._closed.is_set() and self._queue.empty():
                return
            block = self._queue.get()
            if block is _END_OF_STREAM:
                return
            yield block

    def __iter__(self):
        return self.receive()


class BlockProducer(threading.Thread):
    """Runs the tick generator and publishes blocks of `block_size` ticks."""

    def __init__(self, channel: BlockChannel, block_size: int,
                 num_blocks: Optional[int] = None,
                 seed: Optional[bytes] = None,
                 algorithm: Digest = DEFAULT_ALGORITHM,
                 schedule: Optional[Schedule] = None,
                 cancel: Optional[threading.Event] = None,
                 monitor: Optional[PipelineMonitor] = None):
        super().__init__(name="poh-producer", daemon=True)
        if block_size < 1:
            raise ValueError("block_size must be at least 1")
        self.channel = channel
        self.block_size = block_size
        self.num_blocks = num_blocks
        self.schedule = schedule
        self.cancel = cancel or threading.Event()
        self.monitor = monitor or PipelineMonitor()

        # Owned by this thread only
        self.ticks = Ticks(seed, algorithm)
        self.seed = self.ticks.current
        self.history: List[bytes] = []
        self.commitments: Dict[int, bytes] = {}
        self.blocks_sent = 0
        self.produced = 0
        self.error: Optional[BaseException] = None
        self._started_at = time.monotonic()

    def run(self):
        self._started_at = time.monotonic()
        try:
            self._produce()
        except Exception as e:
            logger.exception(f"Producer failed: {e}")
            self.error = e
            self.cancel.set()
        finally:
            self.channel.close()

    def _produce(self):
        while self.num_blocks is None or self.blocks_sent < self.num_blocks:
            if self.cancel.is_set():
                logger.info(f"Producer cancelled after {self.blocks_sent} blocks")
                return

            block = self.produce_block()
            wait = self.channel.send(block, self.cancel)
            if wait is None:
                logger.info(f"Producer cancelled while block {block.start}..{block.end} was pending")
                return

            self.history.extend(block.ticks)
            self.commitments.update(block.commitments)
            self.blocks_sent += 1
            self.monitor.record_produced(len(block), wait, self.channel.depth())
            if wait > 1.0:
                logger.warning(f"Verifier is falling behind: producer waited {wait:.2f}s for the channel")
            logger.info(
                f"{time.monotonic() - self._started_at:.2f}s: "
                f"Produced block {block.start}..{block.end}"
            )

    def produce_block(self) -> Block:
        """Advances the generator `block_size` times."""
        start = self.produced + 1
        chain = self.ticks
        schedule = self.schedule
        block_ticks = []
        commitments = {}
        for position in range(start, start + self.block_size):
            commitment = schedule(position) if schedule is not None else None
            if commitment is None:
                block_ticks.append(chain.next())
            else:
                commitments[position] = commitment
                block_ticks.append(chain.next_with_data(commitment))
        self.produced += self.block_size
        return Block(start, tuple(block_ticks), commitments)


def _commitment_at(commitments: Mapping[int, bytes], zero: bytes,
                   position: int, tick_hash: bytes) -> bytes:
    return commitments.get(position, zero)


class BlockVerifier(threading.Thread):
    """Consumes blocks in order and keeps an independently verified replica of the history."""

    def __init__(self, channel: BlockChannel,
                 seed: Optional[bytes] = None,
                 algorithm: Digest = DEFAULT_ALGORITHM,
                 cancel: Optional[threading.Event] = None,
                 monitor: Optional[PipelineMonitor] = None,
                 max_workers: Optional[int] = None,
                 chunk_size: Optional[int] = None,
                 executor: str = "thread"):
        super().__init__(name="poh-verifier", daemon=True)
        if executor not in VERIFY_EXECUTORS:
            raise ValueError(f"Unknown executor kind '{executor}'")
        self.executor = executor
        self.channel = channel
        self.algorithm = algorithm
        self.cancel = cancel or threading.Event()
        self.monitor = monitor or PipelineMonitor()
        self.max_workers = max_workers
        self.chunk_size = chunk_size

        self.zero = bytes(algorithm.digest_size)
        self.tail = seed if seed is not None else self.zero
        self.history: List[bytes] = []
        self.commitments: Dict[int, bytes] = {}
        self.error: Optional[BaseException] = None
        self._started_at = time.monotonic()

    def run(self):
        self._started_at = time.monotonic()
        try:
            with self._make_pool() as pool:
                for block in self.channel:
                    self.verify_block(block, pool)
        except ChainBroken as e:
            logger.error(f"Rejected history at position {e.position}: {e}")
            self.monitor.record_broken()
            self.error = e
            self.cancel.set()
        except Exception as e:
            logger.exception(f"Verifier failed: {e}")
            self.error = e
            self.cancel.set()

    def _make_pool(self) -> Executor:
        # Threads share one interpreter; processes verify on every core
        if self.executor == "process":
            return ProcessPoolExecutor(max_workers=self.max_workers)
        return ThreadPoolExecutor(max_workers=self.max_workers,
                                  thread_name_prefix="poh-verify")

    def data_supplier(self, block: Block):
        """Commitment lookup for `block`; picklable so process pools can use it."""
        return functools.partial(_commitment_at, dict(block.commitments), self.zero)

    def verify_block(self, block: Block, executor=None):
        """Checks the boundary, then the block, then appends it to the replica."""
        expected = len(self.history) + 1
        if block.start != expected:
            raise ChainBroken(0, expected)

        started = time.monotonic()
        data = self.data_supplier(block)

        # [previous tail (or seed), first tick]
        try:
            verify([self.tail, block.ticks[0]], data, self.algorithm, offset=block.start - 1)
        except ChainBroken:
            raise ChainBroken(0, block.start) from None
        verify(block.ticks, data, self.algorithm, offset=block.start,
               max_workers=self.max_workers, chunk_size=self.chunk_size,
               executor=executor)

        self.history.extend(block.ticks)
        self.commitments.update(block.commitments)
        self.tail = block.ticks[-1]

        latency = time.monotonic() - started
        self.monitor.record_verified(len(block), latency, len(self.history), self.channel.depth())
        logger.info(
            f"{time.monotonic() - self._started_at:.2f}s: "
            f"Verified block {block.start}..{block.end} in {latency:.2f}s"
        )

    def result(self, timeout: Optional[float] = None) -> List[bytes]:
        """Waits for the stream to end and returns the verified history."""
        self.join(timeout)
        if self.is_alive():
            raise TimeoutError("Verifier is still running")
        if self.error is not None:
            raise self.error
        return self.history


@dataclass
class PipelineResult:
    seed: bytes
    producer_history: List[bytes]
    verifier_history: List[bytes]
    blocks: int
    elapsed: float

    @property
    def consistent(self) -> bool:
        return self.producer_history == self.verifier_history


def run_pipeline(config: Config, monitor: Optional[PipelineMonitor] = None,
                 cancel: Optional[threading.Event] = None,
                 schedule: Optional[Schedule] = None) -> PipelineResult:
    """
    Runs one producer and one verifier until the producer has published
    `num_blocks` blocks (or `cancel` is set) and the verifier has drained
    the channel.

    Raises ChainBroken if the verifier rejects a block.
    """
    algorithm = config.chain.hash_algorithm()
    seed = config.chain.seed()
    settings = config.pipeline
    if schedule is None and settings.data_interval:
        schedule = interval_schedule(settings.data_interval, algorithm)

    monitor = monitor or PipelineMonitor()
    cancel = cancel or threading.Event()
    channel = BlockChannel(settings.channel_capacity)

    verifier = BlockVerifier(channel, seed, algorithm, cancel=cancel, monitor=monitor,
                             max_workers=settings.verify_workers,
                             chunk_size=settings.verify_chunk_size,
                             executor=settings.verify_executor)
    producer = BlockProducer(channel, settings.block_size, settings.num_blocks,
                             seed=seed, algorithm=algorithm, schedule=schedule,
                             cancel=cancel, monitor=monitor)

    logger.info(
        f"Starting pipeline: {algorithm.name}, blocks of {settings.block_size} ticks, "
        f"channel capacity {settings.channel_capacity}"
    )
    started = time.monotonic()
    verifier.start()
    producer.start()

    producer.join()
    verifier_history = verifier.result()
    if producer.error is not None:
        raise producer.error

    elapsed = time.monotonic() - started
    logger.info(f"Pipeline finished: {producer.blocks_sent} blocks in {elapsed:.2f}s")
    return PipelineResult(
        seed=seed,
        producer_history=producer.history,
        verifier_history=verifier_history,
        blocks=producer.blocks_sent,
        elapsed=elapsed,
    )
