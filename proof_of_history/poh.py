# proof_of_history/poh.py
"""
Proof of History:
- One tick = one hash of (previous tick || data commitment)
- Produced sequentially, verified in parallel
- Generic over the hash algorithm
"""
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

import psutil

from proof_of_history.crypto import DEFAULT_ALGORITHM, Digest

logger = logging.getLogger(__name__)

# (position, tick_hash) -> data commitment
DataSupplier = Callable[[int, bytes], bytes]

# Pairs per work unit when the caller does not pick a chunk size.
MIN_CHUNK_SIZE = 1024
CHUNKS_PER_WORKER = 4


class ChainBroken(Exception):
    """A tick does not follow from its predecessor."""

    def __init__(self, index: int, position: Optional[int] = None):
        self.index = index
        self.position = index if position is None else position
        super().__init__(f"Chain broken at index {index} (position {self.position})")


def tick(seed: bytes, data: bytes, algorithm: Digest = DEFAULT_ALGORITHM) -> bytes:
    """
    Computes one tick: the hash of `seed` followed by `data`.

    Args:
        seed: The chain seed, or the output of the previous tick.
        data: Commitment to any data associated with this tick. Use the
            all-zero output when there is none.

    Both arguments are fixed to the digest size so every tick costs the
    same single hash evaluation.
    """
    size = algorithm.digest_size
    if len(seed) != size or len(data) != size:
        raise ValueError(
            f"{algorithm.name} ticks take {size}-byte inputs, "
            f"got seed={len(seed)} data={len(data)}"
        )
    state = algorithm.new()
    algorithm.update(state, seed)
    algorithm.update(state, data)
    return algorithm.finalize(state)


class Ticks:
    """
    Keeps the output of the previous tick and feeds it to `tick` on each call
    to `next` or `next_with_data`.

    Iterating a `Ticks` object yields an endless stream of `next()` values.
    """

    def __init__(self, seed: Optional[bytes] = None, algorithm: Digest = DEFAULT_ALGORITHM):
        self.algorithm = algorithm
        self._zero = bytes(algorithm.digest_size)
        if seed is None:
            seed = self._zero
        if len(seed) != algorithm.digest_size:
            raise ValueError(f"Seed must be {algorithm.digest_size} bytes, got {len(seed)}")
        self.current = bytes(seed)

    def next(self) -> bytes:
        return self.next_with_data(self._zero)

    def next_with_data(self, data: bytes) -> bytes:
        self.current = tick(self.current, data, self.algorithm)
        return self.current

    def copy(self) -> 'Ticks':
        """An independent generator continuing from the same point."""
        return Ticks(self.current, self.algorithm)

    def __iter__(self):
        return self

    def __next__(self) -> bytes:
        return self.next()

    def __repr__(self):
        return f"Ticks({self.algorithm.name}, current={self.current.hex()[:16]}...)"


def ticks(seed: Optional[bytes] = None, algorithm: Digest = DEFAULT_ALGORITHM) -> Ticks:
    """
    Creates an endless generator of ticks chained from `seed`.

    >>> from proof_of_history.crypto import SHA256
    >>> chain = ticks(algorithm=SHA256)
    >>> first = chain.next()
    >>> len(first)
    32
    """
    return Ticks(seed, algorithm)


# --- For parallel verification ---
def _first_failure(window: Sequence[bytes], start: int, offset: int,
                   data: Optional[DataSupplier], algorithm: Digest) -> Optional[int]:
    """
    Checks the pairs ending at indices start+1 .. start+len(window)-1.

    `window` holds ticks[start:stop+1]; returns the index (in the full
    sequence) of the earliest failing tick, or None.
    """
    zero = bytes(algorithm.digest_size)
    prev = window[0]
    for i in range(1, len(window)):
        index = start + i
        current = window[i]
        commitment = zero if data is None else data(offset + index, current)
        if tick(prev, commitment, algorithm) != current:
            return index
        prev = current
    return None


def _chunk_size(pairs: int, workers: int) -> int:
    return max(MIN_CHUNK_SIZE, -(-pairs // (workers * CHUNKS_PER_WORKER)))


def first_invalid_index(ticks: Sequence[bytes],
                        data: Optional[DataSupplier] = None,
                        algorithm: Digest = DEFAULT_ALGORITHM,
                        offset: int = 0,
                        max_workers: Optional[int] = None,
                        chunk_size: Optional[int] = None,
                        executor: Optional[Executor] = None) -> Optional[int]:
    """
    Returns the index of the first tick that does not follow from its
    predecessor, or None if the whole sequence is valid.

    The adjacent pairs are split into independent chunks. Each chunk reports
    its own earliest failure and the results are reduced with `min`, so the
    reported index is always the earliest break regardless of scheduling.

    Args:
        ticks: The sequence to check. It is never modified.
        data: Maps a tick's position and hash to its data commitment. Called
            concurrently from worker threads; must not mutate shared state.
            With a process pool it must also pickle (a module-level function
            or a functools.partial of one). None means every commitment is zero.
        offset: Chain position of ticks[0]; positions passed to `data` are
            offset + index.
        max_workers: Size of the thread pool created when no executor is given.
        chunk_size: Pairs per work unit.
        executor: An existing executor to run the chunks on.
    """
    if max_workers is not None and max_workers < 1:
        raise ValueError("max_workers must be at least 1")
    if chunk_size is not None and chunk_size < 1:
        raise ValueError("chunk_size must be positive")

    count = len(ticks)
    pairs = count - 1
    if pairs < 1:
        return None

    workers = max_workers or psutil.cpu_count() or 1
    size = chunk_size or _chunk_size(pairs, workers)

    if pairs <= size:
        return _first_failure(ticks, 0, offset, data, algorithm)

    def submit_all(pool: Executor):
        futures = []
        for start in range(0, pairs, size):
            stop = min(start + size, pairs)
            window = ticks[start:stop + 1]
            futures.append(pool.submit(_first_failure, window, start, offset, data, algorithm))
        return [f.result() for f in futures]

    if executor is not None:
        results = submit_all(executor)
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = submit_all(pool)

    failures = [ix for ix in results if ix is not None]
    return min(failures, default=None)


def verify(ticks: Sequence[bytes],
           data: Optional[DataSupplier] = None,
           algorithm: Digest = DEFAULT_ALGORITHM,
           offset: int = 0,
           max_workers: Optional[int] = None,
           chunk_size: Optional[int] = None,
           executor: Optional[Executor] = None) -> None:
    """
    Verifies that each tick follows from its predecessor.

    Returns None for a valid sequence and raises ChainBroken with the index
    of the first invalid tick otherwise. Verification runs on a worker pool,
    which is what lets a verifier catch up with a producer hashing on a
    single core.
    """
    ix = first_invalid_index(ticks, data, algorithm, offset,
                             max_workers=max_workers, chunk_size=chunk_size,
                             executor=executor)
    if ix is not None:
        logger.debug(f"Tick {ix} (position {offset + ix}) does not follow its predecessor")
        raise ChainBroken(ix, offset + ix)


def is_valid(ticks: Sequence[bytes], data: Optional[DataSupplier] = None,
             algorithm: Digest = DEFAULT_ALGORITHM, **kwargs) -> bool:
    """Verify a tick sequence, answering with a bool."""
    return first_invalid_index(ticks, data, algorithm, **kwargs) is None


def generate(count: int, seed: Optional[bytes] = None,
             schedule: Optional[Callable[[int], Optional[bytes]]] = None,
             algorithm: Digest = DEFAULT_ALGORITHM) -> List[bytes]:
    """
    Produces `[seed, t1, ..., t_count]`.

    `schedule(position)` returns the commitment to mix into the tick at that
    chain position, or None for the zero commitment.
    """
    chain = Ticks(seed, algorithm)
    history = [chain.current]
    for position in range(1, count + 1):
        commitment = schedule(position) if schedule is not None else None
        if commitment is None:
            history.append(chain.next())
        else:
            history.append(chain.next_with_data(commitment))
    return history
