"""
Data commitments mixed into the chain.

Payloads live outside the chain; only their commitments influence the
hashes. Commitments are keyed by chain position. Two positions can share a
tick hash (e.g. repeated all-zero ticks), so tick hashes are never used as
keys.
"""
from typing import Callable, Dict, Optional

from proof_of_history.crypto import DEFAULT_ALGORITHM, Digest, commit

Schedule = Callable[[int], Optional[bytes]]


class EventLog:
    """Position -> (payload, commitment) registry usable as a verifier data supplier."""

    def __init__(self, algorithm: Digest = DEFAULT_ALGORITHM):
        self.algorithm = algorithm
        self.zero = bytes(algorithm.digest_size)
        self._payloads: Dict[int, bytes] = {}
        self._commitments: Dict[int, bytes] = {}

    def record(self, position: int, payload: bytes) -> bytes:
        """Registers `payload` at `position` and returns its commitment."""
        if position < 1:
            raise ValueError("Position 0 is the seed and carries no data")
        if position in self._commitments:
            raise ValueError(f"Position {position} already has data recorded")
        commitment = commit(payload, self.algorithm)
        self._payloads[position] = payload
        self._commitments[position] = commitment
        return commitment

    def commitment(self, position: int) -> bytes:
        return self._commitments.get(position, self.zero)

    def payload(self, position: int) -> Optional[bytes]:
        return self._payloads.get(position)

    def scheduled(self, position: int) -> Optional[bytes]:
        """Commitment at `position`, or None where nothing was recorded."""
        return self._commitments.get(position)

    def __call__(self, position: int, tick_hash: bytes) -> bytes:
        return self._commitments.get(position, self.zero)

    def __contains__(self, position: int) -> bool:
        return position in self._commitments

    def __len__(self):
        return len(self._commitments)


def interval_schedule(interval: int, algorithm: Digest = DEFAULT_ALGORITHM) -> Schedule:
    """
    A commitment at every `interval`-th position, derived from the position
    itself. Stateless, so producer and verifier can both evaluate it.
    """
    if interval < 0:
        raise ValueError("interval must be >= 0")

    def schedule(position: int) -> Optional[bytes]:
        if interval == 0 or position % interval:
            return None
        return commit(b"event:%d" % position, algorithm)

    return schedule
