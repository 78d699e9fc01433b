"""
Hash algorithm adapters for the proof of history chain.

Every algorithm is exposed through the same small capability
(``new`` / ``update`` / ``finalize``), so the tick function, the generator
and the verifier never need to know which digest they are driving.
"""
import hashlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, Protocol

import blake3
from Crypto.Hash import keccak


class Digest(Protocol):
    """Anything that can drive a chain: a fixed output size and new/update/finalize."""
    name: str
    digest_size: int

    def new(self) -> Any: ...

    def update(self, state: Any, data: bytes) -> None: ...

    def finalize(self, state: Any) -> bytes: ...


@dataclass(frozen=True)
class HashAlgorithm:
    """
    A fixed-output-size hash function.

    `factory` must return a fresh hashlib-style object (``update`` and
    ``digest``). Factories are plain module-level callables so algorithms
    can be pickled into process pools.
    """
    name: str
    digest_size: int
    factory: Callable[[], Any]

    def new(self):
        return self.factory()

    def update(self, state, data: bytes) -> None:
        state.update(data)

    def finalize(self, state) -> bytes:
        return state.digest()

    def hash(self, data: bytes) -> bytes:
        """One-shot digest of `data`."""
        state = self.factory()
        state.update(data)
        return state.digest()

    def zero(self) -> bytes:
        """The all-zero output, used as the default seed and default data."""
        return bytes(self.digest_size)


def _sha256():
    return hashlib.sha256()


def _sha3_256():
    return hashlib.sha3_256()


def _keccak256():
    return keccak.new(digest_bits=256)


def _blake3():
    return blake3.blake3()


SHA256 = HashAlgorithm("sha256", 32, _sha256)
SHA3_256 = HashAlgorithm("sha3_256", 32, _sha3_256)
KECCAK256 = HashAlgorithm("keccak256", 32, _keccak256)
BLAKE3 = HashAlgorithm("blake3", 32, _blake3)

DEFAULT_ALGORITHM = KECCAK256

ALGORITHMS: Dict[str, HashAlgorithm] = {
    alg.name: alg for alg in (SHA256, SHA3_256, KECCAK256, BLAKE3)
}


def get_algorithm(name: str) -> HashAlgorithm:
    """Look up a built-in algorithm, e.g. 'SHA3-256' or 'keccak256'."""
    key = name.strip().lower().replace("-", "_")
    # sha2_256 / sha3-256 style spellings
    if key == "sha2_256":
        key = "sha256"
    algorithm = ALGORITHMS.get(key)
    if algorithm is None:
        choices = ", ".join(sorted(ALGORITHMS))
        raise ValueError(f"Unknown hash algorithm '{name}' (choose from: {choices})")
    return algorithm


def generate_hash(data: bytes, algorithm: Digest = DEFAULT_ALGORITHM) -> bytes:
    """Generates a hash of `data`, Keccak-256 unless told otherwise."""
    state = algorithm.new()
    algorithm.update(state, data)
    return algorithm.finalize(state)


def commit(payload: bytes, algorithm: Digest = DEFAULT_ALGORITHM) -> bytes:
    """Turns an arbitrary payload into a fixed-size data commitment."""
    return generate_hash(payload, algorithm)
