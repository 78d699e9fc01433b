"""
Proof of History: a verifiable sequential clock built from a hash chain,
generic over the hash algorithm.
"""
from proof_of_history.crypto import (
    BLAKE3,
    DEFAULT_ALGORITHM,
    KECCAK256,
    SHA256,
    SHA3_256,
    HashAlgorithm,
    commit,
    get_algorithm,
)
from proof_of_history.poh import ChainBroken, Ticks, first_invalid_index, is_valid, tick, ticks, verify

__version__ = "0.1.0"
