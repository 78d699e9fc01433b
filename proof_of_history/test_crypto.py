"""
Tests for the hash algorithm adapters and data commitments.
"""
import hashlib
import pickle

import blake3
import pytest
from Crypto.Hash import keccak

from proof_of_history.crypto import (
    ALGORITHMS,
    BLAKE3,
    KECCAK256,
    SHA256,
    SHA3_256,
    commit,
    generate_hash,
    get_algorithm,
)
from proof_of_history.events import EventLog, interval_schedule
from proof_of_history.poh import Ticks, tick


@pytest.mark.parametrize("algorithm,reference", [
    (SHA256, lambda d: hashlib.sha256(d).digest()),
    (SHA3_256, lambda d: hashlib.sha3_256(d).digest()),
    (KECCAK256, lambda d: keccak.new(digest_bits=256, data=d).digest()),
    (BLAKE3, lambda d: blake3.blake3(d).digest()),
])
def test_adapter_matches_library(algorithm, reference):
    state = algorithm.new()
    algorithm.update(state, b'Hello ')
    algorithm.update(state, b'World!')
    out = algorithm.finalize(state)
    assert out == reference(b'Hello World!')
    assert len(out) == algorithm.digest_size == 32
    assert algorithm.hash(b'Hello World!') == out


def test_keccak_is_not_sha3():
    assert KECCAK256.hash(b'') != SHA3_256.hash(b'')
    assert KECCAK256.hash(b'').hex().startswith('c5d2460186f7233c')


def test_zero_output():
    for algorithm in ALGORITHMS.values():
        assert algorithm.zero() == bytes(algorithm.digest_size)


@pytest.mark.parametrize("name,expected", [
    ("sha256", SHA256),
    ("SHA2-256", SHA256),
    ("SHA3-256", SHA3_256),
    ("Keccak256", KECCAK256),
    ("BLAKE3", BLAKE3),
])
def test_get_algorithm(name, expected):
    assert get_algorithm(name) is expected


def test_get_algorithm_unknown():
    with pytest.raises(ValueError, match="Unknown hash algorithm"):
        get_algorithm("md5")


def test_generate_hash_defaults_to_keccak():
    assert generate_hash(b'data') == KECCAK256.hash(b'data')
    assert commit(b'data', SHA256) == hashlib.sha256(b'data').digest()


def test_algorithms_pickle():
    for algorithm in ALGORITHMS.values():
        assert pickle.loads(pickle.dumps(algorithm)) == algorithm


class Sha512Half:
    """A plug-in that is not a HashAlgorithm: SHA-512 truncated to 32 bytes."""
    name = "sha512_256t"
    digest_size = 32

    def new(self):
        return hashlib.sha512()

    def update(self, state, data):
        state.update(data)

    def finalize(self, state):
        return state.digest()[:32]


def test_custom_digest_plugin():
    plugin = Sha512Half()
    chain = Ticks(algorithm=plugin)
    first = chain.next()
    assert first == hashlib.sha512(b'\x00' * 64).digest()[:32]
    assert tick(bytes(32), bytes(32), plugin) == first


def test_event_log():
    log = EventLog(SHA256)
    commitment = log.record(3, b'payload')
    assert commitment == hashlib.sha256(b'payload').digest()
    assert log.commitment(3) == commitment
    assert log(3, b'\xff' * 32) == commitment
    assert log(4, b'\xff' * 32) == bytes(32)
    assert log.scheduled(4) is None
    assert log.payload(3) == b'payload'
    assert 3 in log and len(log) == 1


def test_event_log_rejects_seed_and_duplicates():
    log = EventLog(SHA256)
    with pytest.raises(ValueError):
        log.record(0, b'x')
    log.record(1, b'x')
    with pytest.raises(ValueError):
        log.record(1, b'y')


def test_interval_schedule():
    schedule = interval_schedule(16, SHA256)
    assert schedule(15) is None
    assert schedule(16) == commit(b'event:16', SHA256)
    assert schedule(32) != schedule(16)
    disabled = interval_schedule(0)
    assert all(disabled(p) is None for p in range(1, 100))
    with pytest.raises(ValueError):
        interval_schedule(-1)
