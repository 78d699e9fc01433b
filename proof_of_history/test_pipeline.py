"""
Tests for the producer/verifier block pipeline.
"""
import os
import pickle
import threading
import time

import pytest

from proof_of_history.config import ChainConfig, Config, MonitoringConfig, LoggingConfig, PipelineConfig
from proof_of_history.crypto import KECCAK256, SHA256, generate_hash
from proof_of_history.events import interval_schedule
from proof_of_history.monitoring import PipelineMonitor
from proof_of_history.pipeline import (
    Block,
    BlockChannel,
    BlockProducer,
    BlockVerifier,
    run_pipeline,
)
from proof_of_history.poh import ChainBroken, Ticks, verify

ZERO = bytes(32)


def make_config(block_size=1000, num_blocks=10, algorithm="sha256", **pipeline):
    return Config(
        chain=ChainConfig(algorithm=algorithm),
        pipeline=PipelineConfig(block_size=block_size, num_blocks=num_blocks, **pipeline),
        monitoring=MonitoringConfig(),
        logging=LoggingConfig(),
    )


def make_blocks(count, size, seed=ZERO, schedule=None, algorithm=SHA256):
    chain = Ticks(seed, algorithm)
    blocks = []
    position = 1
    for _ in range(count):
        out, commitments = [], {}
        for p in range(position, position + size):
            commitment = schedule(p) if schedule else None
            if commitment is None:
                out.append(chain.next())
            else:
                commitments[p] = commitment
                out.append(chain.next_with_data(commitment))
        blocks.append(Block(position, tuple(out), commitments))
        position += size
    return blocks


def feed(channel, blocks):
    for block in blocks:
        channel.send(block)
    channel.close()


@pytest.fixture
def monitor():
    return PipelineMonitor()


def test_block_validation():
    with pytest.raises(ValueError):
        Block(1, ())
    with pytest.raises(ValueError):
        Block(0, (ZERO,))
    block = Block(5, (ZERO, ZERO))
    assert block.end == 7 and len(block) == 2


def test_channel_is_fifo_and_ends_on_close():
    channel = BlockChannel(capacity=3)
    blocks = [Block(i + 1, (bytes([i]) * 32,)) for i in range(3)]
    feed(channel, blocks)
    assert list(channel) == blocks
    assert channel.closed


def test_send_on_closed_channel():
    channel = BlockChannel()
    channel.close()
    with pytest.raises(RuntimeError):
        channel.send(Block(1, (ZERO,)))


def test_channel_applies_backpressure():
    channel = BlockChannel(capacity=1, poll_interval=0.01)
    channel.send(Block(1, (ZERO,)))
    waits = []

    def second_send():
        waits.append(channel.send(Block(2, (ZERO,))))

    sender = threading.Thread(target=second_send)
    sender.start()
    time.sleep(0.2)
    # Still blocked: the first block has not been consumed
    assert sender.is_alive()
    assert channel.depth() == 1

    receiver = channel.receive()
    assert next(receiver).start == 1
    sender.join(timeout=5)
    assert not sender.is_alive()
    assert waits[0] >= 0.15
    assert next(receiver).start == 2


def test_close_wakes_blocked_receiver():
    # A long poll interval: only close() itself can end the wait promptly
    channel = BlockChannel(capacity=1, poll_interval=30)
    received = []
    receiver = threading.Thread(target=lambda: received.extend(channel))
    receiver.start()
    time.sleep(0.1)
    assert receiver.is_alive()

    channel.close()
    receiver.join(timeout=2)
    assert not receiver.is_alive()
    assert received == []


def test_close_on_full_channel_keeps_queued_blocks():
    channel = BlockChannel(capacity=1)
    block = Block(1, (ZERO,))
    channel.send(block)
    channel.close()
    assert list(channel) == [block]


def test_send_gives_up_when_cancelled():
    channel = BlockChannel(capacity=1, poll_interval=0.01)
    channel.send(Block(1, (ZERO,)))
    cancel = threading.Event()
    cancel.set()
    assert channel.send(Block(2, (ZERO,)), cancel) is None


def test_verifier_accepts_valid_stream(monitor):
    schedule = interval_schedule(16, SHA256)
    blocks = make_blocks(4, 100, schedule=schedule)
    channel = BlockChannel(capacity=10)
    feed(channel, blocks)

    verifier = BlockVerifier(channel, ZERO, SHA256, monitor=monitor, chunk_size=16)
    verifier.start()
    history = verifier.result(timeout=30)

    assert history == [t for b in blocks for t in b.ticks]
    assert len(verifier.commitments) == 400 // 16
    assert monitor.value('poh_blocks_verified_total') == 4
    assert monitor.value('poh_verified_height') == 400


def test_verifier_detects_dropped_block(monitor):
    blocks = make_blocks(3, 50)
    channel = BlockChannel(capacity=10)
    # Renumber the third block as if it directly followed the first
    feed(channel, [blocks[0], Block(51, blocks[2].ticks)])

    cancel = threading.Event()
    verifier = BlockVerifier(channel, ZERO, SHA256, cancel=cancel, monitor=monitor)
    verifier.start()
    with pytest.raises(ChainBroken) as ctx:
        verifier.result(timeout=30)
    assert ctx.value.index == 0
    assert ctx.value.position == 51
    assert cancel.is_set()
    assert len(verifier.history) == 50
    assert monitor.value('poh_chain_broken_total') == 1


def test_verifier_detects_out_of_order_block():
    blocks = make_blocks(3, 20)
    channel = BlockChannel(capacity=10)
    feed(channel, [blocks[0], blocks[2], blocks[1]])

    verifier = BlockVerifier(channel, ZERO, SHA256)
    verifier.start()
    with pytest.raises(ChainBroken) as ctx:
        verifier.result(timeout=30)
    assert ctx.value.position == 21


def test_verifier_checks_first_block_against_seed():
    blocks = make_blocks(1, 20, seed=generate_hash(b'other', SHA256))
    channel = BlockChannel()
    feed(channel, blocks)

    verifier = BlockVerifier(channel, ZERO, SHA256)
    verifier.start()
    with pytest.raises(ChainBroken) as ctx:
        verifier.result(timeout=30)
    assert ctx.value.position == 1


def test_verifier_detects_tampering_inside_block():
    blocks = make_blocks(2, 100)
    ticks = list(blocks[1].ticks)
    ticks[40] = generate_hash(b'tampered', SHA256)
    channel = BlockChannel(capacity=10)
    feed(channel, [blocks[0], Block(101, tuple(ticks))])

    verifier = BlockVerifier(channel, ZERO, SHA256, chunk_size=8)
    verifier.start()
    with pytest.raises(ChainBroken) as ctx:
        verifier.result(timeout=30)
    assert ctx.value.index == 40
    assert ctx.value.position == 141


def test_verifier_needs_block_commitments():
    schedule = interval_schedule(10, SHA256)
    block = make_blocks(1, 30, schedule=schedule)[0]
    channel = BlockChannel()
    feed(channel, [Block(block.start, block.ticks)])

    verifier = BlockVerifier(channel, ZERO, SHA256)
    verifier.start()
    with pytest.raises(ChainBroken) as ctx:
        verifier.result(timeout=30)
    assert ctx.value.position == 10


def test_producer_publishes_blocks(monitor):
    channel = BlockChannel(capacity=10)
    seed = generate_hash(b'seed', SHA256)
    producer = BlockProducer(channel, 25, num_blocks=4, seed=seed, algorithm=SHA256,
                             schedule=interval_schedule(16, SHA256), monitor=monitor)
    producer.start()
    producer.join(timeout=30)

    blocks = list(channel)
    assert [b.start for b in blocks] == [1, 26, 51, 76]
    assert producer.history == [t for b in blocks for t in b.ticks]
    assert sorted(producer.commitments) == [16, 32, 48, 64, 80, 96]
    verify([seed] + producer.history, lambda p, _t: producer.commitments.get(p, ZERO), SHA256)
    assert monitor.value('poh_ticks_produced_total') == 100
    assert monitor.value('poh_blocks_produced_total') == 4


def test_producer_stops_when_cancelled():
    channel = BlockChannel(capacity=1, poll_interval=0.01)
    cancel = threading.Event()
    producer = BlockProducer(channel, 10, num_blocks=None, algorithm=SHA256, cancel=cancel)
    producer.start()
    # Nobody consumes: the producer fills the channel and then waits
    time.sleep(0.2)
    assert producer.is_alive()
    cancel.set()
    producer.join(timeout=5)
    assert not producer.is_alive()
    assert channel.closed
    assert producer.blocks_sent == 1
    assert producer.error is None


def test_pipeline_histories_match(monitor):
    result = run_pipeline(make_config(block_size=1000, num_blocks=10), monitor=monitor)

    assert result.blocks == 10
    assert len(result.producer_history) == 10_000
    assert result.consistent
    assert result.producer_history == result.verifier_history
    assert result.seed == SHA256.hash(b'Hello World!')
    assert monitor.value('poh_blocks_verified_total') == 10
    assert monitor.value('poh_chain_broken_total') == 0


def test_block_supplier_pickles():
    block = make_blocks(1, 40, schedule=interval_schedule(8, SHA256))[0]
    verifier = BlockVerifier(BlockChannel(), ZERO, SHA256)

    data = pickle.loads(pickle.dumps(verifier.data_supplier(block)))
    assert data(8, ZERO) == block.commitments[8]
    assert data(9, ZERO) == ZERO


def test_pipeline_on_process_pool():
    config = make_config(block_size=3000, num_blocks=3, verify_executor="process",
                         verify_workers=2, verify_chunk_size=500)
    result = run_pipeline(config)
    assert result.blocks == 3
    assert result.consistent


def test_verifier_rejects_tampering_on_process_pool():
    blocks = make_blocks(2, 2000, schedule=interval_schedule(16, SHA256))
    ticks = list(blocks[1].ticks)
    ticks[1500] = generate_hash(b'tampered', SHA256)
    channel = BlockChannel(capacity=3)
    feed(channel, [blocks[0], Block(2001, tuple(ticks), blocks[1].commitments)])

    verifier = BlockVerifier(channel, ZERO, SHA256, max_workers=2, chunk_size=300,
                             executor="process")
    verifier.start()
    with pytest.raises(ChainBroken) as ctx:
        verifier.result(timeout=60)
    assert ctx.value.position == 3501


def test_verifier_rejects_unknown_executor():
    with pytest.raises(ValueError):
        BlockVerifier(BlockChannel(), executor="gpu")


def test_pipeline_without_data_and_tiny_blocks():
    result = run_pipeline(make_config(block_size=1, num_blocks=50, data_interval=0,
                                      verify_workers=2))
    assert result.consistent
    history = [result.seed] + result.verifier_history
    verify(history, algorithm=SHA256)


def test_pipeline_stops_on_cancel():
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        result = run_pipeline(make_config(block_size=200, num_blocks=None), cancel=cancel)
    finally:
        timer.cancel()
    assert result.blocks > 0
    # The verifier drains everything that was sent before the stop
    assert result.consistent


def test_pipeline_rejects_tampering_producer():
    class TamperingProducer(BlockProducer):
        def produce_block(self):
            block = super().produce_block()
            if block.start == 201:
                ticks = list(block.ticks)
                ticks[0] = ZERO
                return Block(block.start, tuple(ticks), block.commitments)
            return block

    cancel = threading.Event()
    channel = BlockChannel()
    verifier = BlockVerifier(channel, ZERO, SHA256, cancel=cancel)
    producer = TamperingProducer(channel, 100, num_blocks=None, algorithm=SHA256, cancel=cancel)
    verifier.start()
    producer.start()

    with pytest.raises(ChainBroken) as ctx:
        verifier.result(timeout=30)
    assert ctx.value.position == 201
    producer.join(timeout=10)
    assert not producer.is_alive()
    assert len(verifier.history) == 200


@pytest.mark.skipif(not os.environ.get("POH_FULL_SCENARIO"),
                    reason="set POH_FULL_SCENARIO=1 to run 10 blocks of 1M Keccak ticks")
def test_full_scenario():
    config = Config.default()
    result = run_pipeline(config)
    assert config.chain.hash_algorithm() is KECCAK256
    assert result.blocks == 10
    assert len(result.verifier_history) == 10_000_000
    assert result.consistent
