"""
Configuration management for the tick pipeline.
"""
import json
import os
from typing import Optional
from dataclasses import dataclass, asdict

from proof_of_history.crypto import HashAlgorithm, get_algorithm

VERIFY_EXECUTORS = ("thread", "process")


@dataclass
class ChainConfig:
    """Chain configuration."""
    algorithm: str = "keccak256"
    seed_text: str = "Hello World!"  # seed = hash(seed_text); empty for the zero seed

    def __post_init__(self):
        get_algorithm(self.algorithm)

    def hash_algorithm(self) -> HashAlgorithm:
        return get_algorithm(self.algorithm)

    def seed(self) -> bytes:
        algorithm = self.hash_algorithm()
        if not self.seed_text:
            return algorithm.zero()
        return algorithm.hash(self.seed_text.encode('utf-8'))


@dataclass
class PipelineConfig:
    """Producer/verifier pipeline configuration."""
    block_size: int = 1_000_000
    num_blocks: Optional[int] = 10  # None runs until cancelled
    channel_capacity: int = 1
    data_interval: int = 16  # 0 disables data commitments
    verify_workers: Optional[int] = None
    verify_chunk_size: Optional[int] = None
    verify_executor: str = "thread"  # "thread" or "process"

    def __post_init__(self):
        if self.block_size < 1:
            raise ValueError("block_size must be at least 1")
        if self.num_blocks is not None and self.num_blocks < 0:
            raise ValueError("num_blocks must be >= 0")
        if self.channel_capacity < 1:
            raise ValueError("channel_capacity must be at least 1")
        if self.data_interval < 0:
            raise ValueError("data_interval must be >= 0")
        if self.verify_workers is not None and self.verify_workers < 1:
            raise ValueError("verify_workers must be at least 1")
        if self.verify_chunk_size is not None and self.verify_chunk_size < 1:
            raise ValueError("verify_chunk_size must be at least 1")
        if self.verify_executor not in VERIFY_EXECUTORS:
            raise ValueError(f"verify_executor must be one of {VERIFY_EXECUTORS}")


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class Config:
    """Main configuration."""
    chain: ChainConfig
    pipeline: PipelineConfig
    monitoring: MonitoringConfig
    logging: LoggingConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            chain=ChainConfig(),
            pipeline=PipelineConfig(),
            monitoring=MonitoringConfig(),
            logging=LoggingConfig()
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        return cls(
            chain=ChainConfig(**data.get('chain', {})),
            pipeline=PipelineConfig(**data.get('pipeline', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {})),
            logging=LoggingConfig(**data.get('logging', {}))
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'chain': asdict(self.chain),
            'pipeline': asdict(self.pipeline),
            'monitoring': asdict(self.monitoring),
            'logging': asdict(self.logging)
        }
