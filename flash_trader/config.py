"""
Configuration management for the ledger.
"""
import json
import os
from dataclasses import dataclass, asdict


@dataclass
class DatabaseConfig:
    """Database configuration."""
    path: str = "./ledger_data"
    write_buffer_size: int = 4 * 1024 * 1024  # 4MB
    max_open_files: int = 1000
    compression: str = "snappy"


@dataclass
class StakingConfig:
    """Staking reward and lock configuration."""
    reward_function: str = "linear"
    reward_rate_bps: int = 1000  # 10% per year
    max_lock_duration: int = 4 * 365 * 86400
    # Whole-token thresholds for tiers 1, 2 and 3
    tier_thresholds: tuple = (10, 100, 500)


@dataclass
class FlashLoanConfig:
    """Flash loan configuration."""
    fee_bps: int = 0


@dataclass
class LeaderboardConfig:
    """Leaderboard scoring and reward configuration."""
    scoring: str = "trade_count"
    max_capacity: int = 100
    # Reward pool in whole tokens, chosen by the dex volume reported at reset
    low_volume_cutoff: int = 1_000_000
    low_volume_reward: int = 50
    high_volume_reward: int = 500
    # Rewards of a trader ranked at more than `streak_decay_after` consecutive
    # resets are cut to `streak_decay_bps`
    streak_decay_after: int = 5
    streak_decay_bps: int = 8000


@dataclass
class ComputeConfig:
    """Per-instruction compute budget."""
    unit_limit: int = 200_000


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class Config:
    """Main configuration."""
    database: DatabaseConfig
    staking: StakingConfig
    flash_loan: FlashLoanConfig
    leaderboard: LeaderboardConfig
    compute: ComputeConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            database=DatabaseConfig(),
            staking=StakingConfig(),
            flash_loan=FlashLoanConfig(),
            leaderboard=LeaderboardConfig(),
            compute=ComputeConfig(),
            monitoring=MonitoringConfig(),
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        staking = dict(data.get('staking', {}))
        if 'tier_thresholds' in staking:
            staking['tier_thresholds'] = tuple(staking['tier_thresholds'])
        return cls(
            database=DatabaseConfig(**data.get('database', {})),
            staking=StakingConfig(**staking),
            flash_loan=FlashLoanConfig(**data.get('flash_loan', {})),
            leaderboard=LeaderboardConfig(**data.get('leaderboard', {})),
            compute=ComputeConfig(**data.get('compute', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {})),
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
            'database': asdict(self.database),
            'staking': asdict(self.staking),
            'flash_loan': asdict(self.flash_loan),
            'leaderboard': asdict(self.leaderboard),
            'compute': asdict(self.compute),
            'monitoring': asdict(self.monitoring),
        }
