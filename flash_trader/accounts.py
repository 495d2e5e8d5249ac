"""
Typed account state stored in the ledger.

Each account is persisted as an 8-byte discriminator followed by a msgpack
body. The discriminator is derived from the type name, so loading bytes
against the wrong type fails before any field is interpreted.
"""
import msgpack
from typing import Optional

from flash_trader.crypto import generate_hash, short_id
from flash_trader.errors import ArithmeticOverflow, InsufficientBalance, InvalidAmount, TypeMismatch

U64_MAX = 2 ** 64 - 1
I64_MAX = 2 ** 63 - 1
I64_MIN = -(2 ** 63)

DISCRIMINATOR_LENGTH = 8

# Whole-token conversion for display and tier thresholds (6 decimals)
TOKEN_DECIMALS = 6
TOKEN_UNIT = 10 ** TOKEN_DECIMALS


# ==============================================================================
# CHECKED ARITHMETIC
# ==============================================================================

def checked_add(a: int, b: int, what: str = "value") -> int:
    result = a + b
    if result > U64_MAX:
        raise ArithmeticOverflow(f"{what} overflows u64 ({a} + {b})")
    return result


def checked_sub(a: int, b: int, what: str = "balance") -> int:
    if b > a:
        raise InsufficientBalance(f"Insufficient {what}: have {a}, need {b}")
    return a - b


def checked_mul(a: int, b: int, what: str = "value") -> int:
    result = a * b
    if result > U64_MAX:
        raise ArithmeticOverflow(f"{what} overflows u64 ({a} * {b})")
    return result


def checked_add_i64(a: int, b: int, what: str = "timestamp") -> int:
    result = a + b
    if not I64_MIN <= result <= I64_MAX:
        raise ArithmeticOverflow(f"{what} overflows i64 ({a} + {b})")
    return result


def require_u64(value, name: str, positive: bool = True) -> int:
    """Validate an integer quantity supplied by a caller."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidAmount(f"{name} must be an integer")
    if value < 0 or (positive and value == 0):
        raise InvalidAmount(f"{name} must be {'positive' if positive else 'non-negative'}, got {value}")
    if value > U64_MAX:
        raise InvalidAmount(f"{name} exceeds u64 range")
    return value


# ==============================================================================
# BASE
# ==============================================================================

ACCOUNT_TYPES: dict[bytes, type] = {}


def account_type(cls):
    """Register an account class under its discriminator."""
    ACCOUNT_TYPES[cls.discriminator()] = cls
    return cls


class Account:
    """Base for every persisted account. Subclasses define to_dict()."""

    def __init__(self, identity: bytes):
        self.identity = identity

    @classmethod
    def discriminator(cls) -> bytes:
        return generate_hash(f"account:{cls.__name__}".encode())[:DISCRIMINATOR_LENGTH]

    def to_dict(self) -> dict:
        raise NotImplementedError

    def encode(self) -> bytes:
        return self.discriminator() + msgpack.packb(self.to_dict(), use_bin_type=True)

    @classmethod
    def decode(cls, identity: bytes, raw: bytes) -> 'Account':
        tag = raw[:DISCRIMINATOR_LENGTH]
        if tag != cls.discriminator():
            actual = ACCOUNT_TYPES.get(tag)
            actual_name = actual.__name__ if actual else "unknown"
            raise TypeMismatch(
                f"Account {short_id(identity)} is a {actual_name}, expected {cls.__name__}"
            )
        data = msgpack.unpackb(raw[DISCRIMINATOR_LENGTH:], raw=False)
        return cls(identity, data)

    def __eq__(self, other):
        return (
            type(self) is type(other)
            and self.identity == other.identity
            and self.to_dict() == other.to_dict()
        )

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.to_dict().items()
                           if not isinstance(v, (bytes, list, dict)))
        return f"{type(self).__name__}({short_id(self.identity)}, {fields})"


def decode_account(identity: bytes, raw: bytes) -> Account:
    """Decode an account of whatever type its discriminator names."""
    cls = ACCOUNT_TYPES.get(raw[:DISCRIMINATOR_LENGTH])
    if cls is None:
        raise TypeMismatch(f"Account {short_id(identity)} has an unknown discriminator")
    return cls.decode(identity, raw)


class TokenHolding(Account):
    """Any account that holds a token balance of a single mint."""
    mint: bytes
    balance: int


# ==============================================================================
# ACCOUNT TYPES
# ==============================================================================

@account_type
class DataAccount(Account):
    """Plain account created by `initialize`."""

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.authority: Optional[bytes] = data.get('authority')
        self.data = int(data.get('data', 0))

    def to_dict(self) -> dict:
        return {'authority': self.authority, 'data': self.data}


@account_type
class Mint(Account):
    """Fungible token definition. `supply` is the circulating supply."""

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.authority: Optional[bytes] = data.get('authority')
        self.supply = int(data.get('supply', 0))
        self.decimals = int(data.get('decimals', TOKEN_DECIMALS))
        if self.supply < 0:
            raise ValueError("Supply cannot be negative")

    @property
    def unit(self) -> int:
        return 10 ** self.decimals

    def to_dict(self) -> dict:
        return {'authority': self.authority, 'supply': self.supply, 'decimals': self.decimals}


@account_type
class TokenAccount(TokenHolding):

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.owner: Optional[bytes] = data.get('owner')
        self.mint: Optional[bytes] = data.get('mint')
        self.balance = int(data.get('balance', 0))
        if self.balance < 0:
            raise ValueError("Token balance cannot be negative")

    def to_dict(self) -> dict:
        return {'owner': self.owner, 'mint': self.mint, 'balance': self.balance}


@account_type
class TraderStats(Account):
    """
    Per-trader counters: lifetime totals, rolling 1/5/15 minute trade windows
    and the totals since the trader started trading on `cycle_board`.
    """

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.owner: Optional[bytes] = data.get('owner')
        self.trade_count = int(data.get('trade_count', 0))
        self.cumulative_volume = int(data.get('cumulative_volume', 0))
        self.one_min_count = int(data.get('one_min_count', 0))
        self.five_min_count = int(data.get('five_min_count', 0))
        self.fifteen_min_count = int(data.get('fifteen_min_count', 0))
        self.last_trade_time = int(data.get('last_trade_time', 0))
        self.cycle_board: Optional[bytes] = data.get('cycle_board')
        self.cycle_trade_count = int(data.get('cycle_trade_count', 0))
        self.cycle_volume = int(data.get('cycle_volume', 0))

    def to_dict(self) -> dict:
        return {
            'owner': self.owner,
            'trade_count': self.trade_count,
            'cumulative_volume': self.cumulative_volume,
            'one_min_count': self.one_min_count,
            'five_min_count': self.five_min_count,
            'fifteen_min_count': self.fifteen_min_count,
            'last_trade_time': self.last_trade_time,
            'cycle_board': self.cycle_board,
            'cycle_trade_count': self.cycle_trade_count,
            'cycle_volume': self.cycle_volume,
        }


class LeaderboardEntry:
    def __init__(self, trader: bytes, score: int, seq: int):
        self.trader = trader
        self.score = score
        self.seq = seq

    def to_dict(self) -> dict:
        return {'trader': self.trader, 'score': self.score, 'seq': self.seq}

    @staticmethod
    def from_dict(d: dict) -> 'LeaderboardEntry':
        return LeaderboardEntry(d['trader'], int(d['score']), int(d['seq']))

    def sort_key(self):
        # Highest score first; on ties the earliest-recorded trader wins
        return (-self.score, self.seq)

    def __eq__(self, other):
        return isinstance(other, LeaderboardEntry) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"LeaderboardEntry({short_id(self.trader)}, score={self.score}, seq={self.seq})"


@account_type
class Leaderboard(Account):

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.authority: Optional[bytes] = data.get('authority')
        self.mint: Optional[bytes] = data.get('mint')
        self.capacity = int(data.get('capacity', 10))
        self.reset_threshold = int(data.get('reset_threshold', 1))
        self.entries = [LeaderboardEntry.from_dict(e) for e in data.get('entries', [])]
        self.next_seq = int(data.get('next_seq', 0))
        self.created_at = int(data.get('created_at', 0))
        self.retired = bool(data.get('retired', False))
        self.successor: Optional[bytes] = data.get('successor')
        self.predecessor: Optional[bytes] = data.get('predecessor')
        # Consecutive resets each trader was ranked at, carried from the predecessor
        self.streaks: dict[bytes, int] = {k: int(v) for k, v in data.get('streaks', {}).items()}
        if len(self.entries) > self.capacity:
            raise ValueError("Leaderboard holds more entries than its capacity")

    def find(self, trader: bytes) -> Optional[LeaderboardEntry]:
        for entry in self.entries:
            if entry.trader == trader:
                return entry
        return None

    def to_dict(self) -> dict:
        return {
            'authority': self.authority,
            'mint': self.mint,
            'capacity': self.capacity,
            'reset_threshold': self.reset_threshold,
            'entries': [e.to_dict() for e in self.entries],
            'next_seq': self.next_seq,
            'created_at': self.created_at,
            'retired': self.retired,
            'successor': self.successor,
            'predecessor': self.predecessor,
            'streaks': dict(self.streaks),
        }


@account_type
class LeaderboardArchive(Account):
    """Snapshot of a leaderboard taken at reset. Never modified after creation."""

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.source: Optional[bytes] = data.get('source')
        self.entries = [LeaderboardEntry.from_dict(e) for e in data.get('entries', [])]
        self.capacity = int(data.get('capacity', 0))
        self.reset_threshold = int(data.get('reset_threshold', 0))
        self.archived_at = int(data.get('archived_at', 0))
        self.reward_pool = int(data.get('reward_pool', 0))
        self.rewards = [int(r) for r in data.get('rewards', [])]
        self.streaks = [int(s) for s in data.get('streaks', [])]

    def to_dict(self) -> dict:
        return {
            'source': self.source,
            'entries': [e.to_dict() for e in self.entries],
            'capacity': self.capacity,
            'reset_threshold': self.reset_threshold,
            'archived_at': self.archived_at,
            'reward_pool': self.reward_pool,
            'rewards': list(self.rewards),
            'streaks': list(self.streaks),
        }


@account_type
class StakingAccount(Account):

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.owner: Optional[bytes] = data.get('owner')
        self.mint: Optional[bytes] = data.get('mint')
        self.staked_amount = int(data.get('staked_amount', 0))
        self.lock_duration = int(data.get('lock_duration', 0))
        self.stake_start_time = int(data.get('stake_start_time', 0))
        self.accrued_reward = int(data.get('accrued_reward', 0))
        self.last_reward_time = int(data.get('last_reward_time', 0))
        self.allocated_amount = int(data.get('allocated_amount', 0))
        self.tier = int(data.get('tier', 0))
        self.total_rewards_paid = int(data.get('total_rewards_paid', 0))

    @property
    def active(self) -> bool:
        return self.staked_amount > 0

    @property
    def lock_expiry(self) -> int:
        return self.stake_start_time + self.lock_duration

    def to_dict(self) -> dict:
        return {
            'owner': self.owner,
            'mint': self.mint,
            'staked_amount': self.staked_amount,
            'lock_duration': self.lock_duration,
            'stake_start_time': self.stake_start_time,
            'accrued_reward': self.accrued_reward,
            'last_reward_time': self.last_reward_time,
            'allocated_amount': self.allocated_amount,
            'tier': self.tier,
            'total_rewards_paid': self.total_rewards_paid,
        }


@account_type
class LiquidityPool(TokenHolding):
    """Pooled liquidity lent out by flash loans and fed by stakers."""

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.authority: Optional[bytes] = data.get('authority')
        self.mint: Optional[bytes] = data.get('mint')
        self.balance = int(data.get('balance', 0))
        self.contributions: dict[bytes, int] = {
            k: int(v) for k, v in data.get('contributions', {}).items()
        }
        self.total_contributed = int(data.get('total_contributed', 0))
        self.fees_collected = int(data.get('fees_collected', 0))
        if self.balance < 0:
            raise ValueError("Pool balance cannot be negative")

    def share_of(self, owner: bytes) -> int:
        """Contributor's share of the pool in basis points."""
        if self.total_contributed == 0:
            return 0
        return self.contributions.get(owner, 0) * 10_000 // self.total_contributed

    def to_dict(self) -> dict:
        return {
            'authority': self.authority,
            'mint': self.mint,
            'balance': self.balance,
            'contributions': dict(self.contributions),
            'total_contributed': self.total_contributed,
            'fees_collected': self.fees_collected,
        }


@account_type
class Treasury(TokenHolding):

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.authority: Optional[bytes] = data.get('authority')
        self.mint: Optional[bytes] = data.get('mint')
        self.balance = int(data.get('balance', 0))
        if self.balance < 0:
            raise ValueError("Treasury balance cannot be negative")

    def to_dict(self) -> dict:
        return {'authority': self.authority, 'mint': self.mint, 'balance': self.balance}


@account_type
class BurnVault(TokenHolding):

    def __init__(self, identity: bytes, data: dict = None):
        super().__init__(identity)
        data = data or {}
        self.mint: Optional[bytes] = data.get('mint')
        self.balance = int(data.get('balance', 0))
        self.cumulative_burned = int(data.get('cumulative_burned', 0))

    def to_dict(self) -> dict:
        return {
            'mint': self.mint,
            'balance': self.balance,
            'cumulative_burned': self.cumulative_burned,
        }
