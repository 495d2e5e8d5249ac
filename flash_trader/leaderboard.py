"""
LeaderboardRegistry: ranked, capacity-bounded trader scores with
archive-on-reset.

Entries are kept sorted by score (descending), ties going to the trader
recorded first. A full board only admits a score strictly above its lowest
entry; anything else is dropped without error, as are scores below the
board's threshold.
"""
import logging
from typing import Callable

from flash_trader.accounts import (
    Leaderboard,
    LeaderboardArchive,
    LeaderboardEntry,
    Mint,
    TraderStats,
    checked_add,
    checked_mul,
    require_u64,
)
from flash_trader.config import LeaderboardConfig
from flash_trader.context import OperationContext
from flash_trader.crypto import short_id
from flash_trader.errors import AccountMismatch, AccountRetired, InvalidAmount, Unauthorized
from flash_trader.store import UnitOfWork

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


# ==============================================================================
# SCORING
# ==============================================================================

def score_by_trade_count(stats: TraderStats) -> int:
    return stats.cycle_trade_count


def score_by_volume(stats: TraderStats) -> int:
    return stats.cycle_volume


# Both only count trades on the current board and never decrease while the
# trader stays on it.
SCORING_FUNCTIONS: dict[str, Callable[[TraderStats], int]] = {
    'trade_count': score_by_trade_count,
    'cumulative_volume': score_by_volume,
}


# ==============================================================================
# INSERTION POLICY
# ==============================================================================

def insert_entry(board: Leaderboard, trader: bytes, score: int) -> bool:
    """
    Offer a score to the board. Returns True if the board changed.
    """
    if score < board.reset_threshold:
        return False

    existing = board.find(trader)
    if existing is not None:
        if score <= existing.score:
            return False
        existing.score = score
        board.entries.sort(key=LeaderboardEntry.sort_key)
        return True

    if len(board.entries) >= board.capacity:
        if not board.entries or score <= board.entries[-1].score:
            return False
        evicted = board.entries.pop()
        logger.debug(f"Evicted {short_id(evicted.trader)} (score {evicted.score}) from leaderboard")

    board.entries.append(LeaderboardEntry(trader, score, board.next_seq))
    board.next_seq += 1
    board.entries.sort(key=LeaderboardEntry.sort_key)
    return True


def compute_rewards(entries: list[LeaderboardEntry], reward_pool: int, streaks: list[int] = None,
                    decay_after: int = 5, decay_bps: int = 8000) -> list[int]:
    """
    Split the pool pro rata by score, rounding each share down.

    A trader whose streak (consecutive resets ranked at) exceeds
    `decay_after` gets only `decay_bps` of its share. The withheld part is
    not redistributed.
    """
    total = sum(e.score for e in entries)
    if total == 0:
        return [0] * len(entries)
    if streaks is None:
        streaks = [0] * len(entries)
    rewards = []
    for entry, streak in zip(entries, streaks):
        reward = entry.score * reward_pool // total
        if streak > decay_after:
            reward = reward * decay_bps // BPS_DENOMINATOR
        rewards.append(reward)
    return rewards


# ==============================================================================
# REGISTRY
# ==============================================================================

class LeaderboardRegistry:
    def __init__(self, config: LeaderboardConfig, score_fn: Callable[[TraderStats], int] = None):
        self.config = config
        if score_fn is None:
            try:
                score_fn = SCORING_FUNCTIONS[config.scoring]
            except KeyError:
                raise ValueError(f"Unknown leaderboard scoring function: {config.scoring}")
        self.score_fn = score_fn

    def offer(self, uow: UnitOfWork, board: Leaderboard, trader: bytes, stats: TraderStats) -> bool:
        if board.retired:
            raise AccountRetired(f"Leaderboard {short_id(board.identity)} has been reset")
        recorded = insert_entry(board, trader, self.score_fn(stats))
        if recorded:
            uow.stage(board)
        return recorded

    def reward_pool(self, dex_volume: int, mint: Mint) -> int:
        if dex_volume < self.config.low_volume_cutoff:
            whole_tokens = self.config.low_volume_reward
        else:
            whole_tokens = self.config.high_volume_reward
        return checked_mul(whole_tokens, mint.unit, "reward pool")

    def initialize_leaderboard(self, ctx: OperationContext) -> dict:
        authority = ctx.account('authority')
        ctx.guard.require_signer(authority, 'authority')

        capacity = require_u64(ctx.param('capacity'), 'capacity')
        if capacity > self.config.max_capacity:
            raise InvalidAmount(f"Capacity {capacity} exceeds maximum {self.config.max_capacity}")
        threshold = require_u64(ctx.param('reset_threshold'), 'reset_threshold')

        mint = ctx.uow.load(ctx.account('mint'), Mint)
        board = ctx.uow.create(Leaderboard(ctx.account('leaderboard'), {
            'authority': authority,
            'mint': mint.identity,
            'capacity': capacity,
            'reset_threshold': threshold,
            'created_at': ctx.now,
        }))
        logger.info(f"Leaderboard {short_id(board.identity)} created (capacity {capacity})")
        return {'leaderboard': board.identity.hex(), 'capacity': capacity}

    def reset_leaderboard(self, ctx: OperationContext) -> dict:
        uow = ctx.uow
        authority = ctx.account('authority')
        board = uow.load(ctx.account('leaderboard'), Leaderboard)
        if board.retired:
            raise AccountRetired(f"Leaderboard {short_id(board.identity)} was already reset")
        if board.authority != authority:
            raise Unauthorized("Only the leaderboard authority can reset it")
        ctx.guard.require_authority(board.authority, 'leaderboard authority')

        new_threshold = require_u64(ctx.param('new_threshold'), 'new_threshold')
        dex_volume = require_u64(ctx.param('dex_volume', 0), 'dex_volume', positive=False)

        mint = uow.load(ctx.account('mint'), Mint)
        if board.mint != mint.identity:
            raise AccountMismatch("Mint reference does not match the leaderboard's mint")

        pool = self.reward_pool(dex_volume, mint)
        snapshot = [LeaderboardEntry.from_dict(e.to_dict()) for e in board.entries]
        streaks = [board.streaks.get(e.trader, 0) for e in snapshot]
        rewards = compute_rewards(snapshot, pool, streaks,
                                  self.config.streak_decay_after, self.config.streak_decay_bps)
        total_rewards = 0
        for reward in rewards:
            total_rewards = checked_add(total_rewards, reward, "reward total")

        archive = uow.create(LeaderboardArchive(ctx.account('archive'), {
            'source': board.identity,
            'entries': [e.to_dict() for e in snapshot],
            'capacity': board.capacity,
            'reset_threshold': board.reset_threshold,
            'archived_at': ctx.now,
            'reward_pool': pool,
            'rewards': rewards,
            'streaks': streaks,
        }))
        successor = uow.create(Leaderboard(ctx.account('new_leaderboard'), {
            'authority': board.authority,
            'mint': board.mint,
            'capacity': board.capacity,
            'reset_threshold': new_threshold,
            'created_at': ctx.now,
            'predecessor': board.identity,
            # Traders missing from this snapshot lose their streak
            'streaks': {e.trader: s + 1 for e, s in zip(snapshot, streaks)},
        }))

        board.retired = True
        board.successor = successor.identity
        uow.stage(board)

        logger.info(
            f"Leaderboard {short_id(board.identity)} reset: archived {len(snapshot)} entries "
            f"to {short_id(archive.identity)}, successor {short_id(successor.identity)}"
        )
        return {
            'archive': archive.identity.hex(),
            'leaderboard': successor.identity.hex(),
            'archived_entries': len(snapshot),
            'reward_pool': pool,
            'rewards_allocated': total_rewards,
        }
