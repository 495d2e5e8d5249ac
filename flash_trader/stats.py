"""
TradeStatsTracker: per-trader counters updated on every trade.

Lifetime totals never reset. The cycle totals the leaderboard scores from
count only trades on the board the trader last traded on, so a reset
starts everyone from zero on the successor.
"""
import logging

from flash_trader.accounts import Leaderboard, TraderStats, checked_add, require_u64
from flash_trader.context import OperationContext
from flash_trader.crypto import short_id
from flash_trader.errors import AccountRetired, Unauthorized
from flash_trader.leaderboard import LeaderboardRegistry

logger = logging.getLogger(__name__)

ONE_MINUTE = 60
FIVE_MINUTES = 300
FIFTEEN_MINUTES = 900


def update_trade_windows(stats: TraderStats, now: int):
    """Roll the 1/5/15 minute counters: a gap of a full window restarts it at 1."""
    gap = now - stats.last_trade_time
    stats.one_min_count = 1 if gap >= ONE_MINUTE else checked_add(stats.one_min_count, 1, "window count")
    stats.five_min_count = 1 if gap >= FIVE_MINUTES else checked_add(stats.five_min_count, 1, "window count")
    stats.fifteen_min_count = 1 if gap >= FIFTEEN_MINUTES else checked_add(stats.fifteen_min_count, 1, "window count")
    stats.last_trade_time = now


def enter_board(stats: TraderStats, board: bytes):
    """Start a new scoring cycle when the trader moves to another leaderboard."""
    if stats.cycle_board != board:
        stats.cycle_board = board
        stats.cycle_trade_count = 0
        stats.cycle_volume = 0


class TradeStatsTracker:
    def __init__(self, leaderboards: LeaderboardRegistry):
        self.leaderboards = leaderboards

    def record_trade(self, ctx: OperationContext) -> dict:
        uow = ctx.uow
        trader = ctx.account('trader')
        ctx.guard.require_signer(trader, 'trader')
        volume = require_u64(ctx.param('volume', 0), 'volume', positive=False)

        board = uow.load(ctx.account('leaderboard'), Leaderboard)
        if board.retired:
            raise AccountRetired(f"Leaderboard {short_id(board.identity)} has been reset")

        stats_id = ctx.account('trader_stats')
        stats = uow.load_optional(stats_id, TraderStats)
        if stats is None:
            stats = uow.create(TraderStats(stats_id, {'owner': trader}))
            logger.debug(f"Created trader stats for {short_id(trader)}")
        elif stats.owner != trader:
            raise Unauthorized(f"Trader stats {short_id(stats_id)} belong to another trader")

        stats.trade_count = checked_add(stats.trade_count, 1, "trade count")
        stats.cumulative_volume = checked_add(stats.cumulative_volume, volume, "cumulative volume")
        enter_board(stats, board.identity)
        stats.cycle_trade_count = checked_add(stats.cycle_trade_count, 1, "trade count")
        stats.cycle_volume = checked_add(stats.cycle_volume, volume, "cumulative volume")
        update_trade_windows(stats, ctx.now)
        uow.stage(stats)

        ranked = self.leaderboards.offer(uow, board, trader, stats)
        entry = board.find(trader)
        return {
            'trade_count': stats.trade_count,
            'cumulative_volume': stats.cumulative_volume,
            'ranked': ranked,
            'rank': board.entries.index(entry) + 1 if entry else None,
        }
