"""
StakingEngine: time-locked stakes that accrue rewards and determine a tier.
"""
import logging
from typing import Callable

from flash_trader import token
from flash_trader.accounts import (
    Mint,
    StakingAccount,
    TokenAccount,
    checked_add,
    checked_add_i64,
    checked_sub,
    require_u64,
)
from flash_trader.config import StakingConfig
from flash_trader.context import OperationContext
from flash_trader.crypto import short_id
from flash_trader.errors import AccountMismatch, InsufficientBalance, InvalidAmount, LockNotExpired, Unauthorized

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 31_536_000
BPS_DENOMINATOR = 10_000


# ==============================================================================
# REWARDS AND TIERS
# ==============================================================================

def linear_reward(staked_amount: int, elapsed: int, rate_bps: int) -> int:
    """
    Annual-rate reward pro rata over `elapsed` seconds, rounded up so any
    positive stake held for a positive time earns something.
    """
    if staked_amount <= 0 or elapsed <= 0 or rate_bps <= 0:
        return 0
    numerator = staked_amount * rate_bps * elapsed
    denominator = BPS_DENOMINATOR * SECONDS_PER_YEAR
    return -(-numerator // denominator)


REWARD_FUNCTIONS: dict[str, Callable[[int, int, int], int]] = {
    'linear': linear_reward,
}


def compute_tier(staked_amount: int, unit: int, thresholds=(10, 100, 500)) -> int:
    """Tier 0-3 from whole-token thresholds, `unit` being one whole token of the mint."""
    tier = 0
    for level, threshold in enumerate(thresholds, start=1):
        if staked_amount >= threshold * unit:
            tier = level
    return tier


# ==============================================================================
# ENGINE
# ==============================================================================

class StakingEngine:
    def __init__(self, config: StakingConfig, reward_fn: Callable[[int, int, int], int] = None):
        self.config = config
        if reward_fn is None:
            try:
                reward_fn = REWARD_FUNCTIONS[config.reward_function]
            except KeyError:
                raise ValueError(f"Unknown staking reward function: {config.reward_function}")
        self.reward_fn = reward_fn

    def pending_reward(self, staking: StakingAccount, now: int) -> int:
        """Reward earned since the last settlement, not yet credited."""
        if not staking.active:
            return 0
        since = max(staking.stake_start_time, staking.last_reward_time)
        return self.reward_fn(staking.staked_amount, max(0, now - since), self.config.reward_rate_bps)

    def settle(self, staking: StakingAccount, now: int):
        """Move the pending reward into accrued_reward and restart the clock."""
        staking.accrued_reward = checked_add(
            staking.accrued_reward, self.pending_reward(staking, now), "accrued reward"
        )
        staking.last_reward_time = now

    def refresh_tier(self, staking: StakingAccount, mint: Mint):
        staking.tier = compute_tier(staking.staked_amount, mint.unit, self.config.tier_thresholds)

    @staticmethod
    def make_dormant(staking: StakingAccount):
        staking.stake_start_time = 0
        staking.lock_duration = 0
        staking.last_reward_time = 0

    def _load_owned(self, ctx: OperationContext, owner: bytes) -> tuple[StakingAccount, TokenAccount]:
        token_account = ctx.uow.load(ctx.account('owner_token_account'), TokenAccount)
        if token_account.owner != owner:
            raise Unauthorized(f"Token account {short_id(token_account.identity)} is not owned by the signer")

        staking_id = ctx.account('staking_account')
        staking = ctx.uow.load_optional(staking_id, StakingAccount)
        if staking is None:
            return None, token_account
        if staking.owner != owner:
            raise Unauthorized(f"Staking account {short_id(staking_id)} belongs to another owner")
        if staking.mint != token_account.mint:
            raise AccountMismatch("Token account and staking account hold different mints")
        return staking, token_account

    def stake_tokens(self, ctx: OperationContext) -> dict:
        uow = ctx.uow
        owner = ctx.account('owner')
        ctx.guard.require_signer(owner, 'owner')

        amount = require_u64(ctx.param('amount'), 'amount')
        duration = require_u64(ctx.param('duration_seconds'), 'duration_seconds')
        if duration > self.config.max_lock_duration:
            raise InvalidAmount(
                f"Lock duration {duration}s exceeds maximum {self.config.max_lock_duration}s"
            )
        checked_add_i64(ctx.now, duration, "lock expiry")

        staking, token_account = self._load_owned(ctx, owner)
        if staking is None:
            staking = uow.create(StakingAccount(ctx.account('staking_account'), {
                'owner': owner,
                'mint': token_account.mint,
            }))
        elif staking.active:
            self.settle(staking, ctx.now)

        token_account.balance = checked_sub(token_account.balance, amount, "token balance")
        staking.staked_amount = checked_add(staking.staked_amount, amount, "staked amount")
        # Re-staking restarts the lock for the whole position
        staking.stake_start_time = ctx.now
        staking.lock_duration = duration
        staking.last_reward_time = ctx.now
        self.refresh_tier(staking, uow.load(staking.mint, Mint))
        uow.stage(token_account, staking)

        logger.info(
            f"{short_id(owner)} staked {amount} for {duration}s "
            f"(total {staking.staked_amount}, tier {staking.tier})"
        )
        return {
            'staked_amount': staking.staked_amount,
            'lock_expiry': staking.lock_expiry,
            'tier': staking.tier,
        }

    def unstake_tokens(self, ctx: OperationContext) -> dict:
        uow = ctx.uow
        owner = ctx.account('owner')
        ctx.guard.require_signer(owner, 'owner')
        amount = require_u64(ctx.param('amount'), 'amount')

        staking, token_account = self._load_owned(ctx, owner)
        if staking is None:
            raise InsufficientBalance(f"Nothing staked at {short_id(ctx.account('staking_account'))}")
        mint = uow.load(ctx.account('mint'), Mint)
        if mint.identity != staking.mint:
            raise AccountMismatch("Mint reference does not match the staked mint")

        if ctx.now < staking.lock_expiry:
            raise LockNotExpired(f"Stake is locked until {staking.lock_expiry}")
        if amount > staking.staked_amount:
            raise InsufficientBalance(
                f"Cannot unstake {amount}, only {staking.staked_amount} staked"
            )

        reward = checked_add(staking.accrued_reward, self.pending_reward(staking, ctx.now), "reward")
        staking.staked_amount -= amount
        staking.accrued_reward = 0
        staking.last_reward_time = ctx.now
        staking.total_rewards_paid = checked_add(staking.total_rewards_paid, reward, "rewards paid")

        token_account.balance = checked_add(token_account.balance, amount, "token balance")
        uow.stage(token_account)
        if reward:
            token.mint_to(uow, mint, token_account, reward)

        if not staking.active:
            self.make_dormant(staking)
        self.refresh_tier(staking, mint)
        uow.stage(staking)

        logger.info(f"{short_id(owner)} unstaked {amount} with reward {reward}")
        return {
            'amount': amount,
            'reward': reward,
            'payout': amount + reward,
            'staked_amount': staking.staked_amount,
            'tier': staking.tier,
        }
