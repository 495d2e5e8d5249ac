"""
LiquidityPoolManager: moves staked funds into the shared pool.
"""
import logging

from flash_trader.accounts import LiquidityPool, Mint, StakingAccount, checked_add, require_u64
from flash_trader.context import OperationContext
from flash_trader.crypto import short_id
from flash_trader.errors import AccountMismatch, InsufficientBalance, Unauthorized
from flash_trader.staking import StakingEngine

logger = logging.getLogger(__name__)


class LiquidityPoolManager:
    def __init__(self, staking: StakingEngine):
        self.staking = staking

    def allocate_liquidity(self, ctx: OperationContext) -> dict:
        uow = ctx.uow
        owner = ctx.account('owner')
        ctx.guard.require_signer(owner, 'owner')

        staking = uow.load(ctx.account('staking_account'), StakingAccount)
        if staking.owner != owner:
            raise Unauthorized(f"Staking account {short_id(staking.identity)} belongs to another owner")
        pool = uow.load(ctx.account('liquidity_pool'), LiquidityPool)
        if pool.mint != staking.mint:
            raise AccountMismatch("Liquidity pool and staking account hold different mints")

        allocatable = staking.staked_amount
        if allocatable == 0:
            raise InsufficientBalance("No staked funds to allocate")
        amount = ctx.param('amount')
        amount = allocatable if amount is None else require_u64(amount, 'amount')
        if amount > allocatable:
            raise InsufficientBalance(f"Cannot allocate {amount}, only {allocatable} staked")

        # Rewards earned on the allocated portion up to now are kept
        self.staking.settle(staking, ctx.now)
        staking.staked_amount -= amount
        staking.allocated_amount = checked_add(staking.allocated_amount, amount, "allocated amount")
        if not staking.active:
            self.staking.make_dormant(staking)
        self.staking.refresh_tier(staking, uow.load(staking.mint, Mint))

        pool.balance = checked_add(pool.balance, amount, "pool balance")
        pool.contributions[owner] = checked_add(pool.contributions.get(owner, 0), amount, "contribution")
        pool.total_contributed = checked_add(pool.total_contributed, amount, "total contributed")
        uow.stage(staking, pool)

        logger.info(
            f"{short_id(owner)} allocated {amount} to pool {short_id(pool.identity)} "
            f"(pool balance {pool.balance})"
        )
        return {
            'amount': amount,
            'pool_balance': pool.balance,
            'staked_amount': staking.staked_amount,
            'share_bps': pool.share_of(owner),
        }
