"""
Tests for staking, unstaking, rewards and tiers.
"""
import pytest

from flash_trader.accounts import TOKEN_UNIT, Mint, StakingAccount
from flash_trader.crypto import derive_address
from flash_trader.errors import (
    AccountMismatch,
    InsufficientBalance,
    InvalidAmount,
    LockNotExpired,
    TypeMismatch,
    Unauthorized,
)
from flash_trader.staking import SECONDS_PER_YEAR, compute_tier, linear_reward

HOUR = 3600


class TestRewardMath:
    def test_zero_cases(self):
        assert linear_reward(0, HOUR, 1000) == 0
        assert linear_reward(100, 0, 1000) == 0
        assert linear_reward(100, HOUR, 0) == 0

    def test_rounds_up(self):
        # 100 * 1000 * 3601 / (10000 * 31536000) is far below 1
        assert linear_reward(100, HOUR + 1, 1000) == 1

    def test_full_year(self):
        assert linear_reward(1_000 * TOKEN_UNIT, SECONDS_PER_YEAR, 1000) == 100 * TOKEN_UNIT

    def test_tiers(self):
        assert compute_tier(0, TOKEN_UNIT) == 0
        assert compute_tier(10 * TOKEN_UNIT - 1, TOKEN_UNIT) == 0
        assert compute_tier(10 * TOKEN_UNIT, TOKEN_UNIT) == 1
        assert compute_tier(100 * TOKEN_UNIT, TOKEN_UNIT) == 2
        assert compute_tier(499 * TOKEN_UNIT, TOKEN_UNIT) == 2
        assert compute_tier(500 * TOKEN_UNIT, TOKEN_UNIT) == 3


class TestStake:
    def test_stake_creates_account(self, world):
        before = world.balance(world.token_account(world.alice))
        world.stake(world.alice, 100, HOUR)

        staking = world.ledger.get_account(world.staking_account(world.alice), StakingAccount)
        assert staking.owner == world.alice.identity
        assert staking.mint == world.mint
        assert staking.staked_amount == 100
        assert staking.stake_start_time == world.clock.now
        assert staking.lock_duration == HOUR
        assert staking.lock_expiry == world.clock.now + HOUR
        assert world.balance(world.token_account(world.alice)) == before - 100

    def test_restake_accumulates_and_resets_lock(self, world):
        world.stake(world.alice, 100, HOUR)
        world.clock.advance(HOUR // 2)
        world.stake(world.alice, 50, 2 * HOUR)

        staking = world.ledger.get_account(world.staking_account(world.alice), StakingAccount)
        assert staking.staked_amount == 150
        assert staking.stake_start_time == world.clock.now
        assert staking.lock_duration == 2 * HOUR
        # The half hour on the first 100 is kept
        assert staking.accrued_reward == linear_reward(100, HOUR // 2, 1000)

    def test_tier_updates(self, world):
        world.stake(world.alice, 10 * TOKEN_UNIT, HOUR)
        assert world.ledger.get_account(world.staking_account(world.alice), StakingAccount).tier == 1
        world.stake(world.alice, 490 * TOKEN_UNIT, HOUR)
        assert world.ledger.get_account(world.staking_account(world.alice), StakingAccount).tier == 3

    def test_tier_uses_mint_decimals(self, db, clock):
        from flash_trader.config import Config
        from flash_trader.conftest import Actor, World, genesis_config
        from flash_trader.genesis import apply_genesis
        from flash_trader.ledger import Ledger
        from flash_trader.store import AccountStore

        admin = Actor('admin')
        traders = {name: Actor(name) for name in ('alice', 'bob', 'carol')}
        genesis = genesis_config(admin, traders)
        genesis['mints'][0]['decimals'] = 2
        apply_genesis(AccountStore(db), genesis, now=clock())
        world = World(Ledger(db=db, config=Config.default(), clock=clock), clock, admin, traders)

        # Ten whole tokens of a 2-decimal mint
        world.stake(world.alice, 10 * 100, HOUR)
        assert world.ledger.get_account(world.staking_account(world.alice), StakingAccount).tier == 1
        world.clock.advance(HOUR)
        world.unstake(world.alice, 1)
        assert world.ledger.get_account(world.staking_account(world.alice), StakingAccount).tier == 0

    def test_insufficient_tokens(self, world):
        balance = world.balance(world.token_account(world.alice))
        with pytest.raises(InsufficientBalance):
            world.stake(world.alice, balance + 1, HOUR)

    @pytest.mark.parametrize("amount,duration", [(0, HOUR), (100, 0), (100, 5 * 365 * 86400)])
    def test_invalid_amounts(self, world, amount, duration):
        with pytest.raises(InvalidAmount):
            world.stake(world.alice, amount, duration)

    def test_token_account_of_another_owner(self, world):
        with pytest.raises(Unauthorized):
            world.submit('stake_tokens', {
                'owner': world.alice.identity,
                'staking_account': world.staking_account(world.alice),
                'owner_token_account': world.token_account(world.bob),
            }, {'amount': 1, 'duration_seconds': HOUR}, signers=[world.alice])

    def test_staking_account_of_another_owner(self, world):
        world.stake(world.alice, 100, HOUR)
        with pytest.raises(Unauthorized):
            world.submit('stake_tokens', {
                'owner': world.bob.identity,
                'staking_account': world.staking_account(world.alice),
                'owner_token_account': world.token_account(world.bob),
            }, {'amount': 1, 'duration_seconds': HOUR}, signers=[world.bob])

    def test_owner_must_sign(self, world):
        with pytest.raises(Unauthorized):
            world.submit('stake_tokens', {
                'owner': world.alice.identity,
                'staking_account': world.staking_account(world.alice),
                'owner_token_account': world.token_account(world.alice),
            }, {'amount': 1, 'duration_seconds': HOUR}, signers=[world.bob])


class TestUnstake:
    def test_partial_unstake_after_lock(self, world):
        account = world.token_account(world.alice)
        start_balance = world.balance(account)
        supply_before = world.ledger.get_account(world.mint, Mint).supply

        world.stake(world.alice, 100, HOUR)
        world.clock.advance(HOUR + 1)
        receipt = world.unstake(world.alice, 50)

        staking = world.ledger.get_account(world.staking_account(world.alice), StakingAccount)
        reward = receipt.result['reward']
        assert staking.staked_amount == 50
        assert reward > 0
        assert world.balance(account) == start_balance - 100 + 50 + reward
        assert staking.last_reward_time == world.clock.now
        assert staking.total_rewards_paid == reward
        # Rewards are newly minted
        assert world.ledger.get_account(world.mint, Mint).supply == supply_before + reward

    def test_locked(self, world):
        world.stake(world.alice, 100, HOUR)
        world.clock.advance(HOUR - 1)
        with pytest.raises(LockNotExpired):
            world.unstake(world.alice, 50)

    def test_lock_checked_before_amount(self, world):
        world.stake(world.alice, 100, HOUR)
        with pytest.raises(LockNotExpired):
            world.unstake(world.alice, 1_000)

    def test_more_than_staked(self, world):
        world.stake(world.alice, 100, HOUR)
        world.clock.advance(HOUR)
        with pytest.raises(InsufficientBalance):
            world.unstake(world.alice, 101)

    def test_full_unstake_goes_dormant(self, world):
        world.stake(world.alice, 100, HOUR)
        world.clock.advance(2 * HOUR)
        world.unstake(world.alice, 100)

        staking = world.ledger.get_account(world.staking_account(world.alice), StakingAccount)
        assert staking.staked_amount == 0
        assert not staking.active
        assert staking.lock_duration == 0
        assert staking.stake_start_time == 0
        assert staking.tier == 0

    def test_dormant_account_can_stake_again(self, world):
        world.stake(world.alice, 100, HOUR)
        world.clock.advance(2 * HOUR)
        world.unstake(world.alice, 100)
        world.stake(world.alice, 20, HOUR)

        staking = world.ledger.get_account(world.staking_account(world.alice), StakingAccount)
        assert staking.staked_amount == 20
        assert staking.stake_start_time == world.clock.now

    def test_reward_not_paid_twice(self, world):
        world.stake(world.alice, 1_000 * TOKEN_UNIT, HOUR)
        world.clock.advance(HOUR)
        first = world.unstake(world.alice, 1).result['reward']
        second = world.unstake(world.alice, 1).result['reward']
        assert first > 0
        assert second == 0

    def test_pending_reward_query(self, world):
        world.stake(world.alice, 1_000 * TOKEN_UNIT, HOUR)
        world.clock.advance(SECONDS_PER_YEAR)
        assert world.ledger.pending_reward(world.staking_account(world.alice)) == 100 * TOKEN_UNIT

    def test_nothing_staked(self, world):
        with pytest.raises(InsufficientBalance):
            world.unstake(world.alice, 1)

    def test_mint_must_match(self, world):
        other_mint = derive_address('mint', 'OTHER')
        uow = world.ledger.store.begin()
        uow.create(Mint(other_mint, {'authority': world.admin.identity}))
        uow.commit()

        world.stake(world.alice, 100, HOUR)
        world.clock.advance(HOUR)
        with pytest.raises(AccountMismatch):
            world.submit('unstake_tokens', {
                'owner': world.alice.identity,
                'staking_account': world.staking_account(world.alice),
                'owner_token_account': world.token_account(world.alice),
                'mint': other_mint,
            }, {'amount': 1}, signers=[world.alice])

    def test_mint_reference_of_wrong_type(self, world):
        world.stake(world.alice, 100, HOUR)
        world.clock.advance(HOUR)
        with pytest.raises(TypeMismatch):
            world.submit('unstake_tokens', {
                'owner': world.alice.identity,
                'staking_account': world.staking_account(world.alice),
                'owner_token_account': world.token_account(world.alice),
                'mint': world.treasury,
            }, {'amount': 1}, signers=[world.alice])

    def test_failed_unstake_changes_nothing(self, world):
        world.stake(world.alice, 100, HOUR)
        root = world.ledger.state_root
        with pytest.raises(LockNotExpired):
            world.unstake(world.alice, 10)
        assert world.ledger.state_root == root


def test_unknown_reward_function():
    from flash_trader.config import StakingConfig
    from flash_trader.staking import StakingEngine
    with pytest.raises(ValueError):
        StakingEngine(StakingConfig(reward_function='quadratic'))


def test_custom_reward_function(db, clock):
    from flash_trader.config import Config
    from flash_trader.conftest import Actor, World, genesis_config
    from flash_trader.genesis import apply_genesis
    from flash_trader.ledger import Ledger
    from flash_trader.store import AccountStore

    admin = Actor('admin')
    traders = {name: Actor(name) for name in ('alice', 'bob', 'carol')}
    apply_genesis(AccountStore(db), genesis_config(admin, traders), now=clock())
    ledger = Ledger(db=db, config=Config.default(), clock=clock,
                    reward_fn=lambda staked, elapsed, rate: 7)
    world = World(ledger, clock, admin, traders)

    world.stake(world.alice, 100, HOUR)
    world.clock.advance(HOUR)
    assert world.unstake(world.alice, 100).result['reward'] == 7
