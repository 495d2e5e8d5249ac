"""
Tests for flash loans: borrow, repay within the operation, or roll back.
"""
import pytest

from flash_trader.accounts import LiquidityPool, TokenAccount
from flash_trader.config import Config
from flash_trader.conftest import Actor, World, genesis_config
from flash_trader.crypto import derive_address
from flash_trader.errors import (
    FlashLoanNotRepaid,
    InsufficientBalance,
    InvalidAmount,
    InvalidInstruction,
    ReentrantOperation,
    Unauthorized,
)
from flash_trader.genesis import apply_genesis
from flash_trader.ledger import Ledger
from flash_trader.store import AccountStore


def pool_balance(world) -> int:
    return world.ledger.get_account(world.pool, LiquidityPool).balance


class TestFlashLoan:
    def test_exact_repayment_leaves_pool_unchanged(self, world):
        pool_before = pool_balance(world)
        borrower_before = world.balance(world.token_account(world.alice))

        receipt = world.flash_loan(world.alice, 1000, repay_amount=1000)

        assert pool_balance(world) == pool_before
        assert world.balance(world.token_account(world.alice)) == borrower_before
        assert receipt.result['fee'] == 0

    def test_unrepaid_loan_rolls_back(self, world):
        root = world.ledger.state_root
        pool_before = pool_balance(world)
        borrower_before = world.balance(world.token_account(world.alice))

        with pytest.raises(FlashLoanNotRepaid):
            world.flash_loan(world.alice, 1000)

        assert world.ledger.state_root == root
        assert pool_balance(world) == pool_before
        assert world.balance(world.token_account(world.alice)) == borrower_before

    def test_partial_repayment_rolls_back(self, world):
        pool_before = pool_balance(world)
        with pytest.raises(FlashLoanNotRepaid):
            world.flash_loan(world.alice, 1000, repay_amount=999)
        assert pool_balance(world) == pool_before

    def test_overpayment_kept_by_pool(self, world):
        pool_before = pool_balance(world)
        world.flash_loan(world.alice, 1000, repay_amount=1010)
        state = world.ledger.get_account(world.pool, LiquidityPool)
        assert state.balance == pool_before + 10
        assert state.fees_collected == 10

    def test_more_than_pool_holds(self, world):
        with pytest.raises(InsufficientBalance):
            world.flash_loan(world.alice, pool_balance(world) + 1, repay_amount=0)

    def test_zero_amount(self, world):
        with pytest.raises(InvalidAmount):
            world.flash_loan(world.alice, 0)

    def test_wrong_pool_authority(self, world):
        with pytest.raises(Unauthorized):
            world.submit('flash_loan', {
                'borrower': world.alice.identity,
                'liquidity_pool': world.pool,
                'pool_authority': world.bob.identity,
                'borrower_token_account': world.token_account(world.alice),
            }, {'amount': 10, 'repay_amount': 10}, signers=[world.alice])

    def test_borrower_must_own_token_account(self, world):
        with pytest.raises(Unauthorized):
            world.submit('flash_loan', {
                'borrower': world.alice.identity,
                'liquidity_pool': world.pool,
                'pool_authority': world.admin.identity,
                'borrower_token_account': world.token_account(world.bob),
            }, {'amount': 10, 'repay_amount': 10}, signers=[world.alice])


class TestFlashLoanReceiver:
    def test_receiver_repays(self, world):
        calls = []

        def receiver(session):
            calls.append((session.amount, session.fee))
            assert session.balance(world.token_account(world.alice)) >= session.amount
            session.repay()

        world.ledger.register_flash_receiver(world.alice.identity, receiver)
        pool_before = pool_balance(world)
        receipt = world.flash_loan(world.alice, 5000)

        assert calls == [(5000, 0)]
        assert receipt.result['repaid'] == 5000
        assert pool_balance(world) == pool_before

    def test_receiver_moves_funds_between_own_accounts(self, world):
        # A second token account owned by alice, created out of band
        side_account = derive_address('token', 'alice-side')
        uow = world.ledger.store.begin()
        uow.create(TokenAccount(side_account, {'owner': world.alice.identity, 'mint': world.mint}))
        uow.commit()

        def receiver(session):
            session.transfer(world.token_account(world.alice), side_account, session.amount)
            session.transfer(side_account, world.token_account(world.alice), session.amount)
            session.repay()

        world.ledger.register_flash_receiver(world.alice.identity, receiver)
        world.flash_loan(world.alice, 1000)
        assert world.balance(side_account) == 0

    def test_receiver_cannot_spend_others_funds(self, world):
        def receiver(session):
            session.transfer(world.token_account(world.bob), world.token_account(world.alice), 1)
            session.repay()

        world.ledger.register_flash_receiver(world.alice.identity, receiver)
        bob_before = world.balance(world.token_account(world.bob))
        with pytest.raises(Unauthorized):
            world.flash_loan(world.alice, 1000)
        assert world.balance(world.token_account(world.bob)) == bob_before

    def test_receiver_keeping_funds_rolls_back(self, world):
        world.ledger.register_flash_receiver(world.alice.identity, lambda session: None)
        pool_before = pool_balance(world)
        with pytest.raises(FlashLoanNotRepaid):
            world.flash_loan(world.alice, 1000)
        assert pool_balance(world) == pool_before

    def test_reentrant_call_rejected(self, world):
        seen = []

        def receiver(session):
            try:
                world.record_trade(world.alice)
            except ReentrantOperation as e:
                seen.append(e)
            session.repay()

        world.ledger.register_flash_receiver(world.alice.identity, receiver)
        world.flash_loan(world.alice, 1000)
        assert len(seen) == 1
        # The nested trade never happened
        assert world.ledger.describe_account(world.stats_account(world.alice)) is None

    def test_repay_amount_with_receiver_rejected(self, world):
        calls = []
        world.ledger.register_flash_receiver(world.alice.identity, calls.append)
        pool_before = pool_balance(world)
        with pytest.raises(InvalidInstruction):
            world.flash_loan(world.alice, 1000, repay_amount=1000)
        assert calls == []
        assert pool_balance(world) == pool_before

    def test_unregister(self, world):
        world.ledger.register_flash_receiver(world.alice.identity, lambda session: None)
        world.ledger.unregister_flash_receiver(world.alice.identity)
        world.flash_loan(world.alice, 1000, repay_amount=1000)

    def test_session_closed_after_loan(self, world):
        sessions = []

        def receiver(session):
            sessions.append(session)
            session.repay()

        world.ledger.register_flash_receiver(world.alice.identity, receiver)
        world.flash_loan(world.alice, 1000)
        with pytest.raises(RuntimeError):
            sessions[0].repay(1)


def test_fee_required(db, clock):
    config = Config.default()
    config.flash_loan.fee_bps = 30
    admin = Actor('admin')
    traders = {name: Actor(name) for name in ('alice', 'bob', 'carol')}
    apply_genesis(AccountStore(db), genesis_config(admin, traders), now=clock())
    world = World(Ledger(db=db, config=config, clock=clock), clock, admin, traders)

    pool_before = pool_balance(world)
    with pytest.raises(FlashLoanNotRepaid):
        world.flash_loan(world.alice, 10_000, repay_amount=10_000)

    # 0.3% of 10_000 is 30
    receipt = world.flash_loan(world.alice, 10_000, repay_amount=10_030)
    assert receipt.result['fee'] == 30
    state = world.ledger.get_account(world.pool, LiquidityPool)
    assert state.balance == pool_before + 30
    assert state.fees_collected == 30

    # Fees round up
    assert world.flash_loan(world.alice, 1, repay_amount=2).result['fee'] == 1
