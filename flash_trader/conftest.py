"""
Shared fixtures: a ledger on a temporary LevelDB with a controllable clock
and a small genesis (one mint, treasury, burn vault, pool and leaderboard).
"""
import pytest

from flash_trader.accounts import TokenAccount
from flash_trader.config import Config
from flash_trader.crypto import derive_address, generate_key_pair
from flash_trader.db import DB
from flash_trader.genesis import (
    apply_genesis,
    burn_vault_address,
    leaderboard_address,
    mint_address,
    pool_address,
    token_account_address,
    treasury_address,
)
from flash_trader.instruction import Instruction
from flash_trader.ledger import Ledger
from flash_trader.store import AccountStore

START_TIME = 1_700_000_000


class FakeClock:
    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


class Actor:
    def __init__(self, name: str):
        self.name = name
        self.key, self.identity = generate_key_pair()

    def __repr__(self):
        return f"Actor({self.name})"


class World:
    """A seeded ledger plus shortcuts for building and submitting instructions."""

    def __init__(self, ledger: Ledger, clock: FakeClock, admin: Actor, traders: dict):
        self.ledger = ledger
        self.clock = clock
        self.admin = admin
        self.traders = traders
        self.mint = mint_address('FLTR')
        self.treasury = treasury_address(self.mint)
        self.burn_vault = burn_vault_address(self.mint)
        self.pool = pool_address(self.mint)
        self.leaderboard = leaderboard_address(self.mint, 'main')

    def __getattr__(self, name):
        traders = self.__dict__.get('traders', {})
        if name in traders:
            return traders[name]
        raise AttributeError(name)

    def token_account(self, actor: Actor) -> bytes:
        return token_account_address(actor.identity, self.mint)

    def staking_account(self, actor: Actor) -> bytes:
        return derive_address('stake', actor.identity, self.mint)

    def stats_account(self, actor: Actor) -> bytes:
        return derive_address('stats', actor.identity)

    def balance(self, identity: bytes) -> int:
        return self.ledger.get_account(identity, TokenAccount).balance

    def instruction(self, operation: str, accounts: dict, params: dict = None, signers=()) -> Instruction:
        ix = Instruction(operation, accounts, params)
        for signer in signers:
            ix.sign(signer.key)
        return ix

    def submit(self, operation: str, accounts: dict, params: dict = None, signers=()):
        return self.ledger.process(self.instruction(operation, accounts, params, signers))

    # Operation shortcuts

    def record_trade(self, trader: Actor, volume: int = 0, leaderboard: bytes = None):
        params = {'volume': volume} if volume else {}
        return self.submit('record_trade', {
            'trader': trader.identity,
            'trader_stats': self.stats_account(trader),
            'leaderboard': leaderboard or self.leaderboard,
        }, params, signers=[trader])

    def stake(self, owner: Actor, amount: int, duration: int):
        return self.submit('stake_tokens', {
            'owner': owner.identity,
            'staking_account': self.staking_account(owner),
            'owner_token_account': self.token_account(owner),
        }, {'amount': amount, 'duration_seconds': duration}, signers=[owner])

    def unstake(self, owner: Actor, amount: int):
        return self.submit('unstake_tokens', {
            'owner': owner.identity,
            'staking_account': self.staking_account(owner),
            'owner_token_account': self.token_account(owner),
            'mint': self.mint,
        }, {'amount': amount}, signers=[owner])

    def allocate(self, owner: Actor, amount: int = None):
        params = {} if amount is None else {'amount': amount}
        return self.submit('allocate_liquidity', {
            'owner': owner.identity,
            'staking_account': self.staking_account(owner),
            'liquidity_pool': self.pool,
        }, params, signers=[owner])

    def flash_loan(self, borrower: Actor, amount: int, repay_amount: int = None):
        params = {'amount': amount}
        if repay_amount is not None:
            params['repay_amount'] = repay_amount
        return self.submit('flash_loan', {
            'borrower': borrower.identity,
            'liquidity_pool': self.pool,
            'pool_authority': self.admin.identity,
            'borrower_token_account': self.token_account(borrower),
        }, params, signers=[borrower])

    def buyback_and_burn(self, amount: int, signer: Actor = None):
        signer = signer or self.admin
        return self.submit('buyback_and_burn', {
            'authority': signer.identity,
            'treasury': self.treasury,
            'burn_vault': self.burn_vault,
            'mint': self.mint,
        }, {'amount': amount}, signers=[signer])

    def reset_leaderboard(self, new_threshold: int = 1, dex_volume: int = None, signer: Actor = None,
                          leaderboard: bytes = None, tag: str = 'next'):
        signer = signer or self.admin
        leaderboard = leaderboard or self.leaderboard
        new_board = derive_address('leaderboard', leaderboard, tag)
        archive = derive_address('archive', leaderboard, tag)
        params = {'new_threshold': new_threshold}
        if dex_volume is not None:
            params['dex_volume'] = dex_volume
        receipt = self.submit('reset_leaderboard', {
            'authority': signer.identity,
            'leaderboard': leaderboard,
            'new_leaderboard': new_board,
            'mint': self.mint,
            'archive': archive,
        }, params, signers=[signer])
        return receipt, new_board, archive


GENESIS_BALANCES = {
    'admin': 1_000_000,
    'alice': 10_000,
    'bob': 10_000,
    'carol': 10_000,
}


def genesis_config(admin: Actor, traders: dict) -> dict:
    holders = {'admin': admin, **traders}
    return {
        'mints': [{'name': 'FLTR', 'authority': admin.identity.hex()}],
        'token_accounts': [
            {'owner': holders[name].identity.hex(), 'mint': 'FLTR', 'balance': balance}
            for name, balance in GENESIS_BALANCES.items()
        ],
        'treasuries': [{'authority': admin.identity.hex(), 'mint': 'FLTR', 'balance': 100_000}],
        'liquidity_pools': [{'authority': admin.identity.hex(), 'mint': 'FLTR', 'balance': 250_000}],
        'leaderboards': [{'authority': admin.identity.hex(), 'mint': 'FLTR', 'name': 'main',
                          'capacity': 10, 'reset_threshold': 1}],
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Config.default()


@pytest.fixture
def db(tmp_path):
    database = DB(str(tmp_path / 'ledger'))
    yield database
    database.close()


@pytest.fixture
def world(db, clock, config):
    admin = Actor('admin')
    traders = {name: Actor(name) for name in ('alice', 'bob', 'carol')}
    apply_genesis(AccountStore(db), genesis_config(admin, traders), now=clock())
    ledger = Ledger(db=db, config=config, clock=clock)
    return World(ledger, clock, admin, traders)
