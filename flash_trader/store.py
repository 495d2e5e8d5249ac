"""
AccountStore: typed, keyed persistent storage for ledger accounts.

Handlers never touch the database directly. They open a UnitOfWork on the
committed state root, load and stage accounts, and the unit of work commits
every staged account (plus trie nodes and the new root) in one LevelDB
batch. Dropping a unit of work without committing leaves the store exactly
as it was.
"""
import logging
from typing import Optional, Type, TypeVar

from flash_trader.accounts import Account
from flash_trader.crypto import short_id
from flash_trader.errors import (
    AccountAlreadyInitialized,
    AccountNotFound,
    ComputeBudgetExceeded,
    ReplayedInstruction,
    TypeMismatch,
)
from flash_trader.trie import StateTrie, BLANK_ROOT

logger = logging.getLogger(__name__)

STATE_ROOT_KEY = b'state:root'
PROCESSED_PREFIX = b'ix:'

A = TypeVar('A', bound=Account)


# ==============================================================================
# COMPUTE METERING
# ==============================================================================

class ComputeMeter:
    """Compute-unit budget for a single operation."""

    BASE_COST = 5000
    STORAGE_READ = 200
    STORAGE_WRITE = 1000
    ACCOUNT_CREATE = 1500
    SIGNATURE_CHECK = 300

    OPERATION_COSTS = {
        'initialize': 2000,
        'initialize_leaderboard': 3000,
        'record_trade': 4000,
        'reset_leaderboard': 12000,
        'stake_tokens': 6000,
        'unstake_tokens': 8000,
        'allocate_liquidity': 6000,
        'flash_loan': 15000,
        'buyback_and_burn': 8000,
        'fund_treasury': 4000,
    }

    def __init__(self, unit_limit: int = 200_000):
        self.unit_limit = unit_limit
        self.units_used = 0

    def charge(self, amount: int, operation: str = ""):
        self.units_used += amount
        if self.units_used > self.unit_limit:
            raise ComputeBudgetExceeded(
                f"Compute budget exceeded: {self.units_used}/{self.unit_limit} "
                f"(operation: {operation})"
            )


# ==============================================================================
# UNIT OF WORK
# ==============================================================================

class UnitOfWork:
    def __init__(self, store: 'AccountStore', meter: Optional[ComputeMeter] = None):
        self.store = store
        self.meter = meter or ComputeMeter()
        self.base_root = store.state_root
        self.trie = StateTrie(store.db, root_hash=self.base_root)
        self._loaded: dict[bytes, Account] = {}
        self._staged: dict[bytes, Account] = {}
        self._markers: list[bytes] = []
        self.closed = False

    def _check_open(self):
        if self.closed:
            raise RuntimeError("Unit of work already closed")

    def load(self, identity: bytes, expected_type: Type[A]) -> A:
        """Load an account, failing if it is missing or of another type."""
        account = self.load_optional(identity, expected_type)
        if account is None:
            raise AccountNotFound(f"No account at {short_id(identity)}")
        return account

    def load_optional(self, identity: bytes, expected_type: Type[A]) -> Optional[A]:
        self._check_open()
        cached = self._loaded.get(identity)
        if cached is not None:
            if type(cached) is not expected_type:
                raise TypeMismatch(
                    f"Account {short_id(identity)} is a {type(cached).__name__}, "
                    f"expected {expected_type.__name__}"
                )
            return cached

        self.meter.charge(ComputeMeter.STORAGE_READ, f"read_{expected_type.__name__}")
        raw = self.trie.get(identity)
        if raw is None:
            return None
        account = expected_type.decode(identity, raw)
        self._loaded[identity] = account
        return account

    def exists(self, identity: bytes) -> bool:
        self._check_open()
        if identity in self._loaded:
            return True
        self.meter.charge(ComputeMeter.STORAGE_READ, "exists")
        return self.trie.get(identity) is not None

    def create(self, account: A) -> A:
        """Register a brand-new account; its identity must be unused."""
        if self.exists(account.identity):
            raise AccountAlreadyInitialized(
                f"Account {short_id(account.identity)} is already initialized"
            )
        self.meter.charge(ComputeMeter.ACCOUNT_CREATE, f"create_{type(account).__name__}")
        self._loaded[account.identity] = account
        self._staged[account.identity] = account
        return account

    def stage(self, *accounts: Account):
        """Mark loaded accounts as modified so commit writes them."""
        self._check_open()
        for account in accounts:
            if self._loaded.get(account.identity) is not account:
                raise RuntimeError(
                    f"Account {short_id(account.identity)} was not loaded in this unit of work"
                )
            self._staged[account.identity] = account

    def mark_processed(self, instruction_id: bytes):
        if self.store.is_processed(instruction_id) or instruction_id in self._markers:
            raise ReplayedInstruction(f"Instruction {instruction_id.hex()[:16]} already processed")
        self._markers.append(instruction_id)

    @property
    def staged(self) -> list[Account]:
        return list(self._staged.values())

    def commit(self) -> bytes:
        """Write all staged accounts atomically. Returns the new state root."""
        self._check_open()
        for identity, account in self._staged.items():
            self.meter.charge(ComputeMeter.STORAGE_WRITE, f"write_{type(account).__name__}")
            self.trie.set(identity, account.encode())
        root = self.store._apply(self)
        self.closed = True
        return root

    def discard(self):
        self._loaded.clear()
        self._staged.clear()
        self._markers.clear()
        self.closed = True


# ==============================================================================
# ACCOUNT STORE
# ==============================================================================

class AccountStore:
    def __init__(self, db):
        self.db = db
        self.state_root = db.get(STATE_ROOT_KEY) or BLANK_ROOT

    def begin(self, meter: Optional[ComputeMeter] = None) -> UnitOfWork:
        return UnitOfWork(self, meter)

    def get(self, identity: bytes, expected_type: Type[A]) -> A:
        """Read committed state."""
        account = self.get_optional(identity, expected_type)
        if account is None:
            raise AccountNotFound(f"No account at {short_id(identity)}")
        return account

    def get_optional(self, identity: bytes, expected_type: Type[A]) -> Optional[A]:
        raw = StateTrie(self.db, root_hash=self.state_root).get(identity)
        if raw is None:
            return None
        return expected_type.decode(identity, raw)

    def get_raw(self, identity: bytes) -> Optional[bytes]:
        return StateTrie(self.db, root_hash=self.state_root).get(identity)

    def is_processed(self, instruction_id: bytes) -> bool:
        return self.db.exists(PROCESSED_PREFIX + instruction_id)

    def _apply(self, uow: UnitOfWork) -> bytes:
        if uow.base_root != self.state_root:
            raise RuntimeError("State advanced underneath an open unit of work")

        new_root = uow.trie.root_hash
        with self.db.write_batch() as batch:
            nodes = uow.trie.flush(batch)
            for instruction_id in uow._markers:
                batch.put(PROCESSED_PREFIX + instruction_id, new_root)
            batch.put(STATE_ROOT_KEY, new_root)

        self.state_root = new_root
        logger.debug(
            f"Committed {len(uow._staged)} accounts ({nodes} trie nodes), "
            f"root {new_root.hex()[:16]}"
        )
        return new_root
