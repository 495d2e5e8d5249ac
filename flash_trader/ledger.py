"""
Ledger: the single entry point that applies signed instructions to account
state.

Each instruction is applied in isolation: shape checks, signature
verification, a compute budget, then exactly one handler running inside
a unit of work. Either every account change the handler staged is
committed together with the instruction's replay marker, or nothing is.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Optional, Type

from flash_trader import instruction as ops
from flash_trader.accounts import (
    Account,
    BurnVault,
    DataAccount,
    LiquidityPool,
    Mint,
    StakingAccount,
    Treasury,
    decode_account,
    require_u64,
)
from flash_trader.auth import AuthorizationGuard
from flash_trader.buyback import BuybackBurnEngine
from flash_trader.config import Config
from flash_trader.context import OperationContext
from flash_trader.crypto import short_id
from flash_trader.db import DB
from flash_trader.errors import (
    InvalidInstruction,
    ReentrantOperation,
    Unauthorized,
    ValidationError,
)
from flash_trader.flash_loan import FlashLoanEngine, FlashLoanSession
from flash_trader.instruction import Instruction
from flash_trader.leaderboard import LeaderboardRegistry
from flash_trader.liquidity import LiquidityPoolManager
from flash_trader.monitoring import LedgerMonitor
from flash_trader.staking import StakingEngine
from flash_trader.stats import TradeStatsTracker
from flash_trader.store import AccountStore, ComputeMeter

logger = logging.getLogger(__name__)


@dataclass
class Receipt:
    """Outcome of a committed instruction."""
    operation: str
    instruction_id: bytes
    state_root: bytes
    compute_units: int
    result: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'operation': self.operation,
            'instruction_id': self.instruction_id.hex(),
            'state_root': self.state_root.hex(),
            'compute_units': self.compute_units,
            'result': self.result,
        }


class Ledger:
    def __init__(self, db_path: str = None, db: DB = None, config: Config = None,
                 clock: Callable[[], float] = None, monitor: LedgerMonitor = None,
                 reward_fn: Callable[[int, int, int], int] = None,
                 score_fn: Callable = None):
        self.config = config or Config.default()
        if db:
            self.db = db
        elif db_path:
            self.db = DB(db_path)
        elif config is not None:
            self.db = DB.from_config(self.config.database)
        else:
            raise ValueError("Either db_path, a DB object or a config must be provided.")

        self.store = AccountStore(self.db)
        self.clock = clock or time.time

        self.leaderboards = LeaderboardRegistry(self.config.leaderboard, score_fn)
        self.stats = TradeStatsTracker(self.leaderboards)
        self.staking = StakingEngine(self.config.staking, reward_fn)
        self.liquidity = LiquidityPoolManager(self.staking)
        self.flash_loans = FlashLoanEngine(self.config.flash_loan)
        self.buyback = BuybackBurnEngine()

        # Closed dispatch table: one handler per operation
        self.handlers = MappingProxyType({
            ops.INITIALIZE: self._initialize,
            ops.RECORD_TRADE: self.stats.record_trade,
            ops.RESET_LEADERBOARD: self.leaderboards.reset_leaderboard,
            ops.INITIALIZE_LEADERBOARD: self.leaderboards.initialize_leaderboard,
            ops.STAKE_TOKENS: self.staking.stake_tokens,
            ops.UNSTAKE_TOKENS: self.staking.unstake_tokens,
            ops.FLASH_LOAN: self.flash_loans.flash_loan,
            ops.ALLOCATE_LIQUIDITY: self.liquidity.allocate_liquidity,
            ops.BUYBACK_AND_BURN: self.buyback.buyback_and_burn,
            ops.FUND_TREASURY: self.buyback.fund_treasury,
        })

        self._lock = threading.RLock()
        self._in_flight: Optional[str] = None

        if monitor is None and self.config.monitoring.enabled:
            logger.info(f"Initializing monitor on {self.config.monitoring.host}:{self.config.monitoring.port}")
            monitor = LedgerMonitor(self.config.monitoring.host, self.config.monitoring.port)
            monitor.start_server()
        self.monitor = monitor

        logger.info(f"Ledger opened at state root {self.store.state_root.hex()[:16]}")

    # ==========================================================================
    # PROCESSING
    # ==========================================================================

    def process(self, ix: Instruction) -> Receipt:
        """
        Apply one instruction atomically.

        Raises a ValidationError subclass if the instruction is rejected; in
        that case no state changes.
        """
        with self._lock:
            # The lock is re-entrant, so a nested call from a flash-loan
            # receiver on this thread gets here and is refused.
            if self._in_flight is not None:
                raise ReentrantOperation(
                    f"Cannot process {ix.operation} while {self._in_flight} is in progress"
                )
            self._in_flight = ix.operation
            start = time.perf_counter()
            try:
                receipt = self._execute(ix)
            except ValidationError as e:
                logger.warning(f"{ix.operation} rejected: {e.kind}: {e}")
                self._record(ix.operation, e.kind, start)
                raise
            except Exception as e:
                # Raised by code outside the ledger, e.g. a flash-loan receiver
                logger.error(f"{ix.operation} failed: {type(e).__name__}: {e}")
                self._record(ix.operation, 'error', start)
                raise
            finally:
                self._in_flight = None

            self._record(ix.operation, 'success', start, receipt.compute_units)
            logger.debug(f"{ix.operation} {receipt.instruction_id.hex()[:8]} committed "
                         f"({receipt.compute_units} CU)")
            return receipt

    def _execute(self, ix: Instruction) -> Receipt:
        valid, error = ix.validate_basic()
        if not valid:
            raise InvalidInstruction(error)

        meter = ComputeMeter(self.config.compute.unit_limit)
        meter.charge(ComputeMeter.BASE_COST, "base_instruction")
        meter.charge(ComputeMeter.OPERATION_COSTS[ix.operation], f"op_{ix.operation}")
        meter.charge(ComputeMeter.SIGNATURE_CHECK * len(ix.signatures), "signature_verification")

        signers = ix.verified_signers()
        if len(signers) != len(ix.signatures):
            raise Unauthorized("Instruction carries an invalid signature")

        instruction_id = ix.id
        uow = self.store.begin(meter)
        ctx = OperationContext(
            uow=uow,
            guard=AuthorizationGuard(signers),
            accounts=ix.accounts,
            params=ix.params,
            now=int(self.clock()),
            instruction_id=instruction_id,
        )
        try:
            uow.mark_processed(instruction_id)
            result = self.handlers[ix.operation](ctx) or {}
            committed = uow.staged
            state_root = uow.commit()
        except Exception:
            uow.discard()
            raise

        if self.monitor:
            self.monitor.observe_accounts(committed)
        return Receipt(ix.operation, instruction_id, state_root, meter.units_used, result)

    def _record(self, operation: str, status: str, start: float, compute_units: int = None):
        if self.monitor:
            self.monitor.record_operation(operation, status, time.perf_counter() - start, compute_units)
            self.monitor.update_system_stats()

    def _initialize(self, ctx: OperationContext) -> dict:
        creator = ctx.account('creator')
        ctx.guard.require_signer(creator, 'creator')
        data = require_u64(ctx.param('data'), 'data', positive=False)
        account = ctx.uow.create(DataAccount(ctx.account('new_account'), {
            'authority': creator,
            'data': data,
        }))
        logger.info(f"Initialized account {short_id(account.identity)}")
        return {'account': account.identity.hex(), 'data': data}

    # ==========================================================================
    # FLASH LOAN RECEIVERS
    # ==========================================================================

    def register_flash_receiver(self, borrower: bytes, receiver: Callable[[FlashLoanSession], None]):
        """Run `receiver` whenever `borrower` takes a flash loan."""
        self.flash_loans.register_receiver(borrower, receiver)

    def unregister_flash_receiver(self, borrower: bytes):
        self.flash_loans.unregister_receiver(borrower)

    # ==========================================================================
    # QUERIES
    # ==========================================================================

    @property
    def state_root(self) -> bytes:
        return self.store.state_root

    def get_account(self, identity: bytes, expected_type: Type[Account]) -> Account:
        return self.store.get(identity, expected_type)

    def describe_account(self, identity: bytes) -> Optional[dict]:
        """Decoded view of any account, or None if it does not exist."""
        raw = self.store.get_raw(identity)
        if raw is None:
            return None
        account = decode_account(identity, raw)
        return {'type': type(account).__name__, **account.to_dict()}

    def is_processed(self, instruction_id: bytes) -> bool:
        return self.store.is_processed(instruction_id)

    def pending_reward(self, staking_account: bytes) -> int:
        """Reward an unstake right now would pay, on top of the principal."""
        staking = self.store.get(staking_account, StakingAccount)
        return staking.accrued_reward + self.staking.pending_reward(staking, int(self.clock()))

    def get_tokenomics_stats(self, mint: bytes, treasury: bytes = None,
                             burn_vault: bytes = None, pool: bytes = None) -> dict:
        mint_state = self.store.get(mint, Mint)
        stats = {
            'supply': mint_state.supply,
            'decimals': mint_state.decimals,
        }
        if treasury:
            stats['treasury_balance'] = self.store.get(treasury, Treasury).balance
        if burn_vault:
            stats['cumulative_burned'] = self.store.get(burn_vault, BurnVault).cumulative_burned
        if pool:
            pool_state = self.store.get(pool, LiquidityPool)
            stats['pool_balance'] = pool_state.balance
            stats['pool_fees_collected'] = pool_state.fees_collected
        return stats

    def close(self):
        if self.monitor:
            self.monitor.stop_server()
        self.db.close()
