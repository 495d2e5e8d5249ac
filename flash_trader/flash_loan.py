"""
FlashLoanEngine: uncollateralized loans that must be repaid, plus fee,
before the operation that issued them finishes.

The borrowed funds move from the pool to the borrower's token account.
The borrower's registered receiver (if any) then runs against a
FlashLoanSession, which can move funds between the borrower's own token
accounts and repay the pool. Without a receiver the `repay_amount` param
is repaid instead; a borrower with a receiver may not pass it. If the pool
ends up below its opening balance plus fee the whole operation is rolled
back.
"""
import logging
from typing import Callable, Optional

from flash_trader import token
from flash_trader.accounts import LiquidityPool, TokenAccount, checked_add, require_u64
from flash_trader.config import FlashLoanConfig
from flash_trader.context import OperationContext
from flash_trader.crypto import short_id
from flash_trader.errors import FlashLoanNotRepaid, InsufficientBalance, InvalidInstruction, Unauthorized
from flash_trader.store import UnitOfWork

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


class FlashLoanSession:
    """What a flash-loan receiver is allowed to do while it holds the loan."""

    def __init__(self, uow: UnitOfWork, borrower: bytes, pool: LiquidityPool,
                 borrower_account: TokenAccount, amount: int, fee: int):
        self._uow = uow
        self._pool = pool
        self.borrower = borrower
        self.borrower_account = borrower_account
        self.amount = amount
        self.fee = fee
        self.repaid = 0
        self.closed = False

    @property
    def amount_due(self) -> int:
        return self.amount + self.fee

    @property
    def outstanding(self) -> int:
        return max(0, self.amount_due - self.repaid)

    def _check_open(self):
        if self.closed:
            raise RuntimeError("Flash loan session is closed")

    def balance(self, identity: bytes) -> int:
        self._check_open()
        return self._uow.load(identity, TokenAccount).balance

    def transfer(self, source: bytes, destination: bytes, amount: int):
        """Move funds out of a token account owned by the borrower."""
        self._check_open()
        amount = require_u64(amount, 'amount', positive=False)
        source_account = self._uow.load(source, TokenAccount)
        if source_account.owner != self.borrower:
            raise Unauthorized(f"Token account {short_id(source)} is not owned by the borrower")
        destination_account = self._uow.load(destination, TokenAccount)
        token.transfer(self._uow, source_account, destination_account, amount)

    def repay(self, amount: Optional[int] = None):
        """Return funds from the borrower's token account to the pool."""
        self._check_open()
        amount = self.outstanding if amount is None else require_u64(amount, 'amount', positive=False)
        token.transfer(self._uow, self.borrower_account, self._pool, amount)
        self.repaid += amount


class FlashLoanEngine:
    def __init__(self, config: FlashLoanConfig):
        self.config = config
        self.receivers: dict[bytes, Callable[[FlashLoanSession], None]] = {}

    def register_receiver(self, borrower: bytes, receiver: Callable[[FlashLoanSession], None]):
        self.receivers[borrower] = receiver

    def unregister_receiver(self, borrower: bytes):
        self.receivers.pop(borrower, None)

    def fee_for(self, amount: int) -> int:
        return -(-amount * self.config.fee_bps // BPS_DENOMINATOR)

    def flash_loan(self, ctx: OperationContext) -> dict:
        uow = ctx.uow
        borrower = ctx.account('borrower')
        ctx.guard.require_signer(borrower, 'borrower')
        amount = require_u64(ctx.param('amount'), 'amount')

        pool = uow.load(ctx.account('liquidity_pool'), LiquidityPool)
        if pool.authority != ctx.account('pool_authority'):
            raise Unauthorized("Pool authority does not match the liquidity pool")
        borrower_account = uow.load(ctx.account('borrower_token_account'), TokenAccount)
        if borrower_account.owner != borrower:
            raise Unauthorized(
                f"Token account {short_id(borrower_account.identity)} is not owned by the borrower"
            )
        if amount > pool.balance:
            raise InsufficientBalance(f"Pool holds {pool.balance}, cannot lend {amount}")

        receiver = self.receivers.get(borrower)
        if receiver is not None and ctx.param('repay_amount') is not None:
            raise InvalidInstruction(
                f"{short_id(borrower)} repays through its receiver; repay_amount is not accepted"
            )

        opening_balance = pool.balance
        fee = self.fee_for(amount)
        required = checked_add(opening_balance, fee, "required pool balance")

        token.transfer(uow, pool, borrower_account, amount)
        session = FlashLoanSession(uow, borrower, pool, borrower_account, amount, fee)
        try:
            if receiver is not None:
                receiver(session)
            else:
                repay_amount = require_u64(ctx.param('repay_amount', 0), 'repay_amount', positive=False)
                if repay_amount:
                    session.repay(repay_amount)
        finally:
            session.closed = True

        if pool.balance < required:
            raise FlashLoanNotRepaid(
                f"Pool balance {pool.balance} below required {required} "
                f"(loan {amount}, fee {fee})"
            )

        pool.fees_collected = checked_add(
            pool.fees_collected, pool.balance - opening_balance, "fees collected"
        )
        uow.stage(pool)

        logger.info(f"Flash loan of {amount} to {short_id(borrower)} repaid (fee {fee})")
        return {
            'amount': amount,
            'fee': fee,
            'repaid': session.repaid,
            'pool_balance': pool.balance,
        }
