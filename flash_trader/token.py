"""
In-process fungible token program.

Transfers, mints and burns act on token-holding accounts already loaded in
the caller's unit of work, so they commit or roll back with the operation
that invoked them. Authorization is the caller's job.
"""
import logging

from flash_trader.accounts import Mint, TokenHolding, checked_add, checked_sub
from flash_trader.crypto import short_id
from flash_trader.errors import AccountMismatch, InvalidAmount
from flash_trader.store import UnitOfWork

logger = logging.getLogger(__name__)


def _require_same_mint(*holdings: TokenHolding):
    mints = {h.mint for h in holdings}
    if len(mints) != 1:
        raise AccountMismatch(
            "Token accounts belong to different mints: "
            + ", ".join(short_id(h.identity) for h in holdings)
        )


def transfer(uow: UnitOfWork, source: TokenHolding, destination: TokenHolding, amount: int):
    """Move `amount` between two holdings of the same mint."""
    if amount < 0:
        raise InvalidAmount("Transfer amount cannot be negative")
    _require_same_mint(source, destination)
    if source is destination:
        return
    source.balance = checked_sub(source.balance, amount, f"balance in {short_id(source.identity)}")
    destination.balance = checked_add(destination.balance, amount, "destination balance")
    uow.stage(source, destination)


def mint_to(uow: UnitOfWork, mint: Mint, destination: TokenHolding, amount: int):
    """Create new tokens, increasing circulating supply."""
    if amount < 0:
        raise InvalidAmount("Mint amount cannot be negative")
    if destination.mint != mint.identity:
        raise AccountMismatch(f"{short_id(destination.identity)} does not hold this mint")
    mint.supply = checked_add(mint.supply, amount, "mint supply")
    destination.balance = checked_add(destination.balance, amount, "destination balance")
    uow.stage(mint, destination)


def burn(uow: UnitOfWork, mint: Mint, source: TokenHolding, amount: int):
    """Destroy tokens held by `source`, decreasing circulating supply."""
    if amount < 0:
        raise InvalidAmount("Burn amount cannot be negative")
    if source.mint != mint.identity:
        raise AccountMismatch(f"{short_id(source.identity)} does not hold this mint")
    source.balance = checked_sub(source.balance, amount, f"balance in {short_id(source.identity)}")
    mint.supply = checked_sub(mint.supply, amount, "mint supply")
    uow.stage(mint, source)
    logger.debug(f"Burned {amount} from {short_id(source.identity)}")
