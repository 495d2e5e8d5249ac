"""
BuybackBurnEngine: treasury-funded burns that shrink circulating supply.
"""
import logging

from flash_trader import token
from flash_trader.accounts import BurnVault, Mint, TokenAccount, Treasury, checked_add, require_u64
from flash_trader.context import OperationContext
from flash_trader.crypto import short_id
from flash_trader.errors import AccountMismatch, InsufficientBalance, Unauthorized

logger = logging.getLogger(__name__)


class BuybackBurnEngine:

    def buyback_and_burn(self, ctx: OperationContext) -> dict:
        uow = ctx.uow
        authority = ctx.account('authority')
        treasury = uow.load(ctx.account('treasury'), Treasury)
        if treasury.authority != authority:
            raise Unauthorized("Only the treasury authority can spend treasury funds")
        ctx.guard.require_authority(treasury.authority, 'treasury authority')

        amount = require_u64(ctx.param('amount'), 'amount')
        vault = uow.load(ctx.account('burn_vault'), BurnVault)
        mint = uow.load(ctx.account('mint'), Mint)
        if treasury.mint != mint.identity or vault.mint != mint.identity:
            raise AccountMismatch("Treasury, burn vault and mint do not match")
        if amount > treasury.balance:
            raise InsufficientBalance(f"Treasury holds {treasury.balance}, cannot burn {amount}")

        token.transfer(uow, treasury, vault, amount)
        token.burn(uow, mint, vault, amount)
        vault.cumulative_burned = checked_add(vault.cumulative_burned, amount, "cumulative burned")
        uow.stage(vault)

        logger.info(
            f"Burned {amount} from treasury {short_id(treasury.identity)} "
            f"(supply {mint.supply}, burned to date {vault.cumulative_burned})"
        )
        return {
            'amount': amount,
            'treasury_balance': treasury.balance,
            'supply': mint.supply,
            'cumulative_burned': vault.cumulative_burned,
        }

    def fund_treasury(self, ctx: OperationContext) -> dict:
        uow = ctx.uow
        funder = ctx.account('funder')
        ctx.guard.require_signer(funder, 'funder')
        amount = require_u64(ctx.param('amount'), 'amount')

        source = uow.load(ctx.account('funder_token_account'), TokenAccount)
        if source.owner != funder:
            raise Unauthorized(f"Token account {short_id(source.identity)} is not owned by the funder")
        treasury = uow.load(ctx.account('treasury'), Treasury)
        token.transfer(uow, source, treasury, amount)

        logger.info(f"{short_id(funder)} funded treasury {short_id(treasury.identity)} with {amount}")
        return {'amount': amount, 'treasury_balance': treasury.balance}
