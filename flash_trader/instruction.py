"""
Signed instructions: one operation, the accounts it touches, and its params.
"""
import secrets
import msgpack
from dataclasses import dataclass
from typing import Optional

from flash_trader.crypto import generate_hash, sign, verify_signature, identity_of, IDENTITY_LENGTH
from flash_trader.errors import InvalidAmount, InvalidInstruction

INITIALIZE = "initialize"
RECORD_TRADE = "record_trade"
RESET_LEADERBOARD = "reset_leaderboard"
INITIALIZE_LEADERBOARD = "initialize_leaderboard"
STAKE_TOKENS = "stake_tokens"
UNSTAKE_TOKENS = "unstake_tokens"
FLASH_LOAN = "flash_loan"
ALLOCATE_LIQUIDITY = "allocate_liquidity"
BUYBACK_AND_BURN = "buyback_and_burn"
FUND_TREASURY = "fund_treasury"

# Params travel as msgpack integers: i64 or u64
PARAM_MIN = -2 ** 63
PARAM_MAX = 2 ** 64 - 1


@dataclass(frozen=True)
class OperationSchema:
    accounts: tuple
    params: tuple = ()
    optional_params: tuple = ()


OPERATION_SCHEMAS = {
    INITIALIZE: OperationSchema(
        accounts=('creator', 'new_account'),
        params=('data',)),
    RECORD_TRADE: OperationSchema(
        accounts=('trader', 'trader_stats', 'leaderboard'),
        optional_params=('volume',)),
    RESET_LEADERBOARD: OperationSchema(
        accounts=('authority', 'leaderboard', 'new_leaderboard', 'mint', 'archive'),
        params=('new_threshold',),
        optional_params=('dex_volume',)),
    INITIALIZE_LEADERBOARD: OperationSchema(
        accounts=('authority', 'leaderboard', 'mint'),
        params=('capacity', 'reset_threshold')),
    STAKE_TOKENS: OperationSchema(
        accounts=('owner', 'staking_account', 'owner_token_account'),
        params=('amount', 'duration_seconds')),
    UNSTAKE_TOKENS: OperationSchema(
        accounts=('owner', 'staking_account', 'owner_token_account', 'mint'),
        params=('amount',)),
    FLASH_LOAN: OperationSchema(
        accounts=('borrower', 'liquidity_pool', 'pool_authority', 'borrower_token_account'),
        params=('amount',),
        optional_params=('repay_amount',)),
    ALLOCATE_LIQUIDITY: OperationSchema(
        accounts=('owner', 'staking_account', 'liquidity_pool'),
        optional_params=('amount',)),
    BUYBACK_AND_BURN: OperationSchema(
        accounts=('authority', 'treasury', 'burn_vault', 'mint'),
        params=('amount',)),
    FUND_TREASURY: OperationSchema(
        accounts=('funder', 'treasury', 'funder_token_account'),
        params=('amount',)),
}


class Instruction:
    def __init__(self,
                 operation: str,
                 accounts: dict,
                 params: Optional[dict] = None,
                 nonce: Optional[int] = None,
                 signatures: Optional[dict] = None):
        self.operation = operation
        self.accounts = dict(accounts)
        self.params = dict(params or {})
        self.nonce = nonce if nonce is not None else secrets.randbits(63)
        self.signatures: dict[bytes, bytes] = dict(signatures or {})

    @classmethod
    def from_dict(cls, data: dict) -> 'Instruction':
        """Creates an Instruction from its hex-encoded dictionary form."""
        return cls(
            operation=data["operation"],
            accounts={role: bytes.fromhex(ident) for role, ident in data["accounts"].items()},
            params=data.get("params", {}),
            nonce=data["nonce"],
            signatures={
                bytes.fromhex(signer): bytes.fromhex(sig)
                for signer, sig in data.get("signatures", {}).items()
            },
        )

    def to_dict(self, include_signatures: bool = True) -> dict:
        data = {
            "operation": self.operation,
            "accounts": {role: ident.hex() for role, ident in sorted(self.accounts.items())},
            "params": dict(sorted(self.params.items())),
            "nonce": self.nonce,
        }
        if include_signatures:
            data["signatures"] = {s.hex(): sig.hex() for s, sig in self.signatures.items()}
        return data

    def to_bytes(self) -> bytes:
        return msgpack.packb(self.to_dict(), use_bin_type=True)

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'Instruction':
        return cls.from_dict(msgpack.unpackb(raw, raw=False))

    def get_signing_data(self) -> bytes:
        """
        Returns the canonical byte representation for signing.

        Raises InvalidAmount for an integer param msgpack cannot carry and
        InvalidInstruction for any other value it cannot encode.
        """
        for name, value in self.params.items():
            if isinstance(value, int) and not PARAM_MIN <= value <= PARAM_MAX:
                raise InvalidAmount(f"Param '{name}' does not fit in 64 bits")
        try:
            return msgpack.packb(self.to_dict(include_signatures=False), use_bin_type=True)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidInstruction(f"Instruction cannot be encoded: {e}")

    def sign(self, signing_key) -> 'Instruction':
        """Adds a signature by `signing_key`. Returns self for chaining."""
        self.signatures[identity_of(signing_key)] = sign(signing_key, self.get_signing_data())
        return self

    def verified_signers(self) -> set[bytes]:
        """Identities whose signatures over this instruction verify."""
        data = self.get_signing_data()
        return {
            signer for signer, signature in self.signatures.items()
            if verify_signature(signer, signature, data)
        }

    @property
    def id(self) -> bytes:
        """The unique hash identifier of the instruction."""
        return generate_hash(self.get_signing_data())

    def validate_basic(self) -> tuple[bool, str]:
        """
        Performs shape checks that need no state.
        Returns (is_valid, error_message)
        """
        schema = OPERATION_SCHEMAS.get(self.operation)
        if schema is None:
            return False, f"Unknown operation: {self.operation}"

        if not isinstance(self.nonce, int) or isinstance(self.nonce, bool) or not 0 <= self.nonce < 2 ** 64:
            return False, "Nonce must be a u64"

        missing = [role for role in schema.accounts if role not in self.accounts]
        if missing:
            return False, f"{self.operation} requires accounts: {', '.join(missing)}"
        unexpected = set(self.accounts) - set(schema.accounts)
        if unexpected:
            return False, f"{self.operation} does not take accounts: {', '.join(sorted(unexpected))}"
        for role, identity in self.accounts.items():
            if not isinstance(identity, bytes) or len(identity) != IDENTITY_LENGTH:
                return False, f"Account '{role}' must be a {IDENTITY_LENGTH}-byte identity"

        missing = [p for p in schema.params if p not in self.params]
        if missing:
            return False, f"{self.operation} requires params: {', '.join(missing)}"
        unexpected = set(self.params) - set(schema.params) - set(schema.optional_params)
        if unexpected:
            return False, f"{self.operation} does not take params: {', '.join(sorted(unexpected))}"
        for name, value in self.params.items():
            if not isinstance(value, int) or isinstance(value, bool):
                return False, f"Param '{name}' must be an integer"
            if not PARAM_MIN <= value <= PARAM_MAX:
                return False, f"Param '{name}' does not fit in 64 bits"

        if not self.signatures:
            return False, "Instruction is not signed"

        return True, ""

    def __repr__(self) -> str:
        return f"Instruction({self.operation}, id={self.id.hex()[:8]}, signers={len(self.signatures)})"
