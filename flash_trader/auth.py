"""
AuthorizationGuard: checks that required identities signed the instruction.

The guard is built by the ledger from signatures it has already verified;
handlers only ask whether an identity is among them.
"""
from typing import Iterable, Optional

from flash_trader.crypto import short_id
from flash_trader.errors import Unauthorized


class AuthorizationGuard:
    def __init__(self, signers: Iterable[bytes]):
        self._signers = frozenset(signers)

    def is_signer(self, identity: Optional[bytes]) -> bool:
        return identity is not None and identity in self._signers

    def require_signer(self, identity: Optional[bytes], role: str = "signer"):
        if not self.is_signer(identity):
            raise Unauthorized(f"{role} {short_id(identity)} did not sign the instruction")

    def require_authority(self, authority: Optional[bytes], role: str = "authority"):
        """Require the authority recorded on an account to have signed."""
        if authority is None:
            raise Unauthorized(f"Account has no {role}")
        self.require_signer(authority, role)
