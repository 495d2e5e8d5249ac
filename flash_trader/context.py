"""
Per-operation context handed to every handler.
"""
from dataclasses import dataclass

from flash_trader.auth import AuthorizationGuard
from flash_trader.store import UnitOfWork


@dataclass
class OperationContext:
    uow: UnitOfWork
    guard: AuthorizationGuard
    accounts: dict
    params: dict
    now: int
    instruction_id: bytes = b''

    def account(self, role: str) -> bytes:
        return self.accounts[role]

    def param(self, name: str, default=None):
        return self.params.get(name, default)
