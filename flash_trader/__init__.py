"""Flash trader ledger: trade leaderboards, staking, flash loans and burns."""
from flash_trader.config import Config
from flash_trader.instruction import Instruction
from flash_trader.ledger import Ledger, Receipt

__version__ = "0.1.0"
