"""Tournament economy engine.

Wallets, entry-fee escrow, prize settlement, withdrawals and knockout
brackets, exposed as atomic procedures.
"""

from arena_economy.actor import Actor
from arena_economy.config import EconomyRules, Settings, get_settings
from arena_economy.procedures import EconomyProcedures

__version__ = "0.1.0"

__all__ = [
    "Actor",
    "EconomyProcedures",
    "EconomyRules",
    "Settings",
    "get_settings",
]
