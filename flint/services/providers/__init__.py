from flint.services.providers.snaptrade import SnapTradeAdapter
from flint.services.providers.teller import TellerAdapter

__all__ = ["SnapTradeAdapter", "TellerAdapter"]
