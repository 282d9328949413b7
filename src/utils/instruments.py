import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from src.engine.errors import UnknownIndexError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexConfig:
    name: str
    symbol: str
    lot_size: int
    tick_size: float
    strike_interval: int


INDEX_CONFIGS: Dict[str, IndexConfig] = {
    "NIFTY": IndexConfig("Nifty 50", "NSE:NIFTY", 75, 0.05, 50),
    "BANKNIFTY": IndexConfig("Bank Nifty", "NSE:NIFTYBANK", 30, 0.05, 100),
    "NIFTYMIDCAPSELECT": IndexConfig("Nifty Midcap Select", "NSE:NIFTYMIDCPSELECT", 120, 0.05, 25),
    "NIFTYFINSERVICE": IndexConfig("Nifty Financial Services", "NSE:NIFTYFINSERVICE", 65, 0.05, 50),
    "NIFTYNEXT50": IndexConfig("Nifty Next 50", "NSE:NIFTYNEXT50", 25, 0.05, 25),
    "SENSEX": IndexConfig("BSE Sensex", "BSE:SENSEX", 20, 0.01, 100),
    "BANKEX": IndexConfig("BSE Bankex", "BSE:BANKEX", 30, 0.01, 100),
    "SENSEX50": IndexConfig("BSE Sensex 50", "BSE:SENSEX50", 60, 0.01, 50),
}

# Longest prefixes first so NIFTYBANK wins over NIFTY
_SYMBOL_PREFIXES = [
    ("NIFTYMIDCPSELECT", "NIFTYMIDCAPSELECT"),
    ("NIFTYFINSERVICE", "NIFTYFINSERVICE"),
    ("NIFTYNEXT50", "NIFTYNEXT50"),
    ("NIFTYBANK", "BANKNIFTY"),
    ("BANKNIFTY", "BANKNIFTY"),
    ("SENSEX50", "SENSEX50"),
    ("SENSEX", "SENSEX"),
    ("BANKEX", "BANKEX"),
    ("FINNIFTY", "NIFTYFINSERVICE"),
    ("NIFTY", "NIFTY"),
]

SYMBOL_PATTERN = re.compile(r"^[A-Z_]+[:|][A-Z0-9\-_ ]+$")


def is_well_formed_symbol(symbol: str) -> bool:
    """Exchange-prefixed symbol such as NSE:NIFTY25JUN24550CE."""
    return bool(symbol) and bool(SYMBOL_PATTERN.match(symbol.strip().upper()))


class LotSizeResolver:
    """Converts lots to exchange quantity using the index lot-size table."""

    def __init__(self, default_index: str = "NIFTY", overrides: Optional[Dict[str, IndexConfig]] = None):
        self.default_index = default_index.upper()
        self.configs = dict(INDEX_CONFIGS)
        if overrides:
            self.configs.update({k.upper(): v for k, v in overrides.items()})

    def lot_size(self, index_key: str) -> int:
        config = self.configs.get(index_key.upper())
        if config is None:
            raise UnknownIndexError(f"Index configuration not found for: {index_key}")
        return config.lot_size

    def quantity_from_lots(self, index_key: str, lots: int) -> int:
        return int(lots) * self.lot_size(index_key)

    def lots_from_quantity(self, index_key: str, quantity: int) -> int:
        return int(quantity) // self.lot_size(index_key)

    def index_key_for_symbol(self, symbol: str) -> str:
        """Derive the index key from an option symbol, e.g. NSE:NIFTYBANK25JUN52000CE -> BANKNIFTY."""
        name = re.split(r"[:|]", symbol, maxsplit=1)[-1].upper()
        for prefix, key in _SYMBOL_PREFIXES:
            if name.startswith(prefix):
                return key
        logger.warning("Could not derive index from symbol %s, using %s", symbol, self.default_index)
        return self.default_index

    def quantity_for_symbol(self, symbol: str, lots: int) -> int:
        return self.quantity_from_lots(self.index_key_for_symbol(symbol), lots)


__all__ = ["IndexConfig", "INDEX_CONFIGS", "LotSizeResolver", "is_well_formed_symbol"]
