from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from deriv_alerts.logging_utils import get_logger


# User-facing shortcuts -> Deriv feed symbols.
SYMBOL_ALIASES: Dict[str, str] = {
    # Crypto
    "BTC": "cryBTCUSD",
    "BTCUSD": "cryBTCUSD",
    "BITCOIN": "cryBTCUSD",
    "ETH": "cryETHUSD",
    "ETHUSD": "cryETHUSD",
    "ETHEREUM": "cryETHUSD",
    # Metals
    "XAU": "frxXAUUSD",
    "XAUUSD": "frxXAUUSD",
    "GOLD": "frxXAUUSD",
    "XAG": "frxXAGUSD",
    "XAGUSD": "frxXAGUSD",
    "SILVER": "frxXAGUSD",
    "XPT": "frxXPTUSD",
    "PLATINUM": "frxXPTUSD",
    "XPD": "frxXPDUSD",
    "PALLADIUM": "frxXPDUSD",
    # Volatility indices
    "V10": "R_10",
    "V25": "R_25",
    "V50": "R_50",
    "V75": "R_75",
    "V100": "R_100",
    "VOL10": "R_10",
    "VOL25": "R_25",
    "VOL50": "R_50",
    "VOL75": "R_75",
    "VOL100": "R_100",
}

DEFAULT_ALLOWED_MARKETS: Tuple[str, ...] = ("synthetic_index", "cryptocurrency", "commodities")

MAX_SHORT_ALIAS_LEN = 4


@dataclass(frozen=True)
class SymbolInfo:
    symbol: str
    display_name: str
    market: str
    submarket: str = ""
    submarket_display_name: str = ""
    exchange_is_open: bool = True

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "SymbolInfo":
        market = str(raw.get("market", ""))
        return cls(
            symbol=str(raw["symbol"]),
            display_name=str(raw.get("display_name") or raw["symbol"]),
            market=market,
            submarket=str(raw.get("submarket", "")),
            submarket_display_name=str(raw.get("submarket_display_name") or market),
            exchange_is_open=bool(raw.get("exchange_is_open", True)),
        )


class SymbolCatalog:
    """
    Set of tradeable symbols loaded once from the feed's ``active_symbols`` call.

    Only markets on the allow-list are kept. Insertion order follows the feed,
    which keeps search results stable.
    """

    def __init__(self) -> None:
        self._symbols: Dict[str, SymbolInfo] = {}
        self._logger = get_logger("symbol_catalog")

    def load(
        self,
        active_symbols: Iterable[Mapping[str, Any]],
        allowed_markets: Iterable[str] = DEFAULT_ALLOWED_MARKETS,
    ) -> int:
        allowed = set(allowed_markets)
        loaded: Dict[str, SymbolInfo] = {}
        for raw in active_symbols:
            if raw.get("market") not in allowed or not raw.get("symbol"):
                continue
            info = SymbolInfo.from_payload(raw)
            loaded[info.symbol] = info
        self._symbols = loaded
        self._logger.info("Loaded %d tradeable symbols", len(loaded))
        return len(loaded)

    def __len__(self) -> int:
        return len(self._symbols)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._symbols

    def is_valid(self, symbol: str) -> bool:
        return symbol in self._symbols

    def info(self, symbol: str) -> Optional[SymbolInfo]:
        return self._symbols.get(symbol)

    def symbols(self) -> List[str]:
        return list(self._symbols)

    def by_submarket(self) -> Dict[str, List[Tuple[str, str]]]:
        grouped: Dict[str, List[Tuple[str, str]]] = {}
        for info in self._symbols.values():
            key = info.submarket_display_name or "Other"
            grouped.setdefault(key, []).append((info.symbol, info.display_name))
        return grouped

    def search(self, query: str, limit: int = 5) -> List[SymbolInfo]:
        """Case-insensitive substring match on symbol or display name."""
        needle = query.lower()
        hits: List[SymbolInfo] = []
        for info in self._symbols.values():
            if needle in info.symbol.lower() or needle in info.display_name.lower():
                hits.append(info)
                if len(hits) >= limit:
                    break
        return hits


class SymbolResolver:
    """
    Maps user-facing aliases to canonical feed symbols and back.

    Pure lookup: the alias table is static and the catalog only supplies the
    set of known symbols for case-insensitive matching.
    """

    def __init__(
        self,
        catalog: Optional[SymbolCatalog] = None,
        aliases: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.catalog = catalog if catalog is not None else SymbolCatalog()
        self._aliases = {k.upper(): v for k, v in (aliases or SYMBOL_ALIASES).items()}
        self._short_alias = self._build_reverse(self._aliases)

    @staticmethod
    def _build_reverse(aliases: Mapping[str, str]) -> Dict[str, str]:
        # Shortest qualifying alias wins; ties keep table order.
        reverse: Dict[str, str] = {}
        for alias, symbol in aliases.items():
            if len(alias) > MAX_SHORT_ALIAS_LEN:
                continue
            current = reverse.get(symbol)
            if current is None or len(alias) < len(current):
                reverse[symbol] = alias
        return reverse

    def resolve(self, text: str) -> str:
        upper = text.strip().upper()
        mapped = self._aliases.get(upper)
        if mapped is not None:
            return mapped
        for symbol in self.catalog.symbols():
            if symbol.upper() == upper:
                return symbol
        # Unknown: caller validates against the catalog.
        return upper

    def alias_of(self, symbol: str) -> Optional[str]:
        return self._short_alias.get(symbol)

    def display_name(self, symbol: str) -> str:
        alias = self.alias_of(symbol)
        return f"{alias} ({symbol})" if alias else symbol
