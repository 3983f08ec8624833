"""Allow/exclude rules applied to listing pages before enrichment."""

from __future__ import annotations

from dataclasses import dataclass, field

from screener.types import TickerReference, normalize_exchange


@dataclass
class TickerFilter:
    """Which listing entries are worth enriching.

    Empty allow-lists accept everything. Exchanges are compared after
    normalization, so "NYSE" and "XNYS" are the same exchange. Matching on
    ``market`` as well as ``exchange`` follows the Polygon listing, where
    some entries carry the MIC in either field.
    """

    security_types: frozenset[str] = frozenset()
    exchanges: frozenset[str] = frozenset({"XNYS", "XNAS"})
    exclude_symbol_substrings: tuple[str, ...] = ("-",)
    exclude_name_substrings: tuple[str, ...] = ("ETF",)
    exclude_types: frozenset[str] = frozenset({"ETF"})
    active_only: bool = True
    _exchange_codes: frozenset[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._exchange_codes = frozenset(
            code for code in (normalize_exchange(e) for e in self.exchanges) if code
        )

    def accepts(self, ticker: TickerReference) -> bool:
        if self.active_only and not ticker.active:
            return False
        if self.security_types and ticker.security_type not in self.security_types:
            return False
        if ticker.security_type in self.exclude_types:
            return False
        if self._exchange_codes:
            venues = {normalize_exchange(ticker.exchange), normalize_exchange(ticker.market)}
            if not venues & self._exchange_codes:
                return False
        if any(part in ticker.symbol for part in self.exclude_symbol_substrings):
            return False
        name = ticker.name or ""
        if any(part in name for part in self.exclude_name_substrings):
            return False
        return True

    def apply(self, tickers: list[TickerReference]) -> list[TickerReference]:
        return [t for t in tickers if self.accepts(t)]
