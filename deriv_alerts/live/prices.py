from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional

import pandas as pd


@dataclass(frozen=True)
class PriceSample:
    """Latest and immediately-previous observed price for one symbol."""

    symbol: str
    current: float
    previous: float
    updated_at: Optional[pd.Timestamp] = None

    @property
    def change(self) -> float:
        return self.current - self.previous


class PriceStore:
    """
    One sample per symbol, replaced on every tick.

    Samples are immutable, so snapshots handed out by ``all()`` never change
    underneath the caller.
    """

    def __init__(self) -> None:
        self._samples: Dict[str, PriceSample] = {}

    def update(self, symbol: str, price: float, epoch: Optional[int] = None) -> float:
        """
        Record a tick and return the prior current price (now ``previous``).

        On first observation previous == current == price.
        """
        price = float(price)
        prior = self._samples.get(symbol)
        previous = prior.current if prior is not None else price
        updated_at = pd.to_datetime(epoch, unit="s", utc=True) if epoch is not None else None
        self._samples[symbol] = PriceSample(
            symbol=symbol,
            current=price,
            previous=previous,
            updated_at=updated_at,
        )
        return previous

    def get(self, symbol: str) -> Optional[float]:
        sample = self._samples.get(symbol)
        return sample.current if sample is not None else None

    def get_sample(self, symbol: str) -> Optional[PriceSample]:
        return self._samples.get(symbol)

    def all(self) -> Mapping[str, PriceSample]:
        return MappingProxyType(dict(self._samples))

    def __len__(self) -> int:
        return len(self._samples)

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "symbol": s.symbol,
                "current": s.current,
                "previous": s.previous,
                "change": s.change,
                "updated_at": s.updated_at,
            }
            for s in self._samples.values()
        ]
        return pd.DataFrame(rows, columns=["symbol", "current", "previous", "change", "updated_at"])
