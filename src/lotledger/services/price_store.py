from __future__ import annotations

import json
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from lotledger.domain.assets import Asset


class PriceStore(Protocol):
    def write(self, asset: Asset, when: date, price: Decimal, source: str) -> None: ...

    def read(self, asset: Asset, when: date) -> Decimal | None: ...


class JsonlPriceStore(PriceStore):
    """Historical daily prices, one append-only JSONL file per asset."""

    def __init__(self, *, root_dir: Path) -> None:
        self.root_dir = root_dir

    def write(self, asset: Asset, when: date, price: Decimal, source: str) -> None:
        path = self._file_path(asset)
        path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "date": when.isoformat(),
            "asset": asset.value,
            "price": str(price),
            "source": source,
        }
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record))
            handle.write("\n")

    def read(self, asset: Asset, when: date) -> Decimal | None:
        path = self._file_path(asset)
        if not path.exists():
            return None

        target = when.isoformat()
        found: Decimal | None = None
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                record = json.loads(line)
                # Later lines win so a corrected price can simply be appended.
                if record["date"] == target:
                    found = Decimal(record["price"])
        return found

    def _file_path(self, asset: Asset) -> Path:
        return self.root_dir / f"{asset.value.upper()}-USD.jsonl"


__all__ = ["JsonlPriceStore", "PriceStore"]
