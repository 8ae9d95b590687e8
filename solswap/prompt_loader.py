"""System prompt template for the phrasing model.

The template carries ``<<CONTEXT>>`` and ``<<MESSAGE>>`` slots; every slot must be
filled on render so a half-rendered prompt never reaches the model.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet

SLOT_PATTERN = re.compile(r"<<([A-Z_]+)>>")


@dataclass(frozen=True)
class PromptTemplate:
    text: str

    @classmethod
    def from_file(cls, path: Path) -> "PromptTemplate":
        # utf-8-sig drops a leading BOM; undecodable bytes become U+FFFD.
        return cls(path.read_bytes().decode("utf-8-sig", errors="replace"))

    @property
    def slots(self) -> FrozenSet[str]:
        return frozenset(SLOT_PATTERN.findall(self.text))

    def render(self, **values: str) -> str:
        """Fill every slot from ``values`` (keyword names are matched upper-cased).

        Raises KeyError naming the first slot left without a value.
        """
        filled = {key.upper(): value for key, value in values.items()}
        missing = sorted(self.slots - filled.keys())
        if missing:
            raise KeyError(f"prompt slot {missing[0]} has no value")
        return SLOT_PATTERN.sub(lambda match: filled[match.group(1)], self.text)
