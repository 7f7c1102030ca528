"""Data-kind registry — the fixed set of record kinds the sync engine tracks.

Kinds are declared in YAML (see ``shs/domains/health/kinds.yaml``)::

    kinds:
      - name: symptoms
        shape: list
        table: user_symptoms
        healthcare: true
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

VALID_SHAPES = ("list", "object", "string", "number", "boolean")

DEFAULT_KINDS_FILE = Path(__file__).resolve().parents[2] / "domains" / "health" / "kinds.yaml"


@dataclass(frozen=True)
class KindDefinition:
    """One logical record kind."""

    name: str
    shape: str = "object"
    table: str = "user_profiles"
    healthcare: bool = False
    merge_with_default: bool = False
    tracked: bool = True
    priority: int = 0


class KindRegistry:
    """In-memory registry of known record kinds, in declaration order."""

    def __init__(self, kinds: list[KindDefinition] | None = None) -> None:
        self._kinds: dict[str, KindDefinition] = {}
        for kind in kinds or []:
            self.register(kind)

    def register(self, kind: KindDefinition) -> None:
        if kind.name in self._kinds:
            raise ValueError(f"Duplicate kind registered: {kind.name!r}")
        if kind.shape not in VALID_SHAPES:
            raise ValueError(f"Kind {kind.name!r} has invalid shape {kind.shape!r}")
        self._kinds[kind.name] = kind

    def get(self, name: str) -> KindDefinition | None:
        return self._kinds.get(name)

    def shape_of(self, name: str) -> str:
        """Expected value shape for ``name``; unknown kinds are objects."""
        kind = self._kinds.get(name)
        return kind.shape if kind else "object"

    def is_healthcare(self, name: str) -> bool:
        kind = self._kinds.get(name)
        return bool(kind and kind.healthcare)

    def merges_with_default(self, name: str) -> bool:
        kind = self._kinds.get(name)
        return bool(kind and kind.merge_with_default)

    def all(self) -> list[KindDefinition]:
        return list(self._kinds.values())

    def tracked_names(self, *, healthcare_first: bool = False) -> list[str]:
        """Names of tracked kinds; healthcare kinds first when requested.

        Healthcare kinds are ordered by ``priority``; the rest keep
        declaration order.
        """
        names = [k.name for k in self._kinds.values() if k.tracked]
        if not healthcare_first:
            return names
        priority = sorted(
            (n for n in names if self._kinds[n].healthcare),
            key=lambda n: self._kinds[n].priority,
        )
        return priority + [n for n in names if not self._kinds[n].healthcare]


def load_kind_file(path: str | Path) -> KindRegistry:
    """Parse a YAML kinds file into a populated registry."""
    with open(path) as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}

    registry = KindRegistry()
    for entry in data.get("kinds", []):
        registry.register(
            KindDefinition(
                name=entry["name"],
                shape=entry.get("shape", "object"),
                table=entry.get("table", "user_profiles"),
                healthcare=bool(entry.get("healthcare", False)),
                merge_with_default=bool(entry.get("merge_with_default", False)),
                tracked=bool(entry.get("tracked", True)),
                priority=int(entry.get("priority", 0)),
            )
        )
    logger.info("Loaded %d record kinds from %s", len(registry.all()), path)
    return registry


def load_default_kinds() -> KindRegistry:
    """Load the bundled health-app kinds."""
    return load_kind_file(DEFAULT_KINDS_FILE)
