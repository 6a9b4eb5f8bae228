"""
Unit registry — the ordered list of units a run walks over.

Declaration order is execution order: later units may rely on what
earlier ones installed (a toolchain before the tools built with it).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from aiprovision.core.models.unit import Unit

logger = logging.getLogger(__name__)


class RegistryError(ValueError):
    """Raised for duplicate or unknown unit names."""


class UnitRegistry:
    """Ordered collection of uniquely named units."""

    def __init__(self, units: Iterable[Unit] = ()):
        self._units: list[Unit] = []
        self._names: set[str] = set()
        self.extend(units)

    def add(self, unit: Unit) -> None:
        """Append a unit.

        Raises:
            RegistryError: If a unit of that name is already registered.
        """
        if unit.name in self._names:
            raise RegistryError(f"Duplicate unit name: {unit.name!r}")
        self._units.append(unit)
        self._names.add(unit.name)
        logger.debug("Registered unit: %s", unit.name)

    def extend(self, units: Iterable[Unit]) -> None:
        for unit in units:
            self.add(unit)

    def get(self, name: str) -> Unit | None:
        for unit in self._units:
            if unit.name == name:
                return unit
        return None

    def names(self) -> list[str]:
        return [u.name for u in self._units]

    def select(
        self,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> UnitRegistry:
        """A new registry with a subset of units, order preserved.

        Args:
            include: Only these names (None or empty = all).
            exclude: Drop these names.

        Raises:
            RegistryError: If a name is not registered.
        """
        include = list(include or [])
        exclude = list(exclude or [])
        unknown = [n for n in include + exclude if n not in self._names]
        if unknown:
            raise RegistryError(
                f"Unknown unit(s): {', '.join(unknown)}. "
                f"Available: {', '.join(self.names())}"
            )

        wanted = set(include) if include else set(self._names)
        wanted -= set(exclude)
        return UnitRegistry(u for u in self._units if u.name in wanted)

    def __iter__(self) -> Iterator[Unit]:
        return iter(list(self._units))

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, name: object) -> bool:
        return name in self._names
