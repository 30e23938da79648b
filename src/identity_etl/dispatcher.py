"""identity_etl.dispatcher

Entity registry: maps a case-insensitive entity name to its strategy and
hands the whole run to run_import.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

from identity_etl import identity_entities, reference_entities
from identity_etl.config import ImportSettings
from identity_etl.pipeline import EntityStrategy, run_import
from identity_etl.shared import RunCounters, UnknownEntityError
from identity_etl.store import Store


class Dispatcher:
    def __init__(self, strategies: Iterable[EntityStrategy]) -> None:
        self._strategies: dict[str, EntityStrategy] = {}
        for strategy in strategies:
            key = strategy.name.lower()
            if key in self._strategies:
                raise ValueError(f"Duplicate entity name: {strategy.name}")
            self._strategies[key] = strategy

    @property
    def names(self) -> list[str]:
        return sorted(s.name for s in self._strategies.values())

    def get(self, name: str) -> EntityStrategy:
        strategy = self._strategies.get((name or "").strip().lower())
        if strategy is None:
            raise UnknownEntityError(name, self.names)
        return strategy

    def run(
        self,
        name: str,
        store: Store,
        path: Path,
        settings: ImportSettings,
        **options: Any,
    ) -> RunCounters:
        """Run the import for `name`; errors from the run propagate unchanged."""
        return run_import(store, self.get(name), path, settings, **options)


def default_dispatcher() -> Dispatcher:
    return Dispatcher(
        (*identity_entities.STRATEGIES, *reference_entities.STRATEGIES)
    )
