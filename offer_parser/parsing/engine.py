from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from ..models.config_models import ParserConfig
from ..models.row_data import Row
from .property_bag import PropertyBag
from .rules import Rule, create_rule
from .state import Assignment

"""Parser engine: applies configured column rules to one row at a time.

Columns are visited in configuration declaration order, never in the row's
cell order, so earlier rules deterministically win under first-write-wins.
Within a column, rules run by ascending priority (stable for ties). Each rule
sees a snapshot of the bag as written by the rules before it.
"""

__all__ = [
    "ParserEngine",
]

logger = logging.getLogger(__name__)


class ParserEngine:
    def __init__(self, config: ParserConfig) -> None:
        self._config = config
        # 構築時に一度だけ rule を生成 (以降は読み取り専用)
        self._columns: list[tuple[str, list[Rule]]] = []
        for column in config.columns:
            rules = [create_rule(rc, config.lookups) for rc in column.rules]
            rules.sort(key=lambda r: r.priority)
            self._columns.append((column.column.strip().upper(), rules))
        logger.debug(f"parser engine ready: columns={len(self._columns)} lookups={len(config.lookups)}")

    @property
    def config(self) -> ParserConfig:
        return self._config

    @property
    def columns(self) -> list[str]:
        return [c for c, _ in self._columns]

    def new_bag(self, seed: Iterable[Assignment] | Mapping[str, Any] | None = None) -> PropertyBag:
        return PropertyBag(prefer_first=self._config.settings.prefer_first_assignment, seed=seed)

    def parse(self, row: Row, seed: Iterable[Assignment] | Mapping[str, Any] | None = None) -> PropertyBag:
        """Build the property bag for ``row``.

        ``seed`` pre-populates the bag (source tag "Seed") before any rule runs.
        Columns absent from the row are skipped without error.
        """
        bag = self.new_bag(seed)
        stop_on_first = self._config.settings.stop_on_first_match_per_column
        for column, rules in self._columns:
            raw = row.get(column)
            if raw is None:
                continue
            for rule in rules:
                result = rule.execute(raw, bag=bag.snapshot())
                bag.apply(result.assignments)
                if stop_on_first and result.matched:
                    break
        return bag
