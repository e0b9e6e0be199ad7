from __future__ import annotations

import itertools
import time
from typing import Any

from tissue_migrate.models.graph import GraphNode

"""Natural-key uniquification for the ``unique`` run option.

Test migrations run against a shared database; uniquified keys keep each run's
objects distinct from earlier runs. Within one Uniquifier the same input value
always maps to the same unique value, so two rows naming the same participant
still refer to one object.
"""

__all__ = [
    "Uniquifier",
]

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _ALPHABET[r] + out
        if n == 0:
            return out


class Uniquifier:
    def __init__(self, seed: int | None = None) -> None:
        self._prefix = _base36(seed if seed is not None else int(time.time() * 1000))
        self._counter = itertools.count(1)
        self._memo: dict[tuple[str, str], str] = {}

    def uniquify_value(self, value: Any, scope: str = "") -> str:
        text = str(value)
        key = (scope, text)
        unique = self._memo.get(key)
        if unique is None:
            suffix = f"{self._prefix}{_base36(next(self._counter))}"
            # メールアドレスは name_suffix@test.com 形式
            if "@" in text:
                unique = f"{text.split('@', 1)[0]}_{suffix}@test.com"
            else:
                unique = f"{text}_{suffix}"
            self._memo[key] = unique
        return unique

    def uniquify(self, node: GraphNode) -> None:
        """Rewrite every ``unique`` attribute of the node in place."""
        for attr in node.cls.unique_attributes:
            value = node.get(attr.name)
            if value is None or attr.is_reference:
                continue
            scope = f"{node.class_name}.{attr.name}"
            if attr.is_collection:
                node.set(attr.name, [self.uniquify_value(v, scope) for v in value])
            else:
                node.set(attr.name, self.uniquify_value(value, scope))
