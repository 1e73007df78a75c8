"""既知 ASIN による重複除外モジュール."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from printcat.config import KNOWN_ID_PAGE_SIZE

logger = logging.getLogger(__name__)

# (offset, limit) -> その範囲の ASIN リスト
IdentifierPageReader = Callable[[int, int], list[str]]


class KnownIdentifierSet:
    """DB に既に存在する ASIN の集合（1 実行内で単調増加）."""

    def __init__(self, identifiers: Iterable[str] = ()):
        self._ids: set[str] = set(identifiers)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._ids

    def is_known(self, identifier: str) -> bool:
        return identifier in self._ids

    def mark_known(self, identifier: str) -> None:
        self._ids.add(identifier)

    def mark_all(self, identifiers: Iterable[str]) -> None:
        self._ids.update(identifiers)

    def filter_new(self, identifiers: Iterable[str]) -> list[str]:
        """未知の ASIN だけを入力順のまま返す."""
        return [i for i in identifiers if i not in self._ids]


def load_known_identifiers(
    reader: IdentifierPageReader,
    page_size: int = KNOWN_ID_PAGE_SIZE,
) -> KnownIdentifierSet:
    """全件をページングで読み込み、既知 ASIN 集合を作る.

    page_size 件ちょうど返る間は次ページを読み続ける。
    """
    known = KnownIdentifierSet()
    offset = 0
    while True:
        page = reader(offset, page_size)
        known.mark_all(page)
        if len(page) < page_size:
            break
        offset += page_size

    logger.info("既知 ASIN を読み込み: %d 件", len(known))
    return known
