"""検索結果ページを商品ごとのテキスト範囲に分割するモジュール.

DOM は組み立てない。data-asin 属性の出現位置から次の別 ASIN の出現位置までを
その商品の範囲とみなす局所的な近似で、境界付近の余分な内容は抽出側で除外する。
"""

from __future__ import annotations

import re
from collections.abc import Iterator

# data-asin="B0XXXXXXXX"（空の data-asin="" は対象外）
ITEM_MARKER_PATTERN = re.compile(r'data-asin="([A-Z0-9]{10})"')


def iter_item_spans(html: str) -> Iterator[tuple[str, str]]:
    """(ASIN, 範囲テキスト) をページ内の初出順に 1 件ずつ返す.

    同じ ASIN がスポンサー枠と通常枠で複数回現れても 1 度だけ返す。
    範囲は初出マーカーから、別 ASIN のマーカー（なければ文書末尾）まで。
    """
    markers = [(m.start(), m.group(1)) for m in ITEM_MARKER_PATTERN.finditer(html)]
    seen: set[str] = set()

    for i, (start, asin) in enumerate(markers):
        if asin in seen:
            continue
        seen.add(asin)

        end = len(html)
        for next_start, next_asin in markers[i + 1:]:
            if next_asin != asin:
                end = next_start
                break

        yield asin, html[start:end]
