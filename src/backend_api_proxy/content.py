"""Content-Type の分類"""

from enum import Enum


class ContentCategory(Enum):
    """ボディの扱いを決める Content-Type の分類"""

    MULTIPART = "multipart/form-data"
    JSON = "application/json"
    FORM_URLENCODED = "application/x-www-form-urlencoded"
    OPAQUE = "*"


# 判定順 (先にマッチしたものを採用)
_MATCH_ORDER = (
    ContentCategory.MULTIPART,
    ContentCategory.JSON,
    ContentCategory.FORM_URLENCODED,
)


def classify(content_type: str | None) -> ContentCategory:
    """Content-Type ヘッダーの値を分類する

    大文字小文字を区別せず部分一致で判定し、どれにも該当しなければ OPAQUE を返す

    Args:
        content_type: Content-Type ヘッダーの値 (無い場合は None)

    Returns:
        該当する ContentCategory
    """
    if not content_type:
        return ContentCategory.OPAQUE
    lowered = content_type.lower()
    for category in _MATCH_ORDER:
        if category.value in lowered:
            return category
    return ContentCategory.OPAQUE
