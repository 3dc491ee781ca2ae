"""
CUIT（11桁の納税者番号）の正規化・チェックサム検証・テキスト走査
"""

import re
from typing import List, Optional

WEIGHTS = [5, 4, 3, 2, 7, 6, 5, 4, 3, 2]

_SEPARATORS = re.compile(r"[-. ]")

# 2桁 [区切り] 8桁 [区切り] 1桁。前後に数字が続く場合は対象外
TAX_ID_LABEL = r"C\.?\s?U\.?\s?I\.?\s?T\.?|CUIL|CUID|RUC"
TAX_ID_PATTERN = re.compile(
    r"(?:(?:" + TAX_ID_LABEL + r")\s*[:#-]?\s*)?(?<!\d)(\d{2}[-. ]?\d{8}[-. ]?\d)(?!\d)",
    re.IGNORECASE,
)


def normalize_tax_id(raw: Optional[str]) -> str:
    """区切り文字（- . 空白）を除去"""
    if not raw:
        return ""
    return _SEPARATORS.sub("", str(raw).strip())


def digits_only(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return re.sub(r"\D", "", str(raw))


def compute_check_digit(first_ten: str) -> int:
    total = sum(w * int(d) for w, d in zip(WEIGHTS, first_ten))
    result = 11 - (total % 11)
    if result == 11:
        return 0
    if result == 10:
        return 9
    return result


def is_valid_tax_id(raw: Optional[str]) -> bool:
    value = normalize_tax_id(raw)
    if not re.fullmatch(r"\d{11}", value):
        return False
    return compute_check_digit(value[:10]) == int(value[10])


def find_tax_id_tokens(text: Optional[str]) -> List[str]:
    """CUIT形式のトークンを出現順に返す（チェックサム未検証、数字のみ）"""
    if not text:
        return []
    return [normalize_tax_id(m.group(1)) for m in TAX_ID_PATTERN.finditer(text)]


def find_tax_ids(text: Optional[str]) -> List[str]:
    return [t for t in find_tax_id_tokens(text) if is_valid_tax_id(t)]


def format_tax_id(raw: Optional[str]) -> str:
    """表示用: 30-12345678-1"""
    value = normalize_tax_id(raw)
    if len(value) != 11:
        return value
    return f"{value[:2]}-{value[2:10]}-{value[10]}"
