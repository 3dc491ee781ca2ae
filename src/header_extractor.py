#!/usr/bin/env python3
"""
請求書ヘッダーからの当事者（CUIT・商号・住所）抽出

地域の税務請求書（AFIP形式）のヘッダーブロックを前提としたルールベース抽出。
抽出ルールは (lines, index) -> Optional[str] の純粋関数で、優先順に試行する。
"""

import re
import unicodedata
from functools import partial
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from recon_models import Party, ROLE_UNKNOWN
from tax_id import TAX_ID_LABEL, digits_only, find_tax_id_tokens, is_valid_tax_id

DEFAULT_WINDOW = 10
DEFAULT_ADDRESS_LOOKAHEAD = 5

LEGAL_NAME_LABEL = re.compile(
    r"\b(?:raz[oó]n\s+social|nombre\s+legal|denominaci[oó]n(?:\s+social)?|apellido\s+y\s+nombre|se[nñ]or(?:\(?es\)?)?)",
    re.IGNORECASE,
)
ADDRESS_LABEL = re.compile(
    r"\b(?:domicilio(?:\s+(?:comercial|fiscal|legal))?|direcci[oó]n)",
    re.IGNORECASE,
)
OTHER_LABEL = re.compile(
    r"\b(?:condici[oó]n\s+(?:frente\s+al\s+iva|de\s+venta)|ingresos\s+brutos|"
    r"inicio\s+de\s+actividades|fecha(?:\s+de\s+(?:emisi[oó]n|vencimiento))?|"
    r"punto\s+de\s+venta|comp\.?\s*nro|tel[eé]fono|e-?mail|per[ií]odo\s+facturado|"
    r"cliente)",
    re.IGNORECASE,
)
TAX_ID_LABEL_RE = re.compile(r"\b(?:" + TAX_ID_LABEL + r")(?=\s*[:#-]|\s*\d|\s*$)", re.IGNORECASE)

STREET_KEYWORDS = re.compile(
    r"\b(?:calle|av|avda|avenida|ruta|pasaje|pje|bv|bvard|boulevard|diagonal|km|piso|dpto|depto|local)\b|\bn[°º]",
    re.IGNORECASE,
)

# ヘッダーに頻出するが商号ではない語
INVOICE_KEYWORDS = re.compile(
    r"^(?:ORIGINAL|DUPLICADO|TRIPLICADO|FACTURA|RECIBO|REMITO|NOTA DE (?:CREDITO|DEBITO)|"
    r"COD\.?|CODIGO|TOTAL|SUBTOTAL|IVA|RESPONSABLE INSCRIPTO|MONOTRIBUTO|CONSUMIDOR FINAL|"
    r"EXENTO|COMPROBANTE)\b"
)

_LABELS = (LEGAL_NAME_LABEL, ADDRESS_LABEL, OTHER_LABEL, TAX_ID_LABEL_RE)
# CUITラベルでは切らない（CUITを含む値はそのまま棄却する）
_FIELD_LABELS = (LEGAL_NAME_LABEL, ADDRESS_LABEL, OTHER_LABEL)

Rule = Callable[[Sequence[str], int], Optional[str]]


def _fold(text: str) -> str:
    """アクセント除去 + 大文字化"""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).upper().strip()


def _split_lines(text: str) -> List[str]:
    return [l.strip() for l in re.split(r"\r?\n", text or "") if l.strip()]


def _clean_value(text: str) -> str:
    return text.strip().lstrip(":#-").strip().rstrip(",;").strip()


def _is_label_line(line: str) -> bool:
    return any(label.search(line) for label in _LABELS)


def _is_label_text(text: str) -> bool:
    """値そのものがラベルだけで構成されているか"""
    value = _clean_value(text).rstrip(":").strip()
    return any(label.fullmatch(value) for label in _LABELS)


def _is_tax_id_line(line: str) -> bool:
    return bool(find_tax_id_tokens(line))


def _is_keyword_line(line: str) -> bool:
    return bool(INVOICE_KEYWORDS.match(_fold(line)))


def _looks_like_address(text: str) -> bool:
    return bool(STREET_KEYWORDS.search(text) or re.search(r"\d", text))


def _is_address_line(line: str) -> bool:
    if ADDRESS_LABEL.search(line):
        return True
    return bool(STREET_KEYWORDS.search(line) and re.search(r"\d", line))


def _cut_at_next_label(text: str) -> str:
    """同一行に別ラベルが続く場合はその手前で切る（例: 'ACME SRL Domicilio: ...'）"""
    cut = len(text)
    for label in _FIELD_LABELS:
        m = label.search(text, 1)
        if m and m.start() < cut:
            cut = m.start()
    return _clean_value(text[:cut])


def _label_remainder(line: str, label: re.Pattern) -> Optional[str]:
    m = label.search(line)
    if not m:
        return None
    return _cut_at_next_label(line[m.end():])


# --- 商号ルール ---

def name_same_line(lines: Sequence[str], index: int) -> Optional[str]:
    rest = _label_remainder(lines[index], LEGAL_NAME_LABEL)
    if not rest:
        return None
    if _is_label_text(rest) or find_tax_id_tokens(rest):
        return None
    return rest


def name_next_line(lines: Sequence[str], index: int) -> Optional[str]:
    if not LEGAL_NAME_LABEL.search(lines[index]) or name_same_line(lines, index):
        return None
    if index + 1 >= len(lines):
        return None
    candidate = lines[index + 1]
    if _is_label_line(candidate) or _is_address_line(candidate) or _is_tax_id_line(candidate):
        return None
    return _clean_value(candidate) or None


def name_heuristic(lines: Sequence[str], index: int) -> Optional[str]:
    line = lines[index]
    if not 2 <= len(line) <= 150:
        return None
    if re.search(r"\d{3,}", line):
        return None
    if _is_label_line(line) or _is_keyword_line(line) or _is_address_line(line):
        return None
    return line


LEGAL_NAME_RULES: List[Rule] = [name_same_line, name_next_line, name_heuristic]


# --- 住所ルール ---

def address_same_line(lines: Sequence[str], index: int) -> Optional[str]:
    rest = _label_remainder(lines[index], ADDRESS_LABEL)
    if rest and _looks_like_address(rest) and not find_tax_id_tokens(rest):
        return rest
    return None


def _address_scan(lines: Sequence[str], start: int, lookahead: int) -> Optional[str]:
    for line in lines[start:start + lookahead]:
        if _is_label_line(line) or _is_tax_id_line(line) or _is_keyword_line(line):
            continue
        if not re.search(r"[^\W\d_]", line):
            continue
        if _looks_like_address(line):
            return line
    return None


def address_after_label(lines: Sequence[str], index: int, lookahead: int = DEFAULT_ADDRESS_LOOKAHEAD) -> Optional[str]:
    if not ADDRESS_LABEL.search(lines[index]) or address_same_line(lines, index):
        return None
    return _address_scan(lines, index + 1, lookahead)


def _window(center: int, size: int, radius: int) -> Iterator[int]:
    """中心から近い順（同距離なら前の行を先）"""
    yield center
    for offset in range(1, radius + 1):
        if center - offset >= 0:
            yield center - offset
        if center + offset < size:
            yield center + offset


def first_match(rules: Sequence[Rule], lines: Sequence[str], indices: Sequence[int]) -> Optional[str]:
    for rule in rules:
        for j in indices:
            value = rule(lines, j)
            if value:
                return value
    return None


def _anchor_lines(lines: Sequence[str]) -> List[int]:
    """有効なCUITを含む行番号"""
    return [i for i, line in enumerate(lines) if any(is_valid_tax_id(t) for t in find_tax_id_tokens(line))]


def _block_bounds(anchors: Sequence[int], pos: int, size: int) -> Tuple[int, int]:
    """
    anchors[pos] のCUITに属する行範囲 [lo, hi]
    隣のCUIT行との間は近い方に属し、同距離なら後ろのCUITに属する
    """
    i = anchors[pos]
    lo = (i + anchors[pos - 1] + 1) // 2 if pos > 0 else 0
    hi = (i + anchors[pos + 1] + 1) // 2 - 1 if pos + 1 < len(anchors) else size - 1
    return lo, hi


def extract_parties(text: str, window: int = DEFAULT_WINDOW,
                    address_lookahead: int = DEFAULT_ADDRESS_LOOKAHEAD) -> List[Party]:
    """テキストからCUITごとにPartyを抽出する（同一CUITの重複はそのまま残す）"""
    lines = _split_lines(text)
    parties: List[Party] = []
    address_rules = [address_same_line, partial(address_after_label, lookahead=address_lookahead)]
    anchors = _anchor_lines(lines)

    for pos, i in enumerate(anchors):
        # 他のCUITのブロックに属する行は参照しない
        lo, hi = _block_bounds(anchors, pos, len(lines))
        block = lines[lo:hi + 1]
        center = i - lo
        indices = list(_window(center, len(block), window))

        for token in find_tax_id_tokens(lines[i]):
            if not is_valid_tax_id(token):
                # チェックサム不一致はエラーではなく除外
                continue
            legal_name = first_match(LEGAL_NAME_RULES, block, indices)
            address = first_match(address_rules, block, indices)
            if not address:
                address = _address_scan(block, center + 1, address_lookahead)
            parties.append(Party(tax_id=token, legal_name=legal_name, address=address, role=ROLE_UNKNOWN))

    return parties


def choose_counterparty(parties: List[Party], owner_tax_id: Optional[str] = None) -> Optional[Party]:
    """自社（買い手）ではない当事者＝仕入先を選ぶ"""
    if not parties:
        return None
    if owner_tax_id:
        owner = digits_only(owner_tax_id)
        for party in parties:
            if party.tax_id and digits_only(party.tax_id) != owner:
                return party
    return parties[0]
