"""
支払証憑・請求書のOCRテキストから金額・通貨・番号・日付を抽出する
"""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from tax_id import find_tax_id_tokens

DEFAULT_CURRENCY = "ARS"
MAX_AMOUNT = Decimal("1000000000")

# 優先度順
AMOUNT_PATTERNS = [
    r"(?:importe\s+total|total\s+a\s+pagar|total\s+general|monto\s+transferido|importe\s+transferido)[\s:\-]*\$?\s*([0-9][0-9.,]*)",
    r"(?:monto|importe)[\s:\-]*\$?\s*([0-9][0-9.,]*)",
    r"\btotal[\s:\-]*\$?\s*([0-9][0-9.,]*)",
    r"\$\s*([0-9][0-9.,]*)",
]

RECEIPT_NUMBER_PATTERNS = [
    r"\b(?:n[úu]mero|nro\.?)[\s:\-]*(\d{4,5}-\d{8}|\d{4}-\d{4,8})",
    r"(?:comprobante|operaci[oó]n|transacci[oó]n|referencia)\s*(?:n[º°o]\.?|nro\.?|#)?[\s:\-]*(?=[A-Z\-]*\d)([A-Z0-9][A-Z0-9\-]{3,})",
    r"\b(?:n[º°]|nro\.?)[\s:\-#]*(?=[A-Z\-]*\d)([A-Z0-9][A-Z0-9\-]{3,})",
]

DATE_PATTERNS = [
    r"(?:fecha|date|emisi[oó]n)[^\d\n]{0,20}(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})",
    r"(?:fecha|date)[^\d\n]{0,20}(\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2})",
]

CURRENCY_PATTERNS = [
    (r"(?:moneda|currency)[\s:\-]*([A-Z]{3})\b", None),
    (r"\b(ARS|USD|EUR)\b", None),
    (r"U\$S|US\$|\bD[oó]lares\b", "USD"),
]


@dataclass
class ReceiptFields:
    amount: Optional[Decimal] = None
    currency: str = DEFAULT_CURRENCY
    receipt_number: Optional[str] = None
    payment_date: Optional[str] = None
    tax_ids: List[str] = field(default_factory=list)


def parse_amount(raw: Optional[str]) -> Optional[Decimal]:
    """'1.234,56' / '1,234.56' / '15.000' / '1234,5' をDecimalに"""
    if not raw:
        return None
    s = re.sub(r"[\$\s]", "", str(raw)).strip(".,")
    if not s:
        return None

    if "," in s and "." in s:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        parts = s.split(",")
        if len(parts) == 2 and len(parts[1]) <= 2:
            s = s.replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "." in s:
        parts = s.split(".")
        # 15.000 / 1.234.567 は桁区切り
        if len(parts) > 2 or len(parts[1]) == 3:
            s = s.replace(".", "")

    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def normalize_date(raw: str, today: Optional[date] = None) -> Optional[str]:
    """DD/MM/YYYY・YYYY-MM-DD をISO形式へ。不正な日付・未来日はNone"""
    today = today or date.today()
    parts = re.split(r"[/\-.]", raw.strip())
    if len(parts) != 3:
        return None
    try:
        if len(parts[0]) == 4:
            year, month, day = (int(p) for p in parts)
        else:
            day, month, year = (int(p) for p in parts)
            if year < 100:
                year += 2000
        parsed = date(year, month, day)
    except ValueError:
        return None
    if parsed > today:
        return None
    return parsed.isoformat()


def extract_amount(text: str) -> Optional[Decimal]:
    for pattern in AMOUNT_PATTERNS:
        for m in re.finditer(pattern, text, re.IGNORECASE):
            amount = parse_amount(m.group(1))
            if amount is not None and Decimal("0") < amount < MAX_AMOUNT:
                return amount
    return None


def extract_receipt_number(text: str) -> Optional[str]:
    for pattern in RECEIPT_NUMBER_PATTERNS:
        m = re.search(pattern, text, re.IGNORECASE)
        if m:
            return m.group(1).strip()
    return None


def extract_payment_date(text: str, today: Optional[date] = None) -> Optional[str]:
    for pattern in DATE_PATTERNS:
        for m in re.finditer(pattern, text, re.IGNORECASE):
            normalized = normalize_date(m.group(1), today)
            if normalized:
                return normalized
    return None


def extract_currency(text: str) -> str:
    for pattern, fixed in CURRENCY_PATTERNS:
        m = re.search(pattern, text, re.IGNORECASE)
        if m:
            return fixed or m.group(1).upper()
    return DEFAULT_CURRENCY


def extract_receipt_fields(text: str, today: Optional[date] = None) -> ReceiptFields:
    text = text or ""
    return ReceiptFields(
        amount=extract_amount(text),
        currency=extract_currency(text),
        receipt_number=extract_receipt_number(text),
        payment_date=extract_payment_date(text, today),
        tax_ids=find_tax_id_tokens(text),
    )


def infer_payment_method(filename: Optional[str]) -> str:
    """ファイル名から支払方法を推定"""
    lower = (filename or "").lower()
    if "transferencia" in lower or "transfer" in lower:
        return "transferencia"
    if "cheque" in lower:
        return "cheque"
    if "efectivo" in lower or "cash" in lower:
        return "efectivo"
    if "tarjeta" in lower or "card" in lower:
        return "tarjeta"
    return "other"
