import os
import sys
from datetime import date
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from receipt_fields import (
    extract_currency,
    extract_receipt_fields,
    infer_payment_method,
    normalize_date,
    parse_amount,
)

TODAY = date(2024, 3, 10)

TRANSFER = """Comprobante de transferencia
Fecha: 05/03/2024
Nro. de operación: 987654321
Importe: $ 15.000,00
CUIT destinatario: 30-12345678-1
"""


@pytest.mark.parametrize("raw,expected", [
    ("1.234,56", Decimal("1234.56")),
    ("1,234.56", Decimal("1234.56")),
    ("15.000", Decimal("15000")),
    ("1.234.567", Decimal("1234567")),
    ("1234,5", Decimal("1234.5")),
    ("12.50", Decimal("12.50")),
    ("$ 15000", Decimal("15000")),
])
def test_parse_amount_formats(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", "$"])
def test_parse_amount_rejects_garbage(raw):
    assert parse_amount(raw) is None


def test_extract_transfer_receipt():
    fields = extract_receipt_fields(TRANSFER, today=TODAY)
    assert fields.amount == Decimal("15000")
    assert fields.receipt_number == "987654321"
    assert fields.payment_date == "2024-03-05"
    assert fields.currency == "ARS"
    assert fields.tax_ids == ["30123456781"]


def test_extract_from_empty_text():
    fields = extract_receipt_fields("", today=TODAY)
    assert fields.amount is None
    assert fields.receipt_number is None
    assert fields.payment_date is None
    assert fields.tax_ids == []


def test_normalize_date():
    assert normalize_date("2024-03-05", TODAY) == "2024-03-05"
    assert normalize_date("05/03/24", TODAY) == "2024-03-05"
    # 存在しない日付・未来日は採用しない
    assert normalize_date("31/02/2024", TODAY) is None
    assert normalize_date("05/03/2030", TODAY) is None


def test_currency_detection():
    assert extract_currency("Moneda: USD") == "USD"
    assert extract_currency("Total U$S 100") == "USD"
    assert extract_currency("Total $ 100") == "ARS"


def test_infer_payment_method():
    assert infer_payment_method("Transferencia_marzo.pdf") == "transferencia"
    assert infer_payment_method("cheque-001.jpg") == "cheque"
    assert infer_payment_method("foto.jpg") == "other"
    assert infer_payment_method(None) == "other"
