import re
import unicodedata
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from rapidfuzz.distance import JaroWinkler

from config_loader import tolerance
from recon_models import (
    METHOD_AMOUNT,
    METHOD_EXACT_ORDER,
    METHOD_PROVIDER,
    METHOD_TAX_ID,
    METHOD_TOLERANCE_ORDER,
    MatchCandidate,
    Order,
    PaymentRecord,
    Provider,
)
from tax_id import digits_only, find_tax_id_tokens

METHOD_PRIORITY = {METHOD_TAX_ID: 0, METHOD_AMOUNT: 1, METHOD_PROVIDER: 2}
TAX_ID_FULL_CONFIDENCE = 1.0

_LEGAL_SUFFIXES = re.compile(r"\b(?:S\.?\s?R\.?\s?L|S\.?\s?A\.?\s?S|S\.?\s?A|S\.?\s?C\.?\s?A|S\.?\s?H)\.?$")


def _fold_text(text: Optional[str]) -> str:
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    s = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"\s+", " ", s).strip().casefold()


def _normalize_name(text: Optional[str]) -> str:
    if not text:
        return ""
    s = _fold_text(text).upper()
    s = _LEGAL_SUFFIXES.sub("", s)
    s = re.sub(r"[\s.,]+", "", s)
    return s


def _similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return JaroWinkler.normalized_similarity(a, b)


def _iter_strings(value) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _iter_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _iter_strings(v)


def record_text(record: PaymentRecord) -> str:
    """照合に使う自由テキスト（証憑番号 + OCR抽出フィールド）"""
    parts = [record.receipt_number or ""]
    parts.extend(_iter_strings(record.extracted_fields or {}))
    return "\n".join(p for p in parts if p)


def _counterparty_name(record: PaymentRecord) -> Optional[str]:
    counterparty = (record.extracted_fields or {}).get("counterparty") or {}
    return counterparty.get("legal_name") if isinstance(counterparty, dict) else None


def is_open(order: Order, cfg: Dict) -> bool:
    return order.status in cfg["open_order_statuses"]


def rank_candidates(candidates: List[MatchCandidate]) -> List[MatchCandidate]:
    """仕入先IDで重複排除（最高信頼度を残す）→ 手法優先度 → 信頼度順"""
    best: Dict[str, MatchCandidate] = {}
    for c in candidates:
        current = best.get(c.target_id)
        if current is None or (c.confidence, -METHOD_PRIORITY.get(c.method, 9)) > (
            current.confidence, -METHOD_PRIORITY.get(current.method, 9)
        ):
            best[c.target_id] = c
    return sorted(
        best.values(),
        key=lambda c: (METHOD_PRIORITY.get(c.method, 9), -c.confidence, c.target_id),
    )


def match_providers(
    record: PaymentRecord,
    providers: List[Provider],
    open_orders: List[Order],
    cfg: Dict,
    now: Optional[datetime] = None,
) -> List[MatchCandidate]:
    conf = cfg["confidence"]
    now = now or datetime.now()
    providers_by_id = {p.id: p for p in providers}
    orders = [o for o in open_orders if is_open(o, cfg) and o.provider_id in providers_by_id]
    text = record_text(record)
    matches: List[MatchCandidate] = []

    # 1. CUIT一致（最優先。見つかれば他のルールは評価しない）
    tokens = set(find_tax_id_tokens(text))
    for provider in providers:
        provider_tax_id = digits_only(provider.tax_id)
        if provider_tax_id and provider_tax_id in tokens:
            matches.append(MatchCandidate(
                target_id=provider.id,
                confidence=conf["tax_id_match"],
                method=METHOD_TAX_ID,
                details={"provider_name": provider.name, "tax_id": provider_tax_id},
            ))
    if matches:
        print(f"  ✅ [照合] CUIT一致: {len(matches)}件")
        return rank_candidates(matches)

    # 2. 仕入先名の部分一致
    haystack = _fold_text(text)
    legal_name = _counterparty_name(record)
    for provider in providers:
        name = _fold_text(provider.name)
        if haystack and name and name in haystack:
            details = {"provider_name": provider.name, "receipt_number": record.receipt_number}
            if legal_name:
                details["legal_name_similarity"] = round(
                    _similarity(_normalize_name(provider.name), _normalize_name(legal_name)), 3
                )
            matches.append(MatchCandidate(provider.id, conf["name_match"], METHOD_PROVIDER, details))

    # 3. 直近の未払い注文を持つ仕入先（テキスト根拠なしの候補）
    if not matches:
        cutoff = now - timedelta(days=cfg["recent_order_days"])
        for order in orders:
            if order.created_at and order.created_at >= cutoff:
                matches.append(MatchCandidate(
                    target_id=order.provider_id,
                    confidence=conf["recent_order"],
                    method=METHOD_PROVIDER,
                    details={
                        "provider_name": providers_by_id[order.provider_id].name,
                        "order_id": order.id,
                        "order_number": order.order_number,
                        "match_reason": "recent_order",
                    },
                ))

    # 4. 金額一致
    amount = record.amount
    if amount is not None and amount > 0:
        amount_matches = []
        tol = tolerance(cfg, "provider_amount")
        for order in orders:
            difference = abs(Decimal(order.amount) - amount)
            if difference <= tol:
                amount_matches.append(MatchCandidate(
                    target_id=order.provider_id,
                    confidence=conf["amount_exact"],
                    method=METHOD_AMOUNT,
                    details={
                        "amount": str(amount),
                        "order_id": order.id,
                        "order_number": order.order_number,
                    },
                ))

        if not amount_matches:
            wide = tolerance(cfg, "provider_amount_wide")
            for order in orders:
                difference = abs(Decimal(order.amount) - amount)
                if difference <= wide:
                    confidence = max(
                        conf["amount_tolerance_floor"],
                        conf["amount_exact"] - float(difference / amount),
                    )
                    amount_matches.append(MatchCandidate(
                        target_id=order.provider_id,
                        confidence=round(confidence, 4),
                        method=METHOD_AMOUNT,
                        details={
                            "amount": str(amount),
                            "order_amount": str(order.amount),
                            "difference": str(difference),
                            "order_id": order.id,
                            "order_number": order.order_number,
                        },
                    ))
        matches.extend(amount_matches)

    ranked = rank_candidates(matches)
    print(f"  🔍 [照合] 仕入先候補: {len(ranked)}件")
    return ranked


def match_orders(
    record: PaymentRecord,
    provider_candidates: List[MatchCandidate],
    orders: List[Order],
    cfg: Dict,
) -> List[MatchCandidate]:
    # 仕入先が特定できない限り注文は割り当てない
    if not provider_candidates:
        return []
    amount = record.amount
    if amount is None or amount <= 0:
        return []

    conf = cfg["confidence"]
    tol = tolerance(cfg, "order_amount")
    by_provider: Dict[str, MatchCandidate] = {}
    for c in provider_candidates:
        by_provider.setdefault(c.target_id, c)

    best: Dict[str, MatchCandidate] = {}
    for order in orders:
        candidate = by_provider.get(order.provider_id)
        if candidate is None or not is_open(order, cfg):
            continue
        difference = abs(Decimal(order.amount) - amount)
        if difference > tol:
            continue

        if candidate.method == METHOD_TAX_ID and candidate.confidence >= TAX_ID_FULL_CONFIDENCE:
            base = candidate.confidence
        else:
            base = conf["order_exact"]

        if difference == 0:
            confidence = base
            method = METHOD_EXACT_ORDER
        else:
            confidence = max(
                conf["order_tolerance_floor"],
                base - float(difference / amount) * conf["order_tolerance_slope"],
            )
            method = METHOD_TOLERANCE_ORDER

        match = MatchCandidate(
            target_id=order.id,
            confidence=round(confidence, 4),
            method=method,
            details={
                "order_number": order.order_number,
                "provider_id": order.provider_id,
                "provider_method": candidate.method,
                "amount": str(amount),
                "order_amount": str(order.amount),
                "difference": str(difference),
            },
        )
        current = best.get(order.id)
        if current is None or match.confidence > current.confidence:
            best[order.id] = match

    ranked = sorted(
        best.values(),
        key=lambda c: (-c.confidence, Decimal(c.details["difference"]), c.target_id),
    )
    print(f"  🔍 [照合] 注文候補: {len(ranked)}件")
    return ranked
