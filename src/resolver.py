"""
照合候補から割当を確定する（信頼性ゲート + 状態遷移）
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from recon_models import (
    METHOD_AMOUNT,
    METHOD_TAX_ID,
    STATUS_ASSIGNED,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_PROCESSED,
    STATUS_SENT,
    MatchCandidate,
    Order,
)

# 後退はerrorへの遷移のみ。assigned→processed は再処理による再計算
ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_PROCESSED, STATUS_ERROR},
    STATUS_PROCESSED: {STATUS_PROCESSED, STATUS_ASSIGNED, STATUS_ERROR},
    STATUS_ASSIGNED: {STATUS_ASSIGNED, STATUS_PROCESSED, STATUS_SENT, STATUS_ERROR},
    STATUS_SENT: {STATUS_ERROR},
    STATUS_ERROR: {STATUS_PROCESSED, STATUS_ERROR},
}


class InvalidTransitionError(ValueError):
    pass


def check_transition(current: str, target: str) -> None:
    allowed = ALLOWED_TRANSITIONS.get(current)
    if allowed is None or target not in allowed:
        raise InvalidTransitionError(f"invalid status transition: {current} -> {target}")


@dataclass
class AssignmentDecision:
    status: str
    provider_id: Optional[str] = None
    order_id: Optional[str] = None
    confidence: Optional[float] = None
    method: Optional[str] = None
    reason: str = ""

    def to_fields(self) -> Dict:
        """割当フィールドは常に全項目を書く（再実行時に前回の決定を上書きするため）"""
        return {
            "status": self.status,
            "assigned_provider_id": self.provider_id,
            "assigned_order_id": self.order_id,
            "assignment_confidence": self.confidence,
            "assignment_method": self.method,
        }


def passes_reliability_gate(
    candidate: MatchCandidate,
    alternative: Optional[MatchCandidate],
    cfg: Dict,
) -> bool:
    gate = cfg["gate"]
    if candidate.method == METHOD_TAX_ID:
        return candidate.confidence >= gate["tax_id_min"]
    if candidate.confidence < gate["min_confidence"]:
        return False
    if alternative is None:
        return True
    return round(candidate.confidence - alternative.confidence, 6) >= gate["min_margin"]


def _alternative(provider_candidates: List[MatchCandidate], chosen: MatchCandidate) -> Optional[MatchCandidate]:
    for c in provider_candidates:
        if c.target_id != chosen.target_id:
            return c
    return None


def resolve_assignment(
    provider_candidates: List[MatchCandidate],
    order_candidates: List[MatchCandidate],
    orders_by_id: Dict[str, Order],
    cfg: Dict,
) -> AssignmentDecision:
    """候補リスト（ランク済み）から最終決定を返す。副作用なし"""
    best_provider = provider_candidates[0] if provider_candidates else None
    best_order = order_candidates[0] if order_candidates else None

    if best_order is not None:
        order = orders_by_id.get(best_order.target_id)
        owner_provider_id = order.provider_id if order else best_order.details.get("provider_id")
        candidate_provider = next(
            (c for c in provider_candidates if c.target_id == owner_provider_id), None
        )

        if candidate_provider is None and owner_provider_id:
            # 注文側の仕入先のみ判明（テキスト根拠なし）
            return AssignmentDecision(
                status=STATUS_ASSIGNED,
                provider_id=owner_provider_id,
                order_id=best_order.target_id,
                confidence=best_order.confidence,
                method=METHOD_AMOUNT,
                reason="order_owner_provider",
            )

        if candidate_provider is not None and candidate_provider.method == METHOD_AMOUNT:
            # 金額一致の根拠は注文レコードそのもの。ゲートを通さず注文の仕入先で確定
            return AssignmentDecision(
                status=STATUS_ASSIGNED,
                provider_id=candidate_provider.target_id,
                order_id=best_order.target_id,
                confidence=min(candidate_provider.confidence, best_order.confidence),
                method=METHOD_AMOUNT,
                reason="order_owner_provider",
            )

        if candidate_provider is not None:
            alternative = _alternative(provider_candidates, candidate_provider)
            if passes_reliability_gate(candidate_provider, alternative, cfg):
                return AssignmentDecision(
                    status=STATUS_ASSIGNED,
                    provider_id=candidate_provider.target_id,
                    order_id=best_order.target_id,
                    confidence=min(candidate_provider.confidence, best_order.confidence),
                    method=candidate_provider.method,
                    reason="gate_passed",
                )

    if best_provider is None:
        return AssignmentDecision(status=STATUS_PROCESSED, reason="no_match")

    # 注文なし or ゲート不通過: 最良候補の信頼度のみ記録し、人手確認へ
    provider_only_ok = passes_reliability_gate(
        best_provider, _alternative(provider_candidates, best_provider), cfg
    )
    return AssignmentDecision(
        status=STATUS_PROCESSED,
        provider_id=best_provider.target_id if provider_only_ok else None,
        confidence=best_provider.confidence,
        method=best_provider.method,
        reason="provider_only" if best_order is None else "gate_failed",
    )
