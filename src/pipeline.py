#!/usr/bin/env python3
"""
支払証憑の照合パイプライン

OCRテキスト → 当事者・証憑項目の抽出 → 仕入先照合 → 注文照合 → 割当決定 → 永続化
1回の呼び出しで1レコードを処理する。実行間で共有する可変状態は持たない。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from config_loader import load_matching_config, load_runtime_settings
from header_extractor import choose_counterparty, extract_parties
from matcher import match_orders, match_providers
from notifier import SlackNotifier
from receipt_fields import DEFAULT_CURRENCY, extract_receipt_fields, infer_payment_method
from recent_cache import RecentIdentifierCache
from recon_models import (
    STATUS_ASSIGNED,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_PROCESSED,
    STATUS_SENT,
    AssignmentAttempt,
    MatchCandidate,
    Party,
    PaymentRecord,
    Provider,
)
from resolver import AssignmentDecision, check_transition, resolve_assignment
from state_store import SqliteRecordStore


class RecordNotFoundError(LookupError):
    pass


@dataclass
class ReconciliationResult:
    record_id: str
    status: str
    decision: Optional[AssignmentDecision] = None
    provider_candidates: List[MatchCandidate] = field(default_factory=list)
    order_candidates: List[MatchCandidate] = field(default_factory=list)
    attempts: List[AssignmentAttempt] = field(default_factory=list)
    error: Optional[str] = None


def build_attempts(
    record_id: str,
    provider_candidates: List[MatchCandidate],
    order_candidates: List[MatchCandidate],
    cfg: Dict,
) -> List[AssignmentAttempt]:
    """検討した全候補を監査用の試行行に変換"""
    threshold = cfg["audit"]["success_above"]
    attempts = []
    for kind, candidates in (("provider", provider_candidates), ("order", order_candidates)):
        for c in candidates:
            attempts.append(AssignmentAttempt(
                record_id=record_id,
                target_id=c.target_id,
                target_kind=kind,
                method=c.method,
                confidence=c.confidence,
                details=c.details,
                success=c.confidence > threshold,
            ))
    return attempts


class ReconciliationPipeline:
    """
    Args:
        store: get_record / update_record / insert_assignment_attempts /
            list_providers / list_open_orders を持つレコードストア
        cfg: 照合設定（省略時は config/matching.yml）
        notifier: assigned時の通知先（notify_assigned を持つ）
        recognizer: OCR（recognize(bytes, content_type) -> {"text", "metadata"}）
        now_fn: 現在時刻関数
    """

    def __init__(self, store, cfg: Optional[Dict] = None, notifier=None, recognizer=None,
                 now_fn: Callable[[], datetime] = datetime.now):
        self.store = store
        self.cfg = cfg or load_matching_config()
        self.notifier = notifier
        self.recognizer = recognizer
        self.now_fn = now_fn

    # --- 抽出 ---

    def extract_counterparty(self, text: str, owner_tax_id: Optional[str] = None) -> Optional[Party]:
        """請求書テキストから仕入先（自社以外の当事者）を返す"""
        parties = self._extract_parties(text)
        return choose_counterparty(parties, owner_tax_id)

    def _extract_parties(self, text: str) -> List[Party]:
        extraction = self.cfg["extraction"]
        return extract_parties(text, extraction["window"], extraction["address_lookahead"])

    def ingest_document(self, record_id: str, content: bytes, content_type: str,
                        filename: Optional[str] = None, owner_tax_id: Optional[str] = None) -> PaymentRecord:
        if self.recognizer is None:
            raise RuntimeError("OCR recognizer is not configured")
        # OCR障害はそのまま呼び出し側へ（リトライ判断は呼び出し側）
        ocr = self.recognizer.recognize(content, content_type)
        return self.ingest_text(record_id, ocr.get("text") or "", metadata=ocr.get("metadata"),
                                filename=filename, owner_tax_id=owner_tax_id)

    def ingest_text(self, record_id: str, text: str, metadata: Optional[Dict] = None,
                    filename: Optional[str] = None, owner_tax_id: Optional[str] = None) -> PaymentRecord:
        record = self._load(record_id)
        check_transition(record.status, STATUS_PROCESSED)
        print(f"📄 [抽出] 証憑 {record_id} のテキストを解析中...")

        try:
            fields = extract_receipt_fields(text, today=self.now_fn().date())
            parties = self._extract_parties(text)
            counterparty = choose_counterparty(parties, owner_tax_id)
        except Exception as e:
            self._mark_error(record_id, f"extraction failed: {e}")
            return self._load(record_id)

        extracted = dict(record.extracted_fields or {})
        extracted.update({
            "text": text,
            "tax_ids": fields.tax_ids,
            "parties": [p.to_dict() for p in parties],
            "counterparty": counterparty.to_dict() if counterparty else None,
        })
        if metadata:
            extracted["metadata"] = metadata

        updates = {
            "extracted_fields": extracted,
            "status": STATUS_PROCESSED,
            "processed_at": self.now_fn().isoformat(),
        }
        if record.amount is None and fields.amount is not None:
            updates["amount"] = fields.amount
        if not record.receipt_number and fields.receipt_number:
            updates["receipt_number"] = fields.receipt_number
        if not record.payment_date and fields.payment_date:
            updates["payment_date"] = fields.payment_date
        if fields.currency != DEFAULT_CURRENCY or not record.currency:
            updates["currency"] = fields.currency
        if filename and not record.payment_method:
            updates["payment_method"] = infer_payment_method(filename)

        self.store.update_record(record_id, updates)
        print(f"  ✅ 抽出完了: 金額={updates.get('amount', record.amount)}, CUIT={len(fields.tax_ids)}件, 当事者={len(parties)}件")
        return self._load(record_id)

    # --- 照合・割当 ---

    def process_record(self, record_id: str) -> ReconciliationResult:
        record = self._load(record_id)
        if record.status == STATUS_SENT:
            print(f"⏭️ 送付済みのため再処理しません: {record_id}")
            return ReconciliationResult(record_id=record_id, status=record.status)

        print(f"🔄 [照合] 証憑 {record_id} を処理中 (金額={record.amount})")
        statuses = self.cfg["open_order_statuses"]

        # 台帳の取得失敗は上流障害として伝播させる
        providers = self.store.list_providers(record.owner_id)
        open_orders = self.store.list_open_orders(record.owner_id, None, statuses)

        try:
            provider_candidates = match_providers(record, providers, open_orders, self.cfg, now=self.now_fn())
        except Exception as e:
            return self._fail(record_id, f"matching failed: {e}")

        provider_ids = [c.target_id for c in provider_candidates]
        candidate_orders = self.store.list_open_orders(record.owner_id, provider_ids, statuses) if provider_ids else []

        try:
            order_candidates = match_orders(record, provider_candidates, candidate_orders, self.cfg)
            decision = resolve_assignment(
                provider_candidates, order_candidates, {o.id: o for o in candidate_orders}, self.cfg
            )
        except Exception as e:
            return self._fail(record_id, f"matching failed: {e}", provider_candidates)

        # pending / error は processed を経由したものとして扱う
        current = STATUS_PROCESSED if record.status in (STATUS_PENDING, STATUS_ERROR) else record.status
        check_transition(current, decision.status)

        attempts = build_attempts(record_id, provider_candidates, order_candidates, self.cfg)
        updates = decision.to_fields()
        updates["processing_error"] = None
        updates["processed_at"] = self.now_fn().isoformat()

        try:
            self.store.update_record(record_id, updates)
            # 候補がなくても空のバッチで記録処理を呼ぶ
            self.store.insert_assignment_attempts(attempts)
        except Exception as e:
            return self._fail(record_id, f"persistence failed: {e}", provider_candidates, order_candidates)

        if decision.status == STATUS_ASSIGNED:
            print(f"  ✅ 割当確定: provider={decision.provider_id} order={decision.order_id} "
                  f"confidence={decision.confidence:.2f} ({decision.method})")
            self._notify(record_id, providers, decision)
        else:
            print(f"  ⚠️ 自動割当なし ({decision.reason}) - 人手確認待ち")

        return ReconciliationResult(
            record_id=record_id,
            status=decision.status,
            decision=decision,
            provider_candidates=provider_candidates,
            order_candidates=order_candidates,
            attempts=attempts,
        )

    def mark_sent(self, record_id: str, message_id: Optional[str] = None) -> PaymentRecord:
        """外部配信の完了を記録"""
        record = self._load(record_id)
        check_transition(record.status, STATUS_SENT)
        self.store.update_record(record_id, {
            "status": STATUS_SENT,
            "sent_at": self.now_fn().isoformat(),
            "message_id": message_id,
        })
        return self._load(record_id)

    # --- 内部 ---

    def _load(self, record_id: str) -> PaymentRecord:
        record = self.store.get_record(record_id)
        if record is None:
            raise RecordNotFoundError(f"payment record not found: {record_id}")
        return record

    def _mark_error(self, record_id: str, reason: str):
        print(f"❌ [照合] {record_id}: {reason}")
        self.store.update_record(record_id, {"status": STATUS_ERROR, "processing_error": reason})

    def _fail(self, record_id: str, reason: str,
              provider_candidates: Optional[List[MatchCandidate]] = None,
              order_candidates: Optional[List[MatchCandidate]] = None) -> ReconciliationResult:
        try:
            self._mark_error(record_id, reason)
        except Exception as e:
            # ストア停止中はerror状態も書けない。結果のみ返す
            print(f"❌ [照合] {record_id}: error状態の保存に失敗: {e}")
        return ReconciliationResult(
            record_id=record_id,
            status=STATUS_ERROR,
            provider_candidates=provider_candidates or [],
            order_candidates=order_candidates or [],
            error=reason,
        )

    def _notify(self, record_id: str, providers: List[Provider], decision: AssignmentDecision):
        if self.notifier is None:
            return
        provider = next((p for p in providers if p.id == decision.provider_id), None)
        try:
            self.notifier.notify_assigned(self._load(record_id), provider)
        except Exception as e:
            # 通知失敗はレコード状態に影響させない
            print(f"  ⚠️ 通知エラー: {e}")


def build_pipeline(cfg: Optional[Dict] = None, recognizer=None) -> ReconciliationPipeline:
    """環境変数（.env）からストアと通知先を組み立てる"""
    settings = load_runtime_settings()
    store = SqliteRecordStore(settings["db_path"])
    store.init_db()

    notifier = None
    if settings["slack_bot_token"] and settings["slack_channel_id"]:
        notifier = SlackNotifier(
            settings["slack_bot_token"],
            settings["slack_channel_id"],
            dedup_cache=RecentIdentifierCache(ttl_seconds=settings["notify_ttl_seconds"]),
        )
    else:
        print("⚠️ SLACK_BOT_TOKEN / SLACK_CHANNEL_ID が未設定のため通知は無効です")

    return ReconciliationPipeline(store, cfg=cfg, notifier=notifier, recognizer=recognizer)
