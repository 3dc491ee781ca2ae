import requests
from typing import Dict, Optional

from recent_cache import RecentIdentifierCache
from recon_models import PaymentRecord, Provider

SLACK_POST_URL = "https://slack.com/api/chat.postMessage"


def format_assignment_message(record: PaymentRecord, provider: Optional[Provider] = None) -> str:
    provider_label = provider.name if provider else record.assigned_provider_id
    amount = f"${record.amount:,}" if record.amount is not None else "N/A"
    confidence = record.assignment_confidence or 0.0
    return (
        f"✅ 支払証憑を自動割当しました\n"
        f"• 証憑: {record.receipt_number or record.id}\n"
        f"• 仕入先: {provider_label}\n"
        f"• 注文: {record.assigned_order_id}\n"
        f"• 金額: {amount} {record.currency}\n"
        f"• 信頼度: {confidence:.0%} ({record.assignment_method})"
    )


class SlackNotifier:
    """assigned になった証憑をSlackへ通知する（配信そのものは外部）"""

    def __init__(self, bot_token: str, channel_id: str,
                 dedup_cache: Optional[RecentIdentifierCache] = None,
                 timeout: int = 10):
        self.bot_token = bot_token
        self.channel_id = channel_id
        self.dedup_cache = dedup_cache
        self.timeout = timeout

    def notify_assigned(self, record: PaymentRecord, provider: Optional[Provider] = None) -> Optional[str]:
        """送信したメッセージのtsを返す。重複抑止でスキップした場合はNone"""
        key = f"{record.id}:{record.assigned_provider_id}:{record.assigned_order_id}"
        if self.dedup_cache is not None and self.dedup_cache.seen(key):
            print(f"  ⏭️ 通知済みのためスキップ: {record.id}")
            return None
        ts = self.post_message({"text": format_assignment_message(record, provider)})
        if self.dedup_cache is not None:
            self.dedup_cache.add(key)
        return ts

    def post_message(self, payload: Dict) -> str:
        headers = {"Authorization": f"Bearer {self.bot_token}", "Content-Type": "application/json; charset=utf-8"}
        resp = requests.post(SLACK_POST_URL, headers=headers, json={"channel": self.channel_id, **payload},
                             timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not data.get("ok"):
            raise RuntimeError(f"Slack error: {data}")
        return data.get("ts")
