import csv
from datetime import datetime
from pathlib import Path
from typing import List

from receipt_fields import parse_amount
from recon_models import Order, Provider
from tax_id import digits_only


class RegistryImporter:
    """仕入先・注文台帳のCSVをレコードストアへ取り込むクラス"""

    def __init__(self, store, encoding: str = "utf-8-sig"):
        self.store = store
        self.encoding = encoding

    def import_providers(self, file_path) -> List[Provider]:
        """仕入先マスタをインポート（列: id, owner_id, name, tax_id, phone）"""
        providers = []
        with open(Path(file_path), "r", encoding=self.encoding, newline="") as f:
            reader = csv.DictReader(f)
            for row in reader:
                name = (row.get("name") or "").strip()
                if not row.get("id") or not name:
                    print(f"⚠️ 仕入先行をスキップ（id/name なし）: {row}")
                    continue
                provider = Provider(
                    id=row["id"].strip(),
                    owner_id=(row.get("owner_id") or "").strip(),
                    name=name,
                    tax_id=digits_only(row.get("tax_id")) or None,
                    phone=(row.get("phone") or "").strip() or None,
                )
                self.store.add_provider(provider)
                providers.append(provider)

        print(f"✅ 仕入先 {len(providers)} 件をインポート")
        return providers

    def import_orders(self, file_path) -> List[Order]:
        """注文台帳をインポート（列: id, owner_id, provider_id, order_number, amount, status, created_at）"""
        orders = []
        with open(Path(file_path), "r", encoding=self.encoding, newline="") as f:
            reader = csv.DictReader(f)
            for row in reader:
                amount = parse_amount(row.get("amount"))
                if not row.get("id") or not row.get("provider_id") or amount is None:
                    print(f"⚠️ 注文行をスキップ（id/provider_id/amount 不正）: {row}")
                    continue
                created_at = (row.get("created_at") or "").strip()
                try:
                    created = datetime.fromisoformat(created_at) if created_at else None
                except ValueError:
                    print(f"⚠️ 注文行をスキップ（created_at 不正）: {row}")
                    continue
                order = Order(
                    id=row["id"].strip(),
                    owner_id=(row.get("owner_id") or "").strip(),
                    provider_id=row["provider_id"].strip(),
                    amount=amount,
                    status=(row.get("status") or "awaiting_payment").strip(),
                    order_number=(row.get("order_number") or "").strip() or None,
                    created_at=created,
                )
                self.store.add_order(order)
                orders.append(order)

        print(f"✅ 注文 {len(orders)} 件をインポート")
        return orders
