#!/usr/bin/env python
"""
最近処理した識別子の重複防止キャッシュ
件数上限とTTLを持ち、所有者（呼び出し側）が生成して渡す
"""

import time
from collections import OrderedDict
from typing import Callable, Optional


class RecentIdentifierCache:
    """TTL付きの有界キャッシュ"""

    def __init__(self, ttl_seconds: int = 300, max_entries: int = 1000,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl_seconds: キャッシュ有効時間（秒）
            max_entries: 保持する最大件数（超過分は古い順に破棄）
            clock: 現在時刻関数（テスト用に差し替え可能）
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()

    def seen(self, key: str) -> bool:
        self._cleanup()
        return key in self._entries

    def add(self, key: str):
        self._entries.pop(key, None)
        self._entries[key] = self._clock()
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self, key: Optional[str] = None):
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        self._cleanup()
        return len(self._entries)

    def _cleanup(self):
        """期限切れエントリを削除"""
        cutoff = self._clock() - self.ttl_seconds
        while self._entries:
            key, ts = next(iter(self._entries.items()))
            if ts >= cutoff:
                break
            self._entries.popitem(last=False)
