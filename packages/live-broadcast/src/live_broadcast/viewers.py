"""視聴者レジストリ - live セッションに参加中の視聴者を管理

参加/離脱メッセージは relay から順序保証なしで届く:
- 重複した join は冪等 (2件目は無視)
- join より先に届いた leave は何もしない
join では PeerLink を作らない (視聴者が描画準備できた時点で offerRequest を送る pull 型)。
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .models import Viewer
from .orchestrator import PeerLinkOrchestrator

logger = logging.getLogger(__name__)


class ViewerRegistry:
    """視聴者情報を管理するレジストリ"""

    def __init__(
        self,
        *,
        orchestrator: PeerLinkOrchestrator,
        admits: Optional[Callable[[str], bool]] = None,
    ):
        self._orchestrator = orchestrator
        self._admits = admits or (lambda _viewer_id: True)
        self._viewers: dict[str, Viewer] = {}
        self._total_views = 0
        self._peak_viewers = 0

    def __len__(self) -> int:
        return len(self._viewers)

    def __contains__(self, viewer_id: object) -> bool:
        return viewer_id in self._viewers

    @property
    def total_views(self) -> int:
        return self._total_views

    @property
    def peak_viewers(self) -> int:
        return self._peak_viewers

    async def on_viewer_join(self, viewer_id: str, display_name: str = "", address: Optional[str] = None) -> bool:
        """未登録なら追加する。追加した場合 True"""
        if viewer_id in self._viewers:
            if address:
                self._viewers[viewer_id].address = address
            logger.debug(f"Duplicate join ignored for {viewer_id}")
            return False

        if not self._admits(viewer_id):
            logger.warning(f"Viewer {viewer_id} is not in the session audience; join ignored")
            return False

        self._viewers[viewer_id] = Viewer(id=viewer_id, display_name=display_name, address=address)
        self._total_views += 1
        self._peak_viewers = max(self._peak_viewers, len(self._viewers))
        logger.info(f"Viewer joined: {viewer_id} ({display_name}). viewers={len(self._viewers)}")
        return True

    async def on_viewer_leave(self, viewer_id: str) -> Optional[Viewer]:
        """登録を削除し、その視聴者の PeerLink があれば閉じる"""
        viewer = self._viewers.pop(viewer_id, None)
        await self._orchestrator.close_link(viewer_id)

        if viewer is None:
            logger.debug(f"Leave for unknown viewer {viewer_id} ignored")
            return None

        logger.info(
            f"Viewer left: {viewer_id} after {viewer.watch_seconds()}s. viewers={len(self._viewers)}"
        )
        return viewer

    def set_minimized(self, viewer_id: str, minimized: bool) -> bool:
        viewer = self._viewers.get(viewer_id)
        if viewer is None:
            return False
        viewer.ui_minimized = minimized
        return True

    def get(self, viewer_id: str) -> Optional[Viewer]:
        return self._viewers.get(viewer_id)

    def find_by_address(self, address: str) -> Optional[Viewer]:
        for viewer in self._viewers.values():
            if viewer.address == address:
                return viewer
        return None

    def list_viewers(self) -> list[Viewer]:
        return list(self._viewers.values())

    def clear(self) -> int:
        count = len(self._viewers)
        self._viewers.clear()
        return count
