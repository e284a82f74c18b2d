"""
PeerLinkOrchestrator - 視聴者ごとの PeerLink を管理

視聴者1人につき独立した接続ステートマシン (PeerLink) を1つだけ持つ。
1人の失敗・離脱が他の視聴者の接続に影響しないよう、以下を守る:

- answer / ICE candidate は必ず視聴者アドレスでルーティングする
  ("answer 待ちの最初のリンク" に当てはめることはしない)
- 同じ視聴者に対する操作は視聴者ごとのロックで直列化する (視聴者間のロックはない)
- 視聴者単位の失敗はこのクラスの外に出さず、そのリンクを閉じて取り除くだけにする

クローズ (離脱/セッション終了) とトランスポートの状態通知はロックを取らず、
対象の PeerLink オブジェクトに対してのみ作用する。進行中のネゴシエーションは
各 await の後にリンクが閉じられていないかを確認して中断する。
"""

from __future__ import annotations

import asyncio
from functools import partial
import logging
from typing import Callable, Optional

from . import signaling
from .capture import LocalCaptureHandle
from .errors import SessionStateViolation, SignalingSendFailure
from .peer_link import PeerLink, PeerLinkState
from .rtc import PeerConnection
from .signaling import SignalingChannel

logger = logging.getLogger(__name__)

PeerConnectionFactory = Callable[[], PeerConnection]


def _is_valid_answer(answer: object) -> bool:
    return (
        isinstance(answer, dict)
        and answer.get("type") == "answer"
        and isinstance(answer.get("sdp"), str)
        and bool(answer["sdp"].strip())
    )


def _is_valid_candidate(candidate: object) -> bool:
    return isinstance(candidate, dict) and isinstance(candidate.get("candidate"), str)


class PeerLinkOrchestrator:
    """1セッション分の PeerLink コレクション

    Examples:
        orchestrator = PeerLinkOrchestrator(
            session_id="abc",
            channel=channel,
            capture=lambda: controller.handle,
            is_live=lambda: session.is_live,
            pc_factory=lambda: AiortcPeerConnection(config.to_rtc_configuration()),
        )
        await orchestrator.on_offer_requested("viewer-1", "addr-1")
        await orchestrator.on_answer("addr-1", {"type": "answer", "sdp": "..."})
    """

    def __init__(
        self,
        *,
        session_id: str,
        channel: SignalingChannel,
        capture: Callable[[], Optional[LocalCaptureHandle]],
        is_live: Callable[[], bool],
        pc_factory: PeerConnectionFactory,
    ):
        self.session_id = session_id
        self._channel = channel
        self._capture = capture
        self._is_live = is_live
        self._pc_factory = pc_factory

        self._links: dict[str, PeerLink] = {}
        self._addresses: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._links)

    def get(self, viewer_id: str) -> Optional[PeerLink]:
        return self._links.get(viewer_id)

    def link_for_address(self, address: str) -> Optional[PeerLink]:
        viewer_id = self._addresses.get(address)
        if viewer_id is None:
            return None
        link = self._links.get(viewer_id)
        if link is None or link.viewer_address != address:
            return None
        return link

    def snapshot(self) -> list[dict]:
        return [link.to_dict() for link in self._links.values()]

    async def on_offer_requested(self, viewer_id: str, viewer_address: str) -> Optional[PeerLink]:
        """視聴者からのメディア要求に対して新しい PeerLink を作り offer を送る

        既存のリンクがあれば閉じて置き換える (リロード等による重複要求)。

        Returns:
            offer を送信できた PeerLink。視聴者単位の失敗時は None

        Raises:
            SessionStateViolation: セッションが live でない、またはキャプチャがない
        """
        self._require_live()

        async with self._lock_for(viewer_id):
            self._require_live()
            handle = self._capture()
            if handle is None or not handle.is_active:
                raise SessionStateViolation("capture is not active")

            owner = self._addresses.get(viewer_address)
            if owner is not None and owner != viewer_id and owner in self._links:
                logger.warning(
                    f"Offer request from {viewer_id} uses address {viewer_address} owned by {owner}; ignoring"
                )
                return None

            existing = self._links.get(viewer_id)
            if existing is not None:
                logger.info(f"Replacing PeerLink for {viewer_id} (state={existing.state.value})")
                await self._discard(existing)

            link = PeerLink(viewer_id, viewer_address, self._pc_factory())
            self._links[viewer_id] = link
            self._addresses[viewer_address] = viewer_id
            link.pc.on_ice_candidate(partial(self._send_local_candidate, link))
            link.pc.on_connection_state_change(partial(self._on_transport_state, link))

            try:
                link.attach(handle.subscribe())
                description = await link.pc.create_offer()
                if link.is_closed:
                    return None
                link.transition(PeerLinkState.OFFER_CREATED)

                await link.pc.set_local_description(description)
                if link.is_closed:
                    return None

                local = link.pc.local_description or description
                await self._channel.send_to(viewer_address, signaling.offer(viewer_address, local))
                if link.is_closed:
                    return None
                link.transition(PeerLinkState.OFFER_SENT)
            except SignalingSendFailure as e:
                logger.warning(f"Offer for {viewer_id} could not be delivered: {e}")
                await self._discard(link, failed=True)
                return None
            except Exception as e:
                logger.error(f"Negotiation failed for {viewer_id}: {e}")
                await self._discard(link, failed=True)
                return None

            await self._flush_local_candidates(link)
            logger.info(f"Offer sent to {viewer_id} ({viewer_address}). links={len(self._links)}")
            return link

    async def on_answer(self, viewer_address: str, answer: object) -> bool:
        """answer を視聴者アドレスで該当リンクに適用する

        該当する offer がない/形式が不正な answer は例外を出さずに捨てる。
        """
        if not _is_valid_answer(answer):
            logger.warning(f"Dropping malformed answer from {viewer_address}")
            return False

        viewer_id = self._addresses.get(viewer_address)
        if viewer_id is None:
            logger.warning(f"Dropping answer from {viewer_address}: no pending offer")
            return False

        async with self._lock_for(viewer_id):
            link = self.link_for_address(viewer_address)
            if link is None or not link.awaiting_answer:
                state = link.state.value if link else "none"
                logger.warning(f"Dropping stale answer from {viewer_address} (state={state})")
                return False

            try:
                await link.pc.set_remote_description(answer)  # type: ignore[arg-type]
            except Exception as e:
                logger.error(f"Failed to apply answer for {viewer_id}: {e}")
                await self._discard(link, failed=True)
                return False
            if link.is_closed:
                return False

            link.remote_description_set = True
            link.transition(PeerLinkState.ANSWER_RECEIVED)

            for candidate in link.take_remote_candidates():
                await self._add_remote_candidate(link, candidate)

            if link.pc.connection_state == "connected" and link.state == PeerLinkState.ANSWER_RECEIVED:
                link.transition(PeerLinkState.CONNECTED)

            logger.info(f"Answer applied for {viewer_id}")
            return True

    async def on_remote_candidate(self, viewer_address: str, candidate: object) -> bool:
        """視聴者側の ICE candidate を該当リンクに追加する

        remote description 設定前に届いたものはキューに積み、answer 適用時に流す。
        """
        if not _is_valid_candidate(candidate):
            logger.warning(f"Dropping malformed candidate from {viewer_address}")
            return False

        viewer_id = self._addresses.get(viewer_address)
        if viewer_id is None:
            logger.debug(f"Dropping candidate from {viewer_address}: no link")
            return False

        async with self._lock_for(viewer_id):
            link = self.link_for_address(viewer_address)
            if link is None or link.is_closed:
                return False

            if not link.remote_description_set:
                link.queue_remote_candidate(candidate)  # type: ignore[arg-type]
                return True

            return await self._add_remote_candidate(link, candidate)  # type: ignore[arg-type]

    async def close_link(self, viewer_id: str) -> bool:
        """視聴者1人のリンクを閉じる (離脱時)"""
        link = self._links.get(viewer_id)
        if link is None:
            return False
        await self._discard(link)
        lock = self._locks.get(viewer_id)
        if lock is not None and not lock.locked():
            del self._locks[viewer_id]
        logger.info(f"PeerLink closed for {viewer_id}. links={len(self._links)}")
        return True

    async def close_all(self) -> int:
        """全リンクを閉じる (セッション終了時)"""
        links = list(self._links.values())
        self._links.clear()
        self._addresses.clear()
        self._locks.clear()

        results = await asyncio.gather(*(link.close() for link in links), return_exceptions=True)
        for link, result in zip(links, results):
            if isinstance(result, Exception):
                logger.warning(f"Error closing PeerLink for {link.viewer_id}: {result}")
        if links:
            logger.info(f"Closed {len(links)} PeerLinks for session {self.session_id}")
        return len(links)

    def _require_live(self) -> None:
        if not self._is_live():
            raise SessionStateViolation(f"session {self.session_id} is not live")

    def _lock_for(self, viewer_id: str) -> asyncio.Lock:
        lock = self._locks.get(viewer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[viewer_id] = lock
        return lock

    async def _discard(self, link: PeerLink, *, failed: bool = False) -> None:
        if self._links.get(link.viewer_id) is link:
            del self._links[link.viewer_id]
        if self._addresses.get(link.viewer_address) == link.viewer_id and link.viewer_id not in self._links:
            del self._addresses[link.viewer_address]
        if failed:
            link.mark_failed()
        await link.close()

    async def _add_remote_candidate(self, link: PeerLink, candidate: dict) -> bool:
        try:
            await link.pc.add_ice_candidate(candidate)
            return True
        except Exception as e:
            logger.warning(f"Ignoring bad candidate for {link.viewer_id}: {e}")
            return False

    async def _send_local_candidate(self, link: PeerLink, candidate: dict) -> None:
        if link.is_closed:
            return
        message = signaling.ice_candidate(link.viewer_address, candidate, sessionId=self.session_id)
        try:
            await self._channel.send_to(link.viewer_address, message)
        except SignalingSendFailure as e:
            logger.warning(f"Candidate for {link.viewer_id} not delivered, queued: {e}")
            link.queue_local_candidate(candidate)

    async def _flush_local_candidates(self, link: PeerLink) -> None:
        for candidate in link.take_local_candidates():
            await self._send_local_candidate(link, candidate)

    async def _on_transport_state(self, link: PeerLink, state: str) -> None:
        if link.is_closed:
            return
        if state == "connected":
            if link.state == PeerLinkState.ANSWER_RECEIVED:
                link.transition(PeerLinkState.CONNECTED)
                logger.info(f"PeerLink connected for {link.viewer_id}")
        elif state == "failed":
            logger.warning(f"PeerLink transport failed for {link.viewer_id}")
            await self._discard(link, failed=True)
        elif state == "disconnected":
            logger.info(f"PeerLink transport disconnected for {link.viewer_id}")
