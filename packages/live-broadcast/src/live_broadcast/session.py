"""
Session registry - 配信セッションのライフサイクル管理 (setup -> live -> ended)

セッション状態を書き換えるのは SessionRegistry のみ。
live 中のセッションごとに LiveSession を1つ持ち、視聴者と PeerLink の
コレクションはそのオブジェクトの中に閉じ込める（モジュールレベルの共有状態は持たない）。
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable, Iterable, Optional
import uuid

from . import signaling
from .capture import LocalCaptureController
from .config import BroadcastConfig
from .errors import (
    BroadcastError,
    InvalidSessionRequest,
    SessionStateViolation,
    SignalingSendFailure,
)
from .models import (
    AudienceScope,
    BroadcastSession,
    Presenter,
    SessionMode,
    SessionStatus,
    utcnow,
)
from .orchestrator import PeerConnectionFactory, PeerLinkOrchestrator
from .peer_link import PeerLink
from .rtc import AiortcPeerConnection
from .signaling import SignalingChannel
from .store import SessionStore
from .viewers import ViewerRegistry

logger = logging.getLogger(__name__)


class LiveSession:
    """live セッション1つ分の状態

    視聴者レジストリ、PeerLink オーケストレータ、共有キャプチャへの参照を持つ。
    変更は下記のエントリポイント経由のみ。
    """

    def __init__(
        self,
        session: BroadcastSession,
        *,
        channel: SignalingChannel,
        capture: LocalCaptureController,
        pc_factory: PeerConnectionFactory,
    ):
        self.session = session
        self.capture = capture
        self.orchestrator = PeerLinkOrchestrator(
            session_id=session.id,
            channel=channel,
            capture=lambda: capture.handle,
            is_live=lambda: session.is_live,
            pc_factory=pc_factory,
        )
        self.viewers = ViewerRegistry(orchestrator=self.orchestrator, admits=session.allows_viewer)

    @property
    def id(self) -> str:
        return self.session.id

    async def on_viewer_join(self, viewer_id: str, display_name: str = "", address: Optional[str] = None) -> bool:
        joined = await self.viewers.on_viewer_join(viewer_id, display_name, address)
        self._sync_counts()
        return joined

    async def on_viewer_leave(self, viewer_id: str) -> None:
        await self.viewers.on_viewer_leave(viewer_id)
        self._sync_counts()

    async def on_viewer_disconnect(self, address: str) -> bool:
        """シグナリング接続が切れたアドレスの視聴者を離脱扱いにする"""
        viewer = self.viewers.find_by_address(address)
        link = self.orchestrator.link_for_address(address)
        viewer_id = viewer.id if viewer is not None else (link.viewer_id if link is not None else None)
        if viewer_id is None:
            return False
        logger.info(f"Viewer {viewer_id} disconnected from the relay ({address})")
        await self.on_viewer_leave(viewer_id)
        return True

    def on_viewer_update(self, viewer_id: str, ui_minimized: bool) -> bool:
        return self.viewers.set_minimized(viewer_id, ui_minimized)

    async def on_offer_requested(self, viewer_id: str, viewer_address: str) -> Optional[PeerLink]:
        if not self.session.allows_viewer(viewer_id):
            logger.warning(f"Offer request from {viewer_id} outside the session audience ignored")
            return None
        viewer = self.viewers.get(viewer_id)
        if viewer is not None:
            viewer.address = viewer_address
        return await self.orchestrator.on_offer_requested(viewer_id, viewer_address)

    async def on_answer(self, viewer_address: str, answer: object) -> bool:
        return await self.orchestrator.on_answer(viewer_address, answer)

    async def on_remote_candidate(self, viewer_address: str, candidate: object) -> bool:
        return await self.orchestrator.on_remote_candidate(viewer_address, candidate)

    async def close(self) -> int:
        """全 PeerLink を閉じて視聴者をクリアする"""
        closed = await self.orchestrator.close_all()
        self.viewers.clear()
        self._sync_counts()
        return closed

    def _sync_counts(self) -> None:
        self.session.viewer_count = len(self.viewers)
        self.session.total_views = self.viewers.total_views
        self.session.peak_viewers = self.viewers.peak_viewers


class SessionRegistry:
    """presenter 1人分の配信セッションを管理

    Examples:
        registry = SessionRegistry(
            Presenter(id="arl-1", display_name="Dana"),
            channel=channel,
            store=HttpSessionStore("http://localhost:8000"),
        )
        session = await registry.create("Morning Huddle", mode=SessionMode.VIDEO)
        ...
        await registry.end(session.id)
    """

    def __init__(
        self,
        presenter: Presenter,
        *,
        channel: SignalingChannel,
        store: SessionStore,
        config: Optional[BroadcastConfig] = None,
        capture: Optional[LocalCaptureController] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        if presenter is None or not presenter.id:
            raise InvalidSessionRequest("presenter identity must be resolved first")

        self.presenter = presenter
        self.config = config or BroadcastConfig()
        self._channel = channel
        self._store = store
        self._capture = capture or LocalCaptureController(self.config)
        self._pc_factory = pc_factory or (
            lambda: AiortcPeerConnection(self.config.to_rtc_configuration())
        )
        self._clock = clock
        self._id_factory = id_factory

        self._sessions: dict[str, BroadcastSession] = {}
        self._active: Optional[LiveSession] = None
        # session.end を告知できていない ended セッション
        self._unannounced_ends: set[str] = set()

    @property
    def active(self) -> Optional[LiveSession]:
        """live 中のセッション (なければ None)"""
        return self._active

    @property
    def capture(self) -> LocalCaptureController:
        return self._capture

    def get(self, session_id: str) -> Optional[BroadcastSession]:
        return self._sessions.get(session_id)

    def list_sessions(self, status: Optional[SessionStatus] = None) -> list[BroadcastSession]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at, reverse=True)
        if status is None:
            return sessions
        return [s for s in sessions if s.status == status]

    async def create(
        self,
        title: str,
        description: str = "",
        mode: SessionMode | str = SessionMode.VIDEO,
        audience_scope: AudienceScope | str = AudienceScope.ALL,
        target_viewer_ids: Iterable[str] = (),
    ) -> BroadcastSession:
        """セッションを作成して live にする

        Raises:
            InvalidSessionRequest: タイトルが空、モード/対象の指定が不正
            CaptureDenied: カメラ/マイクを取得できない (セッションは作られない)
            SessionStateViolation: 既に live のセッションがある
            SignalingSendFailure: session.start を告知できない (セッションは live のまま、announce() で再送可)
        """
        title = (title or "").strip()
        if not title:
            raise InvalidSessionRequest("title is required")
        try:
            mode = SessionMode(mode)
            audience_scope = AudienceScope(audience_scope)
        except ValueError as e:
            raise InvalidSessionRequest(str(e))
        targets = frozenset(t for t in target_viewer_ids if t)
        if audience_scope == AudienceScope.SPECIFIC and not targets:
            raise InvalidSessionRequest("specific audience requires target viewer ids")

        if self._active is not None:
            raise SessionStateViolation(f"session {self._active.id} is already live")

        session = BroadcastSession(
            id=self._id_factory(),
            title=title,
            presenter_id=self.presenter.id,
            presenter_name=self.presenter.display_name,
            description=description or "",
            mode=mode,
            audience_scope=audience_scope,
            target_viewer_ids=targets,
            created_at=self._clock(),
        )

        if mode.requires_media:
            await self._capture.acquire(mode)

        session.status = SessionStatus.LIVE
        session.started_at = self._clock()

        try:
            await self._store.save(session.to_record())
        except BroadcastError:
            self._capture.release()
            raise

        self._sessions[session.id] = session
        self._active = LiveSession(
            session,
            channel=self._channel,
            capture=self._capture,
            pc_factory=self._pc_factory,
        )
        logger.info(f"Session {session.id} live: {session.title!r} (mode={mode.value})")

        await self.announce(session.id)
        return session

    async def announce(self, session_id: str) -> None:
        """session.start をセッショントピックとロビーに告知する"""
        session = self._require(session_id)
        if not session.is_live:
            raise SessionStateViolation(f"session {session_id} is not live")

        message = signaling.session_start(
            session.id,
            session.title,
            mode=session.mode.value,
            presenterName=session.presenter_name,
            presenterAddress=self._channel.address,
        )
        await self._channel.join(session.topic)
        await self._channel.broadcast(session.topic, message)
        await self._channel.broadcast(self.config.lobby_topic, message)

    async def end(self, session_id: str) -> BroadcastSession:
        """セッションを終了する (冪等)

        キャプチャ解放、全 PeerLink のクローズ、ended への遷移、記録の保存、
        session.end の告知を行う。視聴者0人でも安全。
        告知に失敗した場合は SignalingSendFailure を送出し、再度 end() を呼ぶと告知だけを再送する。
        """
        session = self._require(session_id)
        if session.status == SessionStatus.ENDED:
            if session_id in self._unannounced_ends:
                await self._announce_end(session)
            return session

        self._capture.release()

        live = self._active if self._active is not None and self._active.id == session_id else None
        if live is not None:
            await live.close()
            self._active = None

        session.status = SessionStatus.ENDED
        session.ended_at = self._clock()
        started = session.started_at or session.created_at
        session.duration_seconds = max(0, int((session.ended_at - started).total_seconds()))
        logger.info(f"Session {session.id} ended after {session.duration_seconds}s")

        try:
            await self._store.save(session.to_record())
        except BroadcastError as e:
            logger.error(f"Ended session {session.id} could not be persisted: {e}")

        self._unannounced_ends.add(session.id)
        await self._announce_end(session)
        return session

    async def _announce_end(self, session: BroadcastSession) -> None:
        message = signaling.session_end(session.id)
        try:
            await self._channel.broadcast(session.topic, message)
            await self._channel.broadcast(self.config.lobby_topic, message)
            await self._channel.leave(session.topic)
        except SignalingSendFailure as e:
            logger.warning(f"session.end for {session.id} not delivered: {e}")
            raise
        self._unannounced_ends.discard(session.id)

    def set_video_enabled(self, enabled: bool) -> None:
        self._require_capture().set_video_enabled(enabled)

    def set_audio_enabled(self, enabled: bool) -> None:
        self._require_capture().set_audio_enabled(enabled)

    def _require(self, session_id: str) -> BroadcastSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionStateViolation(f"unknown session {session_id}")
        return session

    def _require_capture(self):
        handle = self._capture.handle
        if handle is None:
            raise SessionStateViolation("no active capture")
        return handle
