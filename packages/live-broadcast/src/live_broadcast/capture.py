"""
Local capture - カメラ/マイクの取得と全 PeerLink への共有

1つのキャプチャを MediaRelay で各 PeerLink に分配する。
映像/音声の有効・無効はトラック上のフラグ切り替えのみで、再ネゴシエーションや
シグナリングは発生しない（接続中の全視聴者に即座に反映される）。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from .config import BroadcastConfig
from .errors import CaptureDenied, SessionStateViolation
from .models import SessionMode

logger = logging.getLogger(__name__)

PlayerFactory = Callable[..., Any]


def _blank_video_frame(frame: VideoFrame) -> VideoFrame:
    blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    y_plane, u_plane, v_plane = blank.planes
    y_plane.update(bytes(y_plane.buffer_size))
    u_plane.update(b"\x80" * u_plane.buffer_size)
    v_plane.update(b"\x80" * v_plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


def _silent_audio_frame(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


class ToggleableTrack(MediaStreamTrack):
    """enabled=False の間は黒フレーム/無音に差し替えるラッパー"""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    @property
    def source(self) -> MediaStreamTrack:
        return self._source

    async def recv(self):
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if self.kind == "video":
            return _blank_video_frame(frame)
        return _silent_audio_frame(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class LocalCaptureHandle:
    """セッションに1つのキャプチャハンドル

    全 PeerLink は同じハンドルを参照で共有する。各リンクには ``subscribe()`` で
    リンク専用のリレートラックを渡すので、リンクを閉じても共有トラックは止まらない。
    """

    def __init__(
        self,
        mode: SessionMode,
        *,
        audio: Optional[MediaStreamTrack] = None,
        video: Optional[MediaStreamTrack] = None,
        relay: Optional[MediaRelay] = None,
    ):
        self.mode = mode
        self._audio = ToggleableTrack(audio) if audio is not None else None
        self._video = ToggleableTrack(video) if video is not None else None
        self._relay = relay or MediaRelay()
        self._released = False

    @property
    def is_active(self) -> bool:
        return not self._released

    @property
    def tracks(self) -> list[ToggleableTrack]:
        """共有トラック (audio, video の順)"""
        return [t for t in (self._audio, self._video) if t is not None]

    @property
    def audio_enabled(self) -> bool:
        return bool(self._audio and self._audio.enabled)

    @property
    def video_enabled(self) -> bool:
        return bool(self._video and self._video.enabled)

    def set_audio_enabled(self, enabled: bool) -> None:
        if self._audio is None:
            return
        self._audio.enabled = enabled
        logger.info(f"Local audio {'enabled' if enabled else 'disabled'}")

    def set_video_enabled(self, enabled: bool) -> None:
        if self._video is None:
            return
        self._video.enabled = enabled
        logger.info(f"Local video {'enabled' if enabled else 'disabled'}")

    def subscribe(self) -> list[MediaStreamTrack]:
        """PeerLink 1本分のトラックを取得"""
        if self._released:
            raise SessionStateViolation("capture handle already released")
        return [self._relay.subscribe(t, buffered=False) for t in self.tracks]

    def release(self) -> bool:
        """ハードウェアトラックを停止する。2回目以降は何もしない。"""
        if self._released:
            return False
        self._released = True
        for track in self.tracks:
            track.stop()
        logger.info(f"Capture released (mode={self.mode.value})")
        return True


class LocalCaptureController:
    """カメラ/マイクの取得と解放

    Examples:
        controller = LocalCaptureController(BroadcastConfig())
        handle = await controller.acquire(SessionMode.VIDEO)
        handle.set_video_enabled(False)
        controller.release()
    """

    def __init__(
        self,
        config: Optional[BroadcastConfig] = None,
        *,
        player_factory: Optional[PlayerFactory] = None,
    ):
        self.config = config or BroadcastConfig()
        self._player_factory = player_factory or MediaPlayer
        self._handle: Optional[LocalCaptureHandle] = None

    @property
    def handle(self) -> Optional[LocalCaptureHandle]:
        """現在有効なハンドル (未取得/解放済みなら None)"""
        if self._handle is not None and self._handle.is_active:
            return self._handle
        return None

    async def acquire(self, mode: SessionMode) -> LocalCaptureHandle:
        """デバイスを開いてハンドルを返す

        Raises:
            CaptureDenied: デバイスを開けなかった場合
            SessionStateViolation: 既に取得済みの場合
        """
        if self.handle is not None:
            raise SessionStateViolation("capture already acquired")

        if not mode.requires_media:
            self._handle = LocalCaptureHandle(mode)
            return self._handle

        opened: list[MediaStreamTrack] = []
        try:
            video = None
            if mode.wants_video:
                video = self._open_track("video", **self.config.to_video_player_options())
                opened.append(video)
            audio = self._open_track("audio", **self.config.to_audio_player_options())
            opened.append(audio)
        except CaptureDenied:
            for track in opened:
                track.stop()
            raise

        self._handle = LocalCaptureHandle(mode, audio=audio, video=video)
        logger.info(f"Capture acquired (mode={mode.value})")
        return self._handle

    def release(self) -> None:
        """キャプチャを解放 (何度呼んでも安全)"""
        if self._handle is None:
            return
        self._handle.release()
        self._handle = None

    def _open_track(self, kind: str, *, file: str, format: Optional[str], options: dict) -> MediaStreamTrack:
        try:
            player = self._player_factory(file, format=format, options=options)
        except (FFmpegError, OSError, ValueError) as e:
            logger.error(f"Failed to open {kind} device {file}: {e}")
            raise CaptureDenied(f"cannot open {kind} device {file}: {e}")

        track = getattr(player, kind, None)
        if track is None:
            raise CaptureDenied(f"{kind} device {file} has no {kind} stream")
        return track
