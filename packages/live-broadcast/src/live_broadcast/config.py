"""
BroadcastConfig - 配信設定

キャプチャデバイス、解像度、フレームレート、ICE サーバーなどの設定を管理
"""

from dataclasses import dataclass
import re
from typing import Optional

from aiortc import RTCConfiguration, RTCIceServer

_VIDEO_SIZE_RE = re.compile(r"^\d+x\d+$")


@dataclass
class BroadcastConfig:
    """配信設定

    Attributes:
        video_device: カメラデバイス (例: "/dev/video0", "0:none")
        video_format: ffmpeg の入力フォーマット ("v4l2", "avfoundation", "dshow")。
            None の場合は ffmpeg の自動判定に任せる。
        audio_device: マイクデバイス (例: "default", "hw:0")
        audio_format: ffmpeg の入力フォーマット ("pulse", "alsa", "avfoundation")
        video_size: キャプチャ解像度 ("1280x720" 形式)
        framerate: キャプチャフレームレート
        ice_servers: STUN/TURN サーバーの URL
        lobby_topic: session.start / session.end を告知するトピック

    Examples:
        # デフォルト設定
        config = BroadcastConfig()

        # プリセット使用
        config = BroadcastConfig.low_bandwidth()
    """
    video_device: str = "/dev/video0"
    video_format: Optional[str] = "v4l2"
    audio_device: str = "default"
    audio_format: Optional[str] = "pulse"
    video_size: str = "1280x720"
    framerate: int = 30
    ice_servers: tuple[str, ...] = ("stun:stun.l.google.com:19302",)
    lobby_topic: str = "broadcasts"

    def __post_init__(self) -> None:
        """バリデーション"""
        if not self.video_device:
            raise ValueError("video_device must not be empty")
        if not self.audio_device:
            raise ValueError("audio_device must not be empty")
        if not _VIDEO_SIZE_RE.match(self.video_size):
            raise ValueError(f"Invalid video_size: {self.video_size}")
        if self.framerate < 1:
            raise ValueError(f"framerate must be positive: {self.framerate}")
        if not self.lobby_topic:
            raise ValueError("lobby_topic must not be empty")
        self.ice_servers = tuple(self.ice_servers)

    @classmethod
    def camera_default(cls) -> "BroadcastConfig":
        """標準プリセット (720p, 30fps)"""
        return cls()

    @classmethod
    def low_bandwidth(cls) -> "BroadcastConfig":
        """低帯域向けプリセット (360p, 15fps)

        視聴者数が多く presenter の上り帯域が厳しい場合向け
        """
        return cls(video_size="640x360", framerate=15)

    @classmethod
    def high_quality(cls) -> "BroadcastConfig":
        """高品質プリセット (1080p, 30fps)"""
        return cls(video_size="1920x1080", framerate=30)

    def to_video_player_options(self) -> dict:
        """aiortc MediaPlayer (カメラ) 用の引数"""
        return {
            "file": self.video_device,
            "format": self.video_format,
            "options": {
                "video_size": self.video_size,
                "framerate": str(self.framerate),
            },
        }

    def to_audio_player_options(self) -> dict:
        """aiortc MediaPlayer (マイク) 用の引数"""
        return {
            "file": self.audio_device,
            "format": self.audio_format,
            "options": {},
        }

    def to_rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
