"""Presenter CLI: go live from the local camera/microphone.

Usage:
    live-broadcast-presenter --presenter-id arl-1 --name Dana --title "Morning Huddle"
    live-broadcast-presenter --title "Quiet update" --mode audio --preset low-bandwidth

While live, type ``v`` / ``a`` to toggle video / audio, ``s`` for status,
``q`` to end the session.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

from .config import BroadcastConfig
from .dispatcher import SignalDispatcher
from .errors import BroadcastError, CaptureDenied, SignalingSendFailure
from .models import AudienceScope, Presenter, SessionMode
from .session import SessionRegistry
from .signaling import WebSocketSignalingChannel
from .store import HttpSessionStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

PRESETS = {
    "default": BroadcastConfig.camera_default,
    "low-bandwidth": BroadcastConfig.low_bandwidth,
    "high-quality": BroadcastConfig.high_quality,
}


def http_url_for(backend_url: str) -> str:
    """ws(s)://host -> http(s)://host"""
    if backend_url.startswith("wss://"):
        return "https://" + backend_url[len("wss://"):]
    if backend_url.startswith("ws://"):
        return "http://" + backend_url[len("ws://"):]
    return backend_url


def build_config(args: argparse.Namespace) -> BroadcastConfig:
    config = PRESETS[args.preset]()
    if args.video_device:
        config.video_device = args.video_device
    if args.audio_device:
        config.audio_device = args.audio_device
    return config


def print_status(registry: SessionRegistry) -> None:
    live = registry.active
    if live is None:
        print("\nNo live session")
        return
    session = live.session
    print(f"\nSession:  {session.id} ({session.title})")
    print(f"Viewers:  {session.viewer_count} now, {session.peak_viewers} peak, {session.total_views} total")
    for link in live.orchestrator.snapshot():
        print(f"  {link['viewerId']:<20} {link['state']}")
    handle = registry.capture.handle
    if handle is not None and handle.is_active:
        print(f"Video:    {'on' if handle.video_enabled else 'off'}")
        print(f"Audio:    {'on' if handle.audio_enabled else 'off'}")


async def command_loop(registry: SessionRegistry) -> None:
    loop = asyncio.get_running_loop()
    while True:
        print("\n> ", end="", flush=True)
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        cmd = line.strip().lower()
        handle = registry.capture.handle
        try:
            if cmd in ("q", "quit", "exit"):
                return
            elif cmd in ("v", "video") and handle is not None:
                registry.set_video_enabled(not handle.video_enabled)
                print(f"Video {'on' if handle.video_enabled else 'off'}")
            elif cmd in ("a", "audio") and handle is not None:
                registry.set_audio_enabled(not handle.audio_enabled)
                print(f"Audio {'on' if handle.audio_enabled else 'off'}")
            elif cmd in ("s", "status", ""):
                print_status(registry)
            else:
                print("Commands: v (video), a (audio), s (status), q (end session)")
        except BroadcastError as e:
            print(f"✗ {e}")


async def end_session(registry: SessionRegistry, session_id: str) -> None:
    try:
        await registry.end(session_id)
    except BroadcastError as e:
        logger.warning(f"Session ended with errors: {e}")


async def run_presenter(args: argparse.Namespace) -> int:
    presenter = Presenter(id=args.presenter_id, display_name=args.name)
    config = build_config(args)
    store = HttpSessionStore(http_url_for(args.backend), token=args.token)

    try:
        async with WebSocketSignalingChannel(args.backend) as channel:
            registry = SessionRegistry(presenter, channel=channel, store=store, config=config)
            try:
                session = await registry.create(
                    args.title,
                    description=args.description,
                    mode=args.mode,
                    audience_scope=AudienceScope.SPECIFIC if args.target else AudienceScope.ALL,
                    target_viewer_ids=args.target,
                )
            except CaptureDenied as e:
                print(f"✗ Camera/microphone unavailable: {e}")
                return 1
            except SignalingSendFailure as e:
                # live になったが session.start を告知できていない
                live = registry.active
                if live is None:
                    raise
                logger.warning(f"session.start not delivered, retrying: {e}")
                try:
                    await registry.announce(live.id)
                except SignalingSendFailure as retry_error:
                    print(f"✗ Could not announce the session: {retry_error}")
                    await end_session(registry, live.id)
                    return 1
                session = live.session

            print(f"✓ Live: {session.title} ({session.id})")
            dispatcher = asyncio.create_task(SignalDispatcher(registry, channel).run())
            try:
                await command_loop(registry)
            finally:
                dispatcher.cancel()
                try:
                    with contextlib.suppress(asyncio.CancelledError):
                        await dispatcher
                finally:
                    await end_session(registry, session.id)
            print(f"Session ended after {session.duration_seconds}s, {session.total_views} views")
    except ConnectionError as e:
        print(f"✗ Connection failed: {e}")
        return 1
    except BroadcastError as e:
        print(f"✗ {e}")
        return 1
    finally:
        await store.aclose()
    return 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Broadcast the local camera/microphone to viewers",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--presenter-id", default=os.getenv("PRESENTER_ID", "presenter"))
    parser.add_argument("--name", default=os.getenv("PRESENTER_NAME", ""), help="Presenter display name")
    parser.add_argument("-t", "--title", required=True, help="Session title")
    parser.add_argument("-d", "--description", default="")
    parser.add_argument("-m", "--mode", choices=[m.value for m in SessionMode], default=SessionMode.VIDEO.value)
    parser.add_argument(
        "--target",
        action="append",
        default=[],
        help="Limit the audience to this viewer id (repeatable)",
    )
    parser.add_argument("-b", "--backend", default="ws://localhost:8000", help="Backend WebSocket URL")
    parser.add_argument("--token", default=os.getenv("PRESENTER_TOKEN"), help="Presenter token for the backend")
    parser.add_argument("-p", "--preset", choices=sorted(PRESETS), default="default")
    parser.add_argument("--video-device", default=None, help="Override the video capture device")
    parser.add_argument("--audio-device", default=None, help="Override the audio capture device")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run_presenter(args)))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
