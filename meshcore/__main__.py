"""헤드리스 미팅 클라이언트 CLI.

로컬 카메라/마이크로 미팅에 참가하고, 수신 미디어는 버리면서
연결 상태를 주기적으로 로그에 남깁니다.

Usage:
    python -m meshcore --server ws://localhost:8000/ws --meeting ABC123 --name Alice
    python -m meshcore --server ws://localhost:8000/ws --meeting ABC123 --name Bob --audio-only
"""

import argparse
import asyncio
import logging
import uuid
from typing import Dict, Mapping, Tuple

from aiortc.contrib.media import MediaBlackhole

from .logging_config import setup_logging
from .session import MeetingClient
from .signaling import WebSocketSignalingBridge
from .webrtc import QUALITY_PROFILES, MediaAccessError, MediaStream, SignalingDeliveryError

logger = logging.getLogger("meshcore")

Sinks = Dict[str, Tuple[MediaStream, MediaBlackhole]]


async def sync_sinks(sinks: Sinks, remote_streams: Mapping[str, MediaStream]) -> None:
    """원격 스트림마다 MediaBlackhole 하나를 유지합니다.

    떠난 피어나 재연결로 스트림이 바뀐 피어의 싱크는 정지 후 제거합니다.
    """
    for peer_id, (stream, sink) in list(sinks.items()):
        if remote_streams.get(peer_id) is not stream:
            await sink.stop()
            del sinks[peer_id]

    for peer_id, stream in remote_streams.items():
        if peer_id in sinks:
            continue
        sink = MediaBlackhole()
        for track in stream.get_tracks():
            sink.addTrack(track)
        await sink.start()
        sinks[peer_id] = (stream, sink)


async def run(args: argparse.Namespace) -> int:
    bridge = WebSocketSignalingBridge(
        args.server,
        args.meeting,
        user_id=args.peer_id or str(uuid.uuid4()),
        participant_name=args.name,
        is_host=args.host,
    )
    client = MeetingClient(signaling=bridge)
    sinks: Sinks = {}

    try:
        await client.initialize_webrtc(audio_only=args.audio_only, quality_tier=args.quality)
        await client.join()
    except (MediaAccessError, SignalingDeliveryError) as e:
        logger.error(f"미팅 참가 실패: {e}")
        client.cleanup_webrtc()
        return 1

    if args.share_screen:
        try:
            await client.start_screen_share()
        except MediaAccessError as e:
            logger.warning(f"[Media] 화면 공유 시작 실패: {e}")

    try:
        while True:
            await asyncio.sleep(args.status_interval)
            # remote tracks must be consumed or their jitter buffers grow
            await sync_sinks(sinks, client.remote_streams)

            if args.host:
                await client.publish_roster()
            logger.info(f"상태: {client.connection_state.value}, "
                        f"참가자 {client.room_status.participant_count}명, "
                        f"연결 피어 {sorted(p[:8] for p in client.connected_peers)}")
    except asyncio.CancelledError:
        pass
    finally:
        await sync_sinks(sinks, {})
        await client.leave()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(prog="meshcore", description="Headless full-mesh meeting client")
    parser.add_argument("--server", default="ws://localhost:8000/ws", help="signaling relay WebSocket URL")
    parser.add_argument("--meeting", required=True, help="meeting code")
    parser.add_argument("--name", required=True, help="display name")
    parser.add_argument("--peer-id", help="peer id (random UUID by default)")
    parser.add_argument("--host", action="store_true", help="join as host and publish the roster")
    parser.add_argument("--audio-only", action="store_true", help="do not capture video")
    parser.add_argument("--quality", choices=sorted(QUALITY_PROFILES), default="medium")
    parser.add_argument("--share-screen", action="store_true", help="share the screen after joining")
    parser.add_argument("--status-interval", type=float, default=5.0)
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--log-file", default=None)
    args = parser.parse_args()

    setup_logging(args.log_level, args.log_file)
    try:
        raise SystemExit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logger.info("종료")


if __name__ == "__main__":
    main()
