"""로컬 미디어 제어 모듈.

카메라/마이크 스트림과 화면 공유 스트림을 소유하고
음소거, 카메라 끄기, 화면 공유 전환을 처리합니다.

Track Substitution:
    화면 공유 시작/종료는 각 피어 연결의 비디오 송신자(RTCRtpSender)에서
    replaceTrack()만 호출합니다. 새 연결이나 재협상(offer/answer)은 발생하지 않습니다.

Examples:
    >>> controller = LocalMediaController(session)
    >>> await controller.initialize(audio_only=False, quality_tier="medium")
    >>> controller.toggle_mute()
    >>> await controller.start_screen_share()
    >>> await controller.stop_screen_share()
    >>> controller.cleanup()
"""

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, Coroutine, Optional, Set

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCRtpSender
from aiortc.contrib.media import MediaRelay

from .config import EncodingConfig, MediaConfig, encoding_config, media_config
from .devices import MediaDevices, PlayerMediaDevices
from .errors import MediaAccessError
from .tracks import LocalMediaTrack, MediaStream

if TYPE_CHECKING:
    from ..session.state import Session

logger = logging.getLogger(__name__)


def find_video_sender(pc: RTCPeerConnection) -> Optional[RTCRtpSender]:
    """피어 연결에서 비디오 송신자를 찾습니다.

    현재 트랙이 비디오인 송신자를 우선하고, 트랙이 비어 있으면
    (카메라 끈 상태에서 화면 공유 종료 등) 송신자 자체의 kind로 찾습니다.
    """
    senders = pc.getSenders()
    for sender in senders:
        if sender.track is not None and sender.track.kind == "video":
            return sender
    for sender in senders:
        if sender.track is None and getattr(sender, "kind", None) == "video":
            return sender
    return None


async def replace_sender_track(sender: RTCRtpSender, track: Optional[MediaStreamTrack]) -> None:
    """송신자의 트랙을 교체합니다 (재협상 없음)."""
    result = sender.replaceTrack(track)
    if inspect.isawaitable(result):
        await result


async def substitute_video_source(entry, source: Optional[MediaStreamTrack], relay: MediaRelay) -> None:
    """피어 연결의 비디오 송신 원본을 교체합니다.

    송신자에는 원본의 릴레이 구독 트랙이 붙고, 이전 구독 트랙은 정지됩니다.
    (aiortc 송신자는 종료 시 자기 트랙을 정지하므로 원본을 직접 붙이지 않음)

    Args:
        entry (PeerConnectionEntry): 대상 피어 연결
        source (Optional[MediaStreamTrack]): 새 원본 (None이면 비디오 송신 중단)
        relay (MediaRelay): 세션 공용 릴레이
    """
    sender = find_video_sender(entry.pc)
    if sender is None:
        logger.warning(f"[Media] 피어 {entry.peer_id[:8]}에 비디오 송신자 없음")
        return
    previous = sender.track
    proxy = relay.subscribe(source, buffered=False) if source is not None else None
    await replace_sender_track(sender, proxy)
    entry.video_source = source
    if previous is not None:
        previous.stop()


class LocalMediaController:
    """로컬 미디어 상태 관리자.

    Attributes:
        session (Session): 공유 세션 상태 (local_stream, screen_stream 보관)
        devices (MediaDevices): 캡처 장치 접근 객체
        muted (bool): 마이크 음소거 여부
        video_off (bool): 카메라 꺼짐 여부
        screen_sharing (bool): 화면 공유 중 여부
    """

    def __init__(
        self,
        session: "Session",
        devices: Optional[MediaDevices] = None,
        config: MediaConfig = media_config,
        encoding: EncodingConfig = encoding_config,
    ):
        self.session = session
        self.devices = devices or PlayerMediaDevices(config)
        self.config = config
        self.encoding = encoding
        self.muted = False
        self.video_off = False
        self.screen_sharing = False

        # screen-share restores triggered by the capture side
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[Media] 백그라운드 작업 실패: {task.exception()}")

    # ---------- 로컬 스트림 ----------
    async def initialize(self, audio_only: bool = False, quality_tier: str = "medium") -> MediaStream:
        """로컬 카메라/마이크 스트림을 획득합니다.

        Args:
            audio_only (bool): True면 오디오만 획득
            quality_tier (str): "small" | "medium" | "large"

        Returns:
            MediaStream: LocalMediaTrack으로 감싼 로컬 스트림

        Raises:
            ValueError: 알 수 없는 품질 단계
            MediaAccessError: 장치 없음 또는 권한 거부

        Note:
            - 반환된 스트림은 session.local_stream에 저장되지 않음 (호출자가 저장)
        """
        constraints = self.config.build_constraints(audio_only, quality_tier)
        logger.info(f"[Media] 로컬 미디어 요청: audio_only={audio_only}, quality={quality_tier}")

        try:
            raw = await self.devices.get_user_media(constraints)
        except MediaAccessError:
            raise
        except Exception as e:
            raise MediaAccessError(f"Local media capture failed: {e}") from e

        stream = MediaStream([LocalMediaTrack(track) for track in raw.get_tracks()], stream_id=raw.id)
        logger.info(f"[Media] 로컬 미디어 획득: {stream}")
        return stream

    def adopt(self, stream: MediaStream, audio_only: bool = False) -> None:
        """획득한 스트림을 세션의 로컬 스트림으로 등록합니다."""
        self.session.local_stream = stream
        self.muted = False
        self.video_off = audio_only or not stream.get_video_tracks()

    # ---------- 토글 ----------
    def toggle_mute(self) -> bool:
        """첫 번째 오디오 트랙의 enabled를 뒤집습니다.

        Returns:
            bool: 토글 후 음소거 여부 (트랙이 없으면 현재 값 그대로)
        """
        stream = self.session.local_stream
        tracks = stream.get_audio_tracks() if stream else []
        if not tracks:
            return self.muted
        track = tracks[0]
        track.enabled = not track.enabled
        self.muted = not track.enabled
        logger.info(f"[Media] 마이크 {'음소거' if self.muted else '음소거 해제'}")
        return self.muted

    def toggle_video(self) -> bool:
        """첫 번째 비디오 트랙의 enabled를 뒤집습니다.

        Returns:
            bool: 토글 후 카메라 꺼짐 여부 (트랙이 없으면 현재 값 그대로)
        """
        stream = self.session.local_stream
        tracks = stream.get_video_tracks() if stream else []
        if not tracks:
            return self.video_off
        track = tracks[0]
        track.enabled = not track.enabled
        self.video_off = not track.enabled
        logger.info(f"[Media] 카메라 {'끄기' if self.video_off else '켜기'}")
        return self.video_off

    # ---------- 화면 공유 ----------
    async def start_screen_share(self, with_audio: bool = False) -> None:
        """화면 공유를 시작하고 모든 피어의 비디오 송신 트랙을 화면 트랙으로 교체합니다.

        Args:
            with_audio (bool): 시스템 오디오 포함 여부

        Raises:
            MediaAccessError: 화면 캡처 실패 (상태 변경 없음)

        Note:
            - 이미 공유 중이면 아무것도 하지 않음
            - 피어별 교체 실패는 로그만 남기고 나머지 피어는 계속 진행
            - OS/캡처 쪽에서 공유가 끝나면 stop_screen_share()가 자동 호출됨
        """
        if self.screen_sharing:
            logger.info("[Media] 이미 화면 공유 중")
            return

        options = self.config.build_display_options(with_audio)
        try:
            raw = await self.devices.get_display_media(options)
        except MediaAccessError:
            raise
        except Exception as e:
            raise MediaAccessError(f"Screen capture failed: {e}") from e

        tracks = []
        for track in raw.get_tracks():
            if track.kind == "video":
                tracks.append(LocalMediaTrack(
                    track,
                    content_hint="detail",
                    max_frame_rate=self.encoding.MAX_VIDEO_FRAMERATE,
                ))
            else:
                tracks.append(LocalMediaTrack(track))
        screen_stream = MediaStream(tracks, stream_id=raw.id)
        screen_video = screen_stream.get_video_tracks()
        if not screen_video:
            screen_stream.stop()
            raise MediaAccessError("Screen capture returned no video track")

        self.session.screen_stream = screen_stream
        self.screen_sharing = True
        screen_track = screen_video[0]

        def on_screen_ended():
            if self.session.screen_stream is screen_stream:
                logger.info("[Media] 캡처 측에서 화면 공유 종료 감지")
                self._spawn(self.stop_screen_share())

        screen_track.on("ended", on_screen_ended)

        await self._replace_video_track(screen_track)
        logger.info(f"[Media] 화면 공유 시작: {len(self.session.entries)}개 피어")

    async def stop_screen_share(self) -> None:
        """화면 공유를 종료하고 비디오 송신 트랙을 카메라로 되돌립니다.

        카메라가 꺼져 있었다면 송신자에 트랙을 두지 않습니다.
        """
        screen_stream = self.session.screen_stream
        if screen_stream is None:
            return

        # detach first so the "ended" handler sees a stale stream
        self.session.screen_stream = None
        self.screen_sharing = False
        screen_stream.stop()

        camera_track = None
        local_stream = self.session.local_stream
        if local_stream is not None and not self.video_off:
            camera_tracks = local_stream.get_video_tracks()
            if camera_tracks:
                camera_track = camera_tracks[0]

        await self._replace_video_track(camera_track)
        logger.info(f"[Media] 화면 공유 종료: camera={'on' if camera_track else 'off'}")

    async def _replace_video_track(self, track: Optional[MediaStreamTrack]) -> None:
        entries = list(self.session.entries.values())
        if not entries:
            return

        relay = self.session.relay
        results = await asyncio.gather(
            *(substitute_video_source(entry, track, relay) for entry in entries),
            return_exceptions=True,
        )
        for entry, result in zip(entries, results):
            if isinstance(result, Exception):
                logger.error(f"[Media] 피어 {entry.peer_id[:8]} 트랙 교체 실패: {result}")

    # ---------- 정리 ----------
    def cleanup(self) -> None:
        """로컬/화면 트랙을 모두 정지하고 상태를 초기화합니다."""
        screen_stream = self.session.screen_stream
        self.session.screen_stream = None
        if screen_stream is not None:
            screen_stream.stop()
        if self.session.local_stream is not None:
            self.session.local_stream.stop()
        self.session.local_stream = None
        self.muted = False
        self.video_off = False
        self.screen_sharing = False
        logger.info("[Media] 로컬 미디어 정리 완료")
