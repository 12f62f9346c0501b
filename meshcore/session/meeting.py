"""미팅 클라이언트 (메시 코어 공개 계약).

UI/상위 계층이 사용하는 유일한 진입점입니다. 로컬 미디어 제어, 피어 연결 관리,
시그널링 브리지를 하나의 Session 위에서 묶고 읽기 전용 상태를 노출합니다.

Lifecycle:
    1. initialize_webrtc(): 로컬 카메라/마이크 획득 (connection_state=connecting)
    2. join(): 시그널링 연결, 다른 참가자에게 user-joined 알림
    3. handle_signaling_message(): 수신 메시지마다 협상 진행
    4. leave() / cleanup_webrtc(): 전체 정리

Examples:
    >>> bridge = WebSocketSignalingBridge("ws://localhost:8000/ws", "ABC123", "peer-a", "Alice")
    >>> client = MeetingClient(signaling=bridge)
    >>> await client.initialize_webrtc(quality_tier="small")
    >>> await client.join()
    >>> client.toggle_mute()
    >>> await client.leave()
"""

import logging
from typing import Callable, Dict, List, Optional, Set

from aiortc import RTCPeerConnection
from pydantic import ValidationError

from ..signaling.bridge import SignalingBridge
from ..signaling.messages import ParticipantInfo, SignalingMessage
from ..webrtc.devices import MediaDevices
from ..webrtc.errors import MediaAccessError, NegotiationError
from ..webrtc.media import LocalMediaController
from ..webrtc.peer_manager import PeerConnectionManager
from ..webrtc.tracks import MediaStream
from .state import ConnectionStatus, RoomStatus, Session

logger = logging.getLogger(__name__)


class MeetingClient:
    """풀 메시 미팅 클라이언트.

    Attributes:
        session (Session): 공유 세션 상태
        signaling (Optional[SignalingBridge]): 시그널링 채널
        media (LocalMediaController): 로컬 미디어 제어
        peers (PeerConnectionManager): 피어 연결 관리

    Concurrency:
        - initialize_webrtc()가 진행 중일 때의 두 번째 호출은 장치를 다시 요청하지 않음
        - 초기화 도중 cleanup_webrtc()가 호출되면 획득한 스트림은 버려짐
    """

    def __init__(
        self,
        signaling: Optional[SignalingBridge] = None,
        devices: Optional[MediaDevices] = None,
        session: Optional[Session] = None,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
    ):
        self.session = session or Session()
        self.signaling = signaling
        self.media = LocalMediaController(self.session, devices=devices)
        self.peers = PeerConnectionManager(self.session, signaling=signaling, pc_factory=pc_factory)

        self._initializing = False
        # bumped by cleanup so a pending initialize can tell it was abandoned
        self._generation = 0

        if signaling is not None:
            signaling.on_message(self.handle_signaling_message)

    # ---------- 읽기 전용 상태 ----------
    @property
    def local_stream(self) -> Optional[MediaStream]:
        return self.session.local_stream

    @property
    def remote_streams(self) -> Dict[str, MediaStream]:
        return self.session.remote_streams

    @property
    def connected_peers(self) -> Set[str]:
        return self.session.connected_peers

    @property
    def participants(self) -> Dict[str, ParticipantInfo]:
        return self.session.participants

    @property
    def all_participants(self) -> List[ParticipantInfo]:
        return self.session.all_participants()

    @property
    def connection_state(self) -> ConnectionStatus:
        return self.session.connection_state

    @property
    def room_status(self) -> RoomStatus:
        return self.session.room_status

    @property
    def is_muted(self) -> bool:
        return self.media.muted

    @property
    def is_video_off(self) -> bool:
        return self.media.video_off

    @property
    def is_screen_sharing(self) -> bool:
        return self.media.screen_sharing

    # ---------- 로컬 미디어 ----------
    async def initialize_webrtc(self, audio_only: bool = False, quality_tier: str = "medium") -> None:
        """로컬 미디어를 획득합니다. 이미 초기화되었거나 진행 중이면 아무것도 하지 않습니다.

        Args:
            audio_only (bool): True면 오디오만 획득
            quality_tier (str): "small" | "medium" | "large"

        Raises:
            MediaAccessError: 장치 없음 또는 권한 거부 (connection_state는 disconnected 유지)
            ValueError: 알 수 없는 품질 단계
        """
        if self.session.local_stream is not None or self._initializing:
            logger.info("[WebRTC] 이미 초기화됨 (또는 진행 중) - 무시")
            return

        self._initializing = True
        generation = self._generation
        try:
            stream = await self.media.initialize(audio_only, quality_tier)
        except MediaAccessError as e:
            logger.error(f"[WebRTC] 로컬 미디어 획득 실패: {e}")
            if generation == self._generation:
                self.session.connection_state = ConnectionStatus.DISCONNECTED
            raise
        finally:
            if generation == self._generation:
                self._initializing = False

        if generation != self._generation:
            logger.info("[WebRTC] 초기화 중 정리됨 - 획득한 스트림 폐기")
            stream.stop()
            return

        self.media.adopt(stream, audio_only)
        self.session.connection_state = ConnectionStatus.CONNECTING
        self.session.refresh_participant_count()
        logger.info(f"[WebRTC] 초기화 완료: {stream}")

    def toggle_mute(self) -> None:
        self.media.toggle_mute()

    def toggle_video(self) -> None:
        self.media.toggle_video()

    async def start_screen_share(self, with_audio: bool = False) -> None:
        await self.media.start_screen_share(with_audio)

    async def stop_screen_share(self) -> None:
        await self.media.stop_screen_share()

    def cleanup_webrtc(self) -> None:
        """모든 피어 연결을 닫고 모든 트랙을 정지한 뒤 상태를 초기화합니다.

        동기 함수이며, 진행 중인 협상/초기화는 취소하지 않고 결과를 버립니다.
        """
        self._generation += 1
        self._initializing = False
        self.peers.cleanup_all()
        self.media.cleanup()
        self.session.reset()
        logger.info("[WebRTC] 정리 완료")

    # ---------- 시그널링 ----------
    async def handle_signaling_message(self, message: SignalingMessage) -> Optional[NegotiationError]:
        """시그널링 메시지 하나를 처리합니다.

        Returns:
            Optional[NegotiationError]: 협상이 실패했으면 로그에 남긴 예외, 아니면 None

        Note:
            - 피어별 실패는 다른 피어의 연결에 영향을 주지 않음
            - 재시도하지 않음 (필요하면 호출자가 결정)
        """
        peer_id = message.peer_id
        try:
            if message.type == "user-joined":
                if message.participant_info is not None:
                    self.session.upsert_participant(ParticipantInfo(
                        id=peer_id,
                        name=message.participant_info.name,
                        is_host=message.participant_info.is_host,
                        joined_at=message.timestamp,
                    ))
                await self.peers.handle_user_joined(peer_id)
            elif message.type == "offer":
                await self.peers.handle_offer(peer_id, message.data or {})
            elif message.type == "answer":
                await self.peers.handle_answer(peer_id, message.data or {})
            elif message.type == "ice-candidate":
                await self.peers.handle_ice_candidate(peer_id, message.data or {})
            elif message.type == "user-left":
                await self.peers.handle_user_left(peer_id)
            elif message.type == "participant-update":
                self.session.replace_roster(message.participants())
                logger.info(f"[Signaling] 참가자 목록 갱신: {len(self.session.participants)}명")
        except NegotiationError as e:
            logger.error(f"[WebRTC] {e}")
            return e
        except ValidationError as e:
            logger.warning(f"[Signaling] 잘못된 참가자 목록 무시 (from {peer_id[:8]}): {e}")
        return None

    async def join(self) -> None:
        """시그널링 채널에 참가합니다.

        Raises:
            SignalingDeliveryError: 연결/참가 실패
        """
        if self.signaling is None:
            raise RuntimeError("MeetingClient has no signaling bridge")
        await self.signaling.connect()
        self.session.room_status.joined = True
        self.session.room_status.meeting_code = getattr(self.signaling, "meeting_code", None)
        self.peers.start_stats_monitor()
        logger.info(f"[Signaling] 미팅 참가: {self.session.room_status.meeting_code}")

    async def leave(self) -> None:
        """user-left를 알리고 시그널링을 끊은 뒤 전체 정리합니다."""
        self.peers.stop_stats_monitor()
        if self.signaling is not None:
            await self.signaling.disconnect()
        self.cleanup_webrtc()

    async def publish_roster(self) -> None:
        """현재 참가자 목록을 participant-update로 룸 전체에 알립니다 (호스트용).

        자신의 정보를 알 수 있으면 목록 맨 앞에 포함합니다.
        """
        if self.signaling is None:
            return
        roster = self.session.all_participants()
        me = self.signaling.local_participant()
        if me is not None and all(p.id != me.id for p in roster):
            roster.insert(0, me)
        await self.signaling.send(None, "participant-update", {
            "participants": [p.model_dump(by_alias=True) for p in roster],
        })
