"""WebRTC 피어 연결 관리 모듈.

이 모듈은 풀 메시(full-mesh) 구조에서 원격 참가자마다 하나의
RTCPeerConnection을 생성하고 offer/answer/ICE 협상을 수행합니다.

주요 기능:
    - 피어별 RTCPeerConnection 생성 (피어당 최대 1개)
    - 로컬 트랙 연결 및 송신 비디오 상한 적용
    - offer/answer/ICE candidate 처리 (먼저 도착한 candidate는 버퍼링)
    - 연결 상태 머신 구동 및 실패 피어 즉시 제거
    - 수신 비디오 통계 주기 로깅

Negotiation Roles:
    - user-joined 수신: 기존 참가자가 offer를 생성 (offerer)
    - offer 수신: 새 참가자가 answer를 생성 (answerer)
    - 이미 엔트리가 있는 피어의 user-joined/offer는 무시 (중복 연결 방지)

Event Flow:
    aiortc 콜백 → TrackAdded / IceCandidateProduced / StateChanged → dispatch()

Examples:
    >>> manager = PeerConnectionManager(session, signaling=bridge)
    >>> await manager.handle_user_joined("peer-b")       # offer 전송
    >>> await manager.handle_answer("peer-b", answer)    # 원격 answer 적용
    >>> manager.cleanup_all()

See Also:
    events.py: 피어 이벤트와 상태 전이 함수
    media.py: 화면 공유 트랙 교체
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Dict, List, Optional, Set

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCPeerConnection, RTCSessionDescription

from .config import EncodingConfig, ICEServerConfig, encoding_config, ice_config
from .errors import NegotiationError, SignalingDeliveryError
from .events import IceCandidateProduced, PeerEvent, PeerState, StateChanged, TrackAdded, next_state
from .sdp import candidate_from_dict, candidate_to_dict, count_candidates, limit_video_bandwidth
from .tracks import MediaStream, RelayTrack

if TYPE_CHECKING:
    from ..session.state import Session
    from ..signaling.bridge import SignalingBridge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncodingParameters:
    """비디오 송신자에 적용한 인코딩 상한."""

    max_bitrate: int
    max_framerate: float
    scale_resolution_down_by: float = 1.0


@dataclass
class PeerConnectionEntry:
    """원격 피어 하나에 대한 연결 엔트리.

    Attributes:
        peer_id (str): 원격 피어 ID
        pc (RTCPeerConnection): 네이티브 피어 연결
        connection_state (PeerState): 연결 상태
        remote_stream (Optional[MediaStream]): 수신 스트림
        pending_candidates (List[RTCIceCandidate]): 원격 SDP 적용 전에 도착한 candidate
        video_encoding (Optional[EncodingParameters]): 비디오 송신 상한
        video_source (Optional[MediaStreamTrack]): 비디오 송신자가 구독 중인 로컬 원본 트랙
        created_at (float): 생성 시각 (epoch 초)
    """

    peer_id: str
    pc: RTCPeerConnection
    connection_state: PeerState = PeerState.NEW
    remote_stream: Optional[MediaStream] = None
    pending_candidates: List[RTCIceCandidate] = field(default_factory=list)
    video_encoding: Optional[EncodingParameters] = None
    video_source: Optional[MediaStreamTrack] = None
    created_at: float = field(default_factory=time.time)


class PeerConnectionManager:
    """풀 메시 피어 연결 관리자.

    Early Candidates:
        - 엔트리 생성 전에 도착한 candidate는 피어별로 최대 MAX_EARLY_CANDIDATES개 보관
        - 제거된(떠난) 피어에 늦게 도착한 candidate는 보관하지 않고 버림
        - 새 user-joined를 받으면 그 이전 candidate는 이전 세션 것으로 보고 버림

    Attributes:
        session (Session): 공유 세션 상태 (엔트리/원격 스트림 보관)
        signaling (Optional[SignalingBridge]): offer/answer/candidate 전송 채널
        ice (ICEServerConfig): ICE 서버 설정
        encoding (EncodingConfig): 송신/수신 트랙 설정

    Concurrency:
        - 모든 상태 변경은 단일 이벤트 루프에서 일어나므로 잠금이 없음
        - 피어 생성은 동기 함수라 "엔트리 확인 → 생성"이 중간에 끊기지 않음
    """

    MAX_EARLY_CANDIDATES = 32

    def __init__(
        self,
        session: "Session",
        signaling: Optional["SignalingBridge"] = None,
        ice: ICEServerConfig = ice_config,
        encoding: EncodingConfig = encoding_config,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
    ):
        self.session = session
        self.signaling = signaling
        self.ice = ice
        self.encoding = encoding
        self._pc_factory = pc_factory or self._default_pc_factory

        # candidates for peers that have no entry yet
        self._early_candidates: Dict[str, List[RTCIceCandidate]] = {}
        # peers dropped or gone; their late candidates belong to a dead ICE session
        self._departed: Set[str] = set()

        # background tasks (pc.close, candidate sends) kept alive until done
        self._tasks: Set[asyncio.Task] = set()
        self._stats_task: Optional[asyncio.Task] = None

    def _default_pc_factory(self) -> RTCPeerConnection:
        return RTCPeerConnection(configuration=self.ice.build_configuration())

    # ---------- 조회 ----------
    def has_peer(self, peer_id: str) -> bool:
        return peer_id in self.session.entries

    def get_peer_connection(self, peer_id: str) -> Optional[RTCPeerConnection]:
        entry = self.session.entries.get(peer_id)
        return entry.pc if entry else None

    # ---------- 생성 ----------
    def create_peer_connection(self, peer_id: str) -> PeerConnectionEntry:
        """원격 피어용 연결 엔트리를 생성합니다.

        이미 엔트리가 있으면 기존 엔트리를 그대로 반환합니다.

        Args:
            peer_id (str): 원격 피어 ID

        Returns:
            PeerConnectionEntry: 생성(또는 기존) 엔트리

        Note:
            - 로컬 스트림이 있으면 모든 로컬 트랙이 연결됨 (없으면 트랙 0개)
            - 화면 공유 중이면 카메라 대신 화면 트랙이 비디오로 연결됨
            - 트랙/candidate/연결 상태 핸들러 3개를 등록
        """
        existing = self.session.entries.get(peer_id)
        if existing is not None:
            logger.debug(f"[WebRTC] 피어 {peer_id[:8]} 엔트리 이미 존재, 재사용")
            return existing

        self._departed.discard(peer_id)
        pc = self._pc_factory()
        entry = PeerConnectionEntry(peer_id=peer_id, pc=pc)
        self._attach_local_tracks(entry)
        self._register_handlers(entry)
        entry.pending_candidates.extend(self._early_candidates.pop(peer_id, []))
        self.session.add_entry(entry)

        logger.info(f"[WebRTC] 피어 연결 생성: peer={peer_id[:8]}, "
                    f"송신트랙={len(pc.getSenders())}, 대기candidate={len(entry.pending_candidates)}")
        return entry

    def _attach_local_tracks(self, entry: PeerConnectionEntry) -> None:
        stream = self.session.local_stream
        if stream is None:
            logger.warning(f"[WebRTC] 로컬 스트림 없이 피어 {entry.peer_id[:8]} 연결 생성 - 송신 트랙 없음")
            return

        relay = self.session.relay
        for track in stream.get_audio_tracks():
            entry.pc.addTrack(relay.subscribe(track, buffered=False))

        video = self.session.outbound_video_track()
        if video is not None:
            entry.pc.addTrack(relay.subscribe(video, buffered=False))
            entry.video_source = video
            entry.video_encoding = self._apply_encoding_limits(video)

    def _apply_encoding_limits(self, track: MediaStreamTrack) -> EncodingParameters:
        params = EncodingParameters(
            max_bitrate=self.encoding.MAX_VIDEO_BITRATE,
            max_framerate=self.encoding.MAX_VIDEO_FRAMERATE,
            scale_resolution_down_by=self.encoding.SCALE_RESOLUTION_DOWN_BY,
        )
        # bitrate goes into the SDP, frame rate is enforced on the track itself
        if isinstance(track, RelayTrack):
            current = track.max_frame_rate
            if current is None or current > params.max_framerate:
                track.max_frame_rate = params.max_framerate
        return params

    def _register_handlers(self, entry: PeerConnectionEntry) -> None:
        pc = entry.pc
        peer_id = entry.peer_id

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            self.dispatch(TrackAdded(peer_id, track))

        @pc.on("icecandidate")
        def on_ice_candidate(candidate):
            self.dispatch(IceCandidateProduced(peer_id, candidate))

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            self.dispatch(StateChanged(peer_id, pc.connectionState))

    # ---------- 이벤트 ----------
    def dispatch(self, event: PeerEvent) -> None:
        """피어 이벤트를 처리합니다. 엔트리가 없는 피어의 이벤트는 무시합니다."""
        entry = self.session.entries.get(event.peer_id)
        if entry is None:
            logger.debug(f"[WebRTC] 알 수 없는 피어 {event.peer_id[:8]} 이벤트 무시: {type(event).__name__}")
            return

        if isinstance(event, TrackAdded):
            self._on_track_added(entry, event.track)
        elif isinstance(event, IceCandidateProduced):
            self._on_local_candidate(entry, event.candidate)
        elif isinstance(event, StateChanged):
            self._on_state_changed(entry, event.state)

    def _on_track_added(self, entry: PeerConnectionEntry, track: MediaStreamTrack) -> None:
        logger.info(f"[WebRTC] 피어 {entry.peer_id[:8]} {track.kind} 트랙 수신")

        if track.kind == "video":
            track = RelayTrack(
                track,
                content_hint=self.encoding.REMOTE_VIDEO_CONTENT_HINT,
                max_frame_rate=self.encoding.REMOTE_VIDEO_MAX_FRAMERATE,
            )

        if entry.remote_stream is None:
            entry.remote_stream = MediaStream()
        entry.remote_stream.add_track(track)
        self.session.set_remote_stream(entry.peer_id, entry.remote_stream)

        @track.on("ended")
        def on_ended():
            logger.info(f"[WebRTC] 피어 {entry.peer_id[:8]} {track.kind} 트랙 종료")

    def _on_local_candidate(self, entry: PeerConnectionEntry, candidate: Optional[RTCIceCandidate]) -> None:
        if candidate is None:
            return
        self._spawn(self._send(entry.peer_id, "ice-candidate", candidate_to_dict(candidate)))

    def _on_state_changed(self, entry: PeerConnectionEntry, native_state: str) -> None:
        previous = entry.connection_state
        entry.connection_state = next_state(previous, PeerState.from_native(native_state))
        if entry.connection_state == previous:
            return

        logger.info(f"[WebRTC] 피어 {entry.peer_id[:8]} 연결 상태: {previous.value} -> {entry.connection_state.value}")

        if entry.connection_state == PeerState.CONNECTED:
            self.session.mark_connected(entry.peer_id)
        elif entry.connection_state.is_terminal:
            # no retry, the peer simply leaves the roster
            self._drop_peer(entry)

    def _drop_peer(self, entry: PeerConnectionEntry) -> None:
        if self.session.entries.get(entry.peer_id) is not entry:
            return
        self._early_candidates.pop(entry.peer_id, None)
        self._departed.add(entry.peer_id)
        self.session.remove_peer(entry.peer_id)
        self._detach(entry)
        self._spawn(self._close_pc(entry))
        logger.info(f"[WebRTC] 피어 {entry.peer_id[:8]} 제거 ({entry.connection_state.value})")

    # ---------- 협상 ----------
    def _require_local_stream(self, peer_id: str) -> None:
        if self.session.local_stream is None:
            raise NegotiationError(peer_id, "guard", RuntimeError("local media is not initialized"))

    def _is_current(self, entry: PeerConnectionEntry) -> bool:
        return self.session.entries.get(entry.peer_id) is entry

    async def handle_user_joined(self, peer_id: str) -> None:
        """새 참가자에게 offer를 보냅니다 (이 쪽이 offerer).

        Raises:
            NegotiationError: 로컬 스트림 없음(guard) 또는 offer 생성/적용 실패(offer)
        """
        if self.has_peer(peer_id):
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} 이미 연결 중 - user-joined 무시")
            return
        self._require_local_stream(peer_id)

        # the peer has not seen our offer yet, so anything buffered is from an earlier session
        stale = self._early_candidates.pop(peer_id, [])
        if stale:
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} 이전 세션 candidate {len(stale)}개 폐기")
        entry = self.create_peer_connection(peer_id)
        try:
            offer = await entry.pc.createOffer()
            await entry.pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(peer_id, "offer", e) from e

        if not self._is_current(entry):
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} offer 폐기 (연결이 이미 정리됨)")
            return
        await self._send(peer_id, "offer", self._describe(entry.pc.localDescription))
        logger.info(f"[WebRTC] offer 전송 → {peer_id[:8]}")

    async def handle_offer(self, peer_id: str, data: Dict[str, Any]) -> None:
        """원격 offer를 적용하고 answer를 보냅니다 (이 쪽이 answerer).

        Args:
            peer_id (str): offer를 보낸 피어 ID
            data (dict): {"type": "offer", "sdp": str}

        Raises:
            NegotiationError: guard, remote-offer, answer 단계 실패
        """
        if self.has_peer(peer_id):
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} 엔트리 존재 - 중복 offer 무시")
            return
        self._require_local_stream(peer_id)

        entry = self.create_peer_connection(peer_id)
        try:
            description = RTCSessionDescription(sdp=data["sdp"], type=data["type"])
            await entry.pc.setRemoteDescription(description)
        except Exception as e:
            raise NegotiationError(peer_id, "remote-offer", e) from e

        await self._flush_pending_candidates(entry)

        try:
            answer = await entry.pc.createAnswer()
            await entry.pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(peer_id, "answer", e) from e

        if not self._is_current(entry):
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} answer 폐기 (연결이 이미 정리됨)")
            return
        await self._send(peer_id, "answer", self._describe(entry.pc.localDescription))
        logger.info(f"[WebRTC] answer 전송 → {peer_id[:8]}")

    async def handle_answer(self, peer_id: str, data: Dict[str, Any]) -> None:
        """원격 answer를 적용합니다.

        offer를 보낸 상태(have-local-offer)가 아니면 중복 answer로 보고 무시합니다.

        Raises:
            NegotiationError: remote-answer 단계 실패
        """
        entry = self.session.entries.get(peer_id)
        if entry is None:
            logger.warning(f"[WebRTC] 엔트리 없는 피어 {peer_id[:8]}의 answer 무시")
            return
        if entry.pc.signalingState != "have-local-offer":
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} 중복 answer 무시 (state={entry.pc.signalingState})")
            return

        try:
            description = RTCSessionDescription(sdp=data["sdp"], type=data["type"])
            await entry.pc.setRemoteDescription(description)
        except Exception as e:
            raise NegotiationError(peer_id, "remote-answer", e) from e

        await self._flush_pending_candidates(entry)
        logger.info(f"[WebRTC] 피어 {peer_id[:8]} answer 적용 완료")

    async def handle_ice_candidate(self, peer_id: str, data: Dict[str, Any]) -> None:
        """원격 ICE candidate를 추가합니다.

        엔트리가 아직 없거나 원격 SDP가 적용되기 전이면 버퍼에 보관했다가
        setRemoteDescription 직후에 한꺼번에 추가합니다.

        Raises:
            NegotiationError: candidate 해석 또는 추가 실패
        """
        try:
            candidate = candidate_from_dict(data)
        except ValueError as e:
            raise NegotiationError(peer_id, "candidate", e) from e
        if candidate is None:
            return

        entry = self.session.entries.get(peer_id)
        if entry is None:
            if peer_id in self._departed:
                logger.debug(f"[WebRTC] 떠난 피어 {peer_id[:8]}의 candidate 폐기")
                return
            early = self._early_candidates.setdefault(peer_id, [])
            if len(early) >= self.MAX_EARLY_CANDIDATES:
                logger.warning(f"[WebRTC] 피어 {peer_id[:8]} 대기 candidate 한도 초과 - 폐기")
                return
            early.append(candidate)
            logger.debug(f"[WebRTC] 피어 {peer_id[:8]} 엔트리 생성 전 candidate 버퍼링")
            return
        if entry.pc.remoteDescription is None:
            entry.pending_candidates.append(candidate)
            logger.debug(f"[WebRTC] 피어 {peer_id[:8]} 원격 SDP 적용 전 candidate 버퍼링")
            return

        try:
            await entry.pc.addIceCandidate(candidate)
        except Exception as e:
            raise NegotiationError(peer_id, "candidate", e) from e

    async def _flush_pending_candidates(self, entry: PeerConnectionEntry) -> None:
        pending, entry.pending_candidates = entry.pending_candidates, []
        for candidate in pending:
            try:
                await entry.pc.addIceCandidate(candidate)
            except Exception as e:
                logger.warning(f"[WebRTC] 피어 {entry.peer_id[:8]} 버퍼 candidate 추가 실패: {e}")
        if pending:
            logger.info(f"[WebRTC] 피어 {entry.peer_id[:8]} 버퍼 candidate {len(pending)}개 적용")

    async def handle_user_left(self, peer_id: str) -> None:
        """떠난 피어의 연결, 원격 스트림, 로스터 항목을 제거합니다."""
        logger.info(f"[WebRTC] 피어 {peer_id[:8]} 퇴장")
        await self.close_peer_connection(peer_id)

    def _describe(self, description: RTCSessionDescription) -> Dict[str, str]:
        sdp = limit_video_bandwidth(description.sdp, self.encoding.MAX_VIDEO_BITRATE)
        logger.debug(f"[WebRTC] {description.type} SDP candidate {count_candidates(sdp)}개 포함")
        return {"type": description.type, "sdp": sdp}

    async def _send(self, peer_id: str, message_type: str, payload: Dict[str, Any]) -> None:
        if self.signaling is None:
            logger.warning(f"[WebRTC] 시그널링 없음 - {message_type} 전송 불가 ({peer_id[:8]})")
            return
        try:
            await self.signaling.send(peer_id, message_type, payload)
        except SignalingDeliveryError as e:
            logger.error(f"[WebRTC] {message_type} 전송 실패 ({peer_id[:8]}): {e}")

    # ---------- 종료 ----------
    def _detach(self, entry: PeerConnectionEntry) -> None:
        # late native events from this pc must not reach a newer entry
        entry.pc.remove_all_listeners()
        for sender in entry.pc.getSenders():
            if sender.track is not None:
                sender.track.stop()
        if entry.remote_stream is not None:
            entry.remote_stream.stop()

    async def _close_pc(self, entry: PeerConnectionEntry) -> None:
        try:
            await entry.pc.close()
        except Exception as e:
            logger.warning(f"[WebRTC] 피어 {entry.peer_id[:8]} 연결 종료 중 오류: {e}")
        logger.info(f"[WebRTC] 피어 {entry.peer_id[:8]} 연결 종료")

    async def close_peer_connection(self, peer_id: str) -> None:
        """피어 연결 하나를 종료하고 모든 상태에서 제거합니다."""
        self._early_candidates.pop(peer_id, None)
        entry = self.session.remove_peer(peer_id)
        self._departed.add(peer_id)
        if entry is None:
            return
        self._detach(entry)
        await self._close_pc(entry)
        entry.connection_state = PeerState.CLOSED

    def cleanup_all(self) -> None:
        """모든 피어 연결을 정리합니다 (동기, best-effort).

        진행 중인 협상은 취소하지 않고 버립니다. 연결 종료는 백그라운드로 진행됩니다.
        """
        self.stop_stats_monitor()
        entries = list(self.session.entries.values())
        for entry in entries:
            self.session.remove_peer(entry.peer_id)
            self._detach(entry)
            entry.connection_state = PeerState.CLOSED
            self._spawn(self._close_pc(entry))
        self._early_candidates.clear()
        self._departed.clear()
        logger.info(f"[WebRTC] 모든 피어 연결 정리: {len(entries)}개")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: nothing can still be running on these connections
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[WebRTC] 백그라운드 작업 실패: {task.exception()}")

    # ---------- 통계 ----------
    async def collect_video_stats(self) -> Dict[str, Dict[str, Any]]:
        """피어별 수신 비디오 RTP 통계를 수집합니다.

        Returns:
            dict: peer_id → {"packetsReceived", "packetsLost", "jitter"}
        """
        results: Dict[str, Dict[str, Any]] = {}
        for peer_id, entry in list(self.session.entries.items()):
            try:
                report = await entry.pc.getStats()
            except Exception as e:
                logger.warning(f"[WebRTC] 피어 {peer_id[:8]} 통계 조회 실패: {e}")
                continue
            for stats in report.values():
                if getattr(stats, "type", None) == "inbound-rtp" and getattr(stats, "kind", None) == "video":
                    results[peer_id] = {
                        "packetsReceived": stats.packetsReceived,
                        "packetsLost": stats.packetsLost,
                        "jitter": stats.jitter,
                    }
        return results

    async def _monitor_stats(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            for peer_id, stats in (await self.collect_video_stats()).items():
                logger.info(f"[WebRTC] 피어 {peer_id[:8]} 수신 비디오: packets={stats['packetsReceived']}, "
                            f"lost={stats['packetsLost']}, jitter={stats['jitter']}")

    def start_stats_monitor(self, interval: Optional[float] = None) -> None:
        """수신 비디오 통계를 주기적으로 로그에 남깁니다 (기본 10초)."""
        if self._stats_task is not None and not self._stats_task.done():
            return
        self._stats_task = asyncio.get_running_loop().create_task(
            self._monitor_stats(interval or self.encoding.STATS_INTERVAL)
        )

    def stop_stats_monitor(self) -> None:
        if self._stats_task is not None:
            self._stats_task.cancel()
            self._stats_task = None
