"""세션/룸 상태 모듈.

피어 연결 엔트리, 원격 스트림, 연결된 피어 집합, 참가자 로스터와
룸 상태를 한 객체에 모읍니다. 모든 컴포넌트는 같은 Session 인스턴스를
참조로 공유하며, 상위 계층(UI)에 노출되는 것도 이 상태뿐입니다.

Invariants:
    - entries와 remote_streams는 peer_id 기준 1:1 (remove_peer가 동시에 제거)
    - connected_peers ⊆ entries
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay

from ..signaling.messages import ParticipantInfo
from ..webrtc.tracks import MediaStream

if TYPE_CHECKING:
    from ..webrtc.peer_manager import PeerConnectionEntry

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    """세션 전체의 개략적인 연결 상태."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class RoomStatus:
    """룸 참가 상태."""

    joined: bool = False
    participant_count: int = 0
    meeting_code: Optional[str] = None


class Session:
    """메시 코어가 공유하는 상태 저장소.

    Attributes:
        local_stream (Optional[MediaStream]): 로컬 카메라/마이크 스트림
        screen_stream (Optional[MediaStream]): 화면 공유 중인 스트림
        entries (Dict[str, PeerConnectionEntry]): 피어 ID → 연결 엔트리
        remote_streams (Dict[str, MediaStream]): 피어 ID → 원격 스트림
        connected_peers (Set[str]): connected 상태인 피어 ID
        participants (Dict[str, ParticipantInfo]): 시그널링 기반 참가자 로스터
        connection_state (ConnectionStatus): 세션 연결 상태
        room_status (RoomStatus): 룸 참가 정보
        relay (MediaRelay): 로컬 트랙을 여러 피어 송신자에 나눠 주는 릴레이

    Thread Safety:
        - 단일 이벤트 루프에서만 변경되므로 잠금이 필요 없음
    """

    def __init__(self):
        self.local_stream: Optional[MediaStream] = None
        self.screen_stream: Optional[MediaStream] = None
        self.entries: Dict[str, "PeerConnectionEntry"] = {}
        self.remote_streams: Dict[str, MediaStream] = {}
        self.connected_peers: Set[str] = set()
        self.participants: Dict[str, ParticipantInfo] = {}
        self.connection_state = ConnectionStatus.DISCONNECTED
        self.room_status = RoomStatus()

        # one reader per local track, one subscription per sender
        self.relay = MediaRelay()

    # ---------- 로컬 미디어 ----------
    def outbound_video_track(self) -> Optional[MediaStreamTrack]:
        """피어에게 보낼 비디오 트랙 (화면 공유 중이면 화면 트랙)."""
        if self.screen_stream is not None:
            screen_tracks = self.screen_stream.get_video_tracks()
            if screen_tracks:
                return screen_tracks[0]
        if self.local_stream is not None:
            camera_tracks = self.local_stream.get_video_tracks()
            if camera_tracks:
                return camera_tracks[0]
        return None

    # ---------- 피어 엔트리 ----------
    def add_entry(self, entry: "PeerConnectionEntry") -> None:
        if entry.peer_id in self.entries:
            raise ValueError(f"Peer {entry.peer_id} already has a connection entry")
        self.entries[entry.peer_id] = entry

    def set_remote_stream(self, peer_id: str, stream: MediaStream) -> bool:
        """원격 스트림을 저장합니다. 엔트리가 없는 피어는 거부합니다."""
        if peer_id not in self.entries:
            logger.warning(f"[Session] 엔트리 없는 피어 {peer_id[:8]}의 원격 스트림 무시")
            return False
        self.remote_streams[peer_id] = stream
        return True

    def mark_connected(self, peer_id: str) -> None:
        if peer_id not in self.entries:
            return
        self.connected_peers.add(peer_id)
        self.connection_state = ConnectionStatus.CONNECTED
        self.refresh_participant_count()

    def mark_disconnected(self, peer_id: str) -> None:
        self.connected_peers.discard(peer_id)
        if not self.connected_peers and self.connection_state == ConnectionStatus.CONNECTED:
            self.connection_state = ConnectionStatus.CONNECTING
        self.refresh_participant_count()

    def remove_peer(self, peer_id: str) -> Optional["PeerConnectionEntry"]:
        """피어를 엔트리, 원격 스트림, 연결 집합, 로스터에서 한 번에 제거합니다.

        Returns:
            Optional[PeerConnectionEntry]: 제거된 엔트리 (없었으면 None)
        """
        entry = self.entries.pop(peer_id, None)
        self.remote_streams.pop(peer_id, None)
        self.participants.pop(peer_id, None)
        self.mark_disconnected(peer_id)
        return entry

    # ---------- 로스터 ----------
    def upsert_participant(self, info: ParticipantInfo) -> None:
        self.participants[info.id] = info

    def replace_roster(self, participants: Iterable[ParticipantInfo]) -> None:
        """로스터를 통째로 교체합니다 (미디어 연결에는 영향 없음)."""
        self.participants = {p.id: p for p in participants}

    def all_participants(self) -> List[ParticipantInfo]:
        """로스터와 WebRTC 피어를 합친 참가자 목록.

        로스터에 없는 WebRTC 피어는 임시 이름("Participant <ID 앞 8자리>")으로 표시됩니다.
        """
        merged = list(self.participants.values())
        for peer_id, entry in self.entries.items():
            if peer_id not in self.participants:
                merged.append(ParticipantInfo(
                    id=peer_id,
                    name=f"Participant {peer_id[:8]}",
                    is_host=False,
                    joined_at=int(entry.created_at * 1000),
                ))
        return merged

    # ---------- 룸 상태 ----------
    def refresh_participant_count(self) -> None:
        if self.local_stream is None:
            self.room_status.participant_count = len(self.connected_peers)
        else:
            self.room_status.participant_count = len(self.connected_peers) + 1

    def reset(self) -> None:
        """모든 상태를 초기화합니다 (트랙 정지/연결 종료는 호출자가 먼저 수행)."""
        self.local_stream = None
        self.screen_stream = None
        self.entries.clear()
        self.remote_streams.clear()
        self.connected_peers.clear()
        self.participants.clear()
        self.connection_state = ConnectionStatus.DISCONNECTED
        self.room_status = RoomStatus()
