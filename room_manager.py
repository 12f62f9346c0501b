"""시그널링 릴레이의 룸/참가자 관리 모듈.

미팅 코드별로 WebSocket 참가자를 관리합니다. 릴레이는 메시지를 전달만 하며
미디어는 전혀 다루지 않습니다 (메시 구조에서 미디어는 참가자끼리 직접 전송).

Architecture:
    - rooms: Dict[str, Dict[str, Peer]] - 미팅 코드 → 참가자 맵
    - peer_to_room: Dict[str, str] - 참가자 ID → 미팅 코드 (빠른 조회용)

Examples:
    >>> manager = RoomManager()
    >>> manager.join_room("abc123", "peer-123", "Alice", websocket, is_host=True)
    >>> [p["name"] for p in manager.get_presence("ABC123")]
    ['Alice']
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import WebSocket

from meshcore.signaling.messages import normalize_meeting_code

logger = logging.getLogger(__name__)


@dataclass
class Peer:
    """릴레이에 연결된 참가자.

    Attributes:
        peer_id (str): 참가자 ID
        name (str): 표시 이름
        websocket (WebSocket): 참가자와의 WebSocket 연결
        is_host (bool): 호스트 여부
        joined_at (int): 참가 시각 (epoch ms)
    """
    peer_id: str
    name: str
    websocket: WebSocket
    is_host: bool = False
    joined_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_participant(self) -> dict:
        return {"id": self.peer_id, "name": self.name, "isHost": self.is_host, "joinedAt": self.joined_at}


class RoomManager:
    """미팅 룸과 참가자를 관리하는 클래스.

    Note:
        - 미팅 코드는 대소문자/공백 구분 없이 정규화되어 키로 사용됨
        - 룸은 첫 참가 시 생성되고 마지막 참가자가 나가면 삭제됨
    """

    def __init__(self):
        # meeting_code -> {peer_id: Peer}
        self.rooms: Dict[str, Dict[str, Peer]] = {}

        # peer_id -> meeting_code
        self.peer_to_room: Dict[str, str] = {}

    def join_room(self, meeting_code: str, peer_id: str, name: str, websocket: WebSocket,
                  is_host: bool = False) -> Peer:
        """참가자를 룸에 추가합니다. 같은 peer_id로 다시 참가하면 덮어씁니다."""
        code = normalize_meeting_code(meeting_code)
        previous = self.peer_to_room.get(peer_id)
        if previous is not None and previous != code:
            self.leave_room(peer_id)

        if code not in self.rooms:
            self.rooms[code] = {}
            logger.info(f"[Signaling] Room '{code}' created")

        peer = Peer(peer_id=peer_id, name=name, websocket=websocket, is_host=is_host)
        self.rooms[code][peer_id] = peer
        self.peer_to_room[peer_id] = code

        logger.info(f"[Signaling] Peer '{name}' ({peer_id[:8]}) joined room '{code}'. "
                    f"Room has {len(self.rooms[code])} peers")
        return peer

    def leave_room(self, peer_id: str) -> Optional[str]:
        """참가자를 룸에서 제거합니다.

        Returns:
            Optional[str]: 참가자가 속해 있던 미팅 코드 (없었으면 None)
        """
        code = self.peer_to_room.pop(peer_id, None)
        if code is None or peer_id not in self.rooms.get(code, {}):
            return None

        peer = self.rooms[code].pop(peer_id)
        if not self.rooms[code]:
            del self.rooms[code]
            logger.info(f"[Signaling] Room '{code}' deleted (empty)")
        else:
            logger.info(f"[Signaling] Peer '{peer.name}' ({peer_id[:8]}) left room '{code}'. "
                        f"Room has {len(self.rooms[code])} peers")
        return code

    def get_room_peers(self, meeting_code: str) -> List[Peer]:
        return list(self.rooms.get(normalize_meeting_code(meeting_code), {}).values())

    def get_other_peers(self, meeting_code: str, exclude_peer_id: str) -> List[Peer]:
        return [peer for peer in self.get_room_peers(meeting_code) if peer.peer_id != exclude_peer_id]

    def get_peer_room(self, peer_id: str) -> Optional[str]:
        return self.peer_to_room.get(peer_id)

    def get_peer(self, peer_id: str) -> Optional[Peer]:
        code = self.peer_to_room.get(peer_id)
        if code is None:
            return None
        return self.rooms.get(code, {}).get(peer_id)

    def get_presence(self, meeting_code: str) -> List[dict]:
        """룸 참가자 목록 (ParticipantInfo 와이어 형식)."""
        return [peer.to_participant() for peer in self.get_room_peers(meeting_code)]

    def get_room_list(self) -> List[dict]:
        """모든 룸의 요약 정보.

        Returns:
            List[dict]: [{"meeting_code", "peer_count", "peers": [{"peer_id", "name", "is_host"}]}]
        """
        return [
            {
                "meeting_code": code,
                "peer_count": len(peers),
                "peers": [{"peer_id": p.peer_id, "name": p.name, "is_host": p.is_host}
                          for p in peers.values()],
            }
            for code, peers in self.rooms.items()
        ]

    def get_room_count(self, meeting_code: str) -> int:
        return len(self.rooms.get(normalize_meeting_code(meeting_code), {}))
