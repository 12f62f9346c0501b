"""시그널링 릴레이 WebSocket 라우터.

미팅 코드 단위로 참가자를 묶고, 메시 클라이언트가 보낸 시그널링 메시지를
대상 피어(targetPeerId) 또는 룸의 다른 참가자 전체에게 그대로 전달합니다.
릴레이는 SDP/ICE 내용을 해석하지 않습니다.

Protocol:
    1. 클라이언트 → {"type": "join", "meetingCode", "peerId", "participantInfo": {"name", "isHost"}}
    2. 서버 → {"type": "joined", "meetingCode", "participants": [...]}
    3. 이후 모든 SignalingMessage를 중계 (peerId/meetingCode는 서버가 등록값으로 덮어씀)
    4. 연결 종료 시 룸에 user-left 브로드캐스트
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from meshcore.signaling.messages import MESSAGE_TYPES, SignalingMessage, normalize_meeting_code, now_ms
from meshcore.webrtc.config import ice_config

if TYPE_CHECKING:
    from room_manager import RoomManager

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 매니저 참조 (app.py에서 설정됨)
_room_manager: Optional["RoomManager"] = None


def init_managers(room_manager: "RoomManager"):
    """룸 매니저 인스턴스를 설정합니다 (app.py에서 호출)."""
    global _room_manager
    _room_manager = room_manager
    logger.info("[Signaling] 릴레이 라우터 매니저 초기화 완료")


def get_room_manager() -> Optional["RoomManager"]:
    return _room_manager


async def _send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json({"type": "error", "message": message})


async def broadcast_to_room(meeting_code: str, message: Dict[str, Any], exclude: Optional[List[str]] = None):
    """룸의 참가자 전체에게 메시지를 보냅니다.

    전송에 실패한 참가자는 룸에서 제거하고 남은 참가자에게 user-left를 알립니다.
    """
    exclude = exclude or []
    failed = []
    for peer in _room_manager.get_room_peers(meeting_code):
        if peer.peer_id in exclude:
            continue
        try:
            await peer.websocket.send_json(message)
        except Exception as e:
            logger.error(f"[Signaling] 피어 {peer.peer_id[:8]} 브로드캐스트 실패: {e}")
            failed.append(peer.peer_id)

    for peer_id in failed:
        await _evict(peer_id, meeting_code)


def _user_left(peer_id: str, meeting_code: str) -> Dict[str, Any]:
    return {"type": "user-left", "peerId": peer_id, "meetingCode": meeting_code, "timestamp": now_ms()}


async def _evict(peer_id: str, meeting_code: str) -> None:
    if _room_manager.leave_room(peer_id) is None:
        return
    logger.info(f"[Signaling] 전송 실패한 피어 {peer_id[:8]} 룸에서 제거")
    await broadcast_to_room(meeting_code, _user_left(peer_id, meeting_code))


async def _relay(websocket: WebSocket, peer_id: str, meeting_code: str, frame: Dict[str, Any]) -> None:
    try:
        message = SignalingMessage.from_wire({**frame, "peerId": peer_id, "meetingCode": meeting_code})
    except ValidationError as e:
        await _send_error(websocket, f"Invalid signaling message: {e.errors()[0]['msg']}")
        return

    payload = message.to_wire()
    target_id = message.target_peer_id
    if target_id is None:
        await broadcast_to_room(meeting_code, payload, exclude=[peer_id])
        return

    target = _room_manager.get_peer(target_id)
    if target is None or _room_manager.get_peer_room(target_id) != meeting_code:
        await _send_error(websocket, f"Peer {target_id} is not in meeting {meeting_code}")
        return
    try:
        await target.websocket.send_json(payload)
    except Exception as e:
        logger.error(f"[Signaling] {message.type} 전달 실패 → {target_id[:8]}: {e}")
        await _evict(target_id, meeting_code)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """메시 클라이언트용 시그널링 릴레이 엔드포인트.

    처리하는 메시지 타입:
        - join: 룸 참가 (첫 프레임이어야 함)
        - offer / answer / ice-candidate: targetPeerId로 전달
        - user-joined / user-left / participant-update: 룸 전체 또는 대상에게 전달
    """
    if _room_manager is None:
        logger.error("[Signaling] 매니저가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()

    peer_id: Optional[str] = None
    meeting_code: Optional[str] = None

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await _send_error(websocket, "Frame is not valid JSON")
                continue
            if not isinstance(frame, dict):
                await _send_error(websocket, "Frame must be a JSON object")
                continue

            message_type = frame.get("type")

            if message_type == "join":
                if meeting_code is not None:
                    await _send_error(websocket, "Already joined")
                    continue
                requested_code = frame.get("meetingCode")
                requested_id = frame.get("peerId")
                if not requested_code or not requested_id:
                    await _send_error(websocket, "join requires meetingCode and peerId")
                    continue
                info = frame.get("participantInfo") or {}
                meeting_code = normalize_meeting_code(requested_code)
                peer_id = requested_id
                _room_manager.join_room(
                    meeting_code, peer_id, info.get("name") or f"Participant {peer_id[:8]}",
                    websocket, is_host=bool(info.get("isHost", False)),
                )
                await websocket.send_json({
                    "type": "joined",
                    "meetingCode": meeting_code,
                    "participants": _room_manager.get_presence(meeting_code),
                })

            elif message_type in MESSAGE_TYPES:
                if meeting_code is None:
                    await _send_error(websocket, "Send a join frame first")
                    continue
                await _relay(websocket, peer_id, meeting_code, frame)

            else:
                logger.warning(f"[Signaling] 알 수 없는 메시지 타입: {message_type}")
                await _send_error(websocket, f"Unknown message type: {message_type}")

    except WebSocketDisconnect:
        logger.info(f"[Signaling] 피어 {(peer_id or 'unknown')[:8]} 연결 끊김")
    finally:
        registered = _room_manager.get_peer(peer_id) if peer_id else None
        if registered is not None and registered.websocket is websocket:
            _room_manager.leave_room(peer_id)
            await broadcast_to_room(meeting_code, _user_left(peer_id, meeting_code))


@router.get("/api/rooms")
async def list_rooms():
    """활성 미팅 룸 목록."""
    return {"rooms": _room_manager.get_room_list() if _room_manager else []}


@router.get("/api/ice-config")
async def get_ice_config():
    """브라우저 RTCPeerConnection용 ICE 설정 (STUN 기본, TURN은 설정된 경우만)."""
    if ice_config.has_turn_server:
        logger.info("[Signaling] ICE 설정 제공: STUN + TURN")
    else:
        logger.info("[Signaling] ICE 설정 제공: STUN만 (TURN 미설정)")
    return ice_config.to_browser_config()
