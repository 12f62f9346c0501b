"""시그널링 브리지 모듈.

메시 코어가 외부 메시지 릴레이와 통신하는 경계입니다. 코어가 사용하는 것은
send(peer_id, type, payload)와 단일 수신 핸들러(on_message)뿐입니다.

WebSocketSignalingBridge Flow:
    1. 릴레이 WebSocket 연결 (최대 3회 재시도, 2초 × 시도 횟수 대기)
    2. join 프레임 전송 → joined 응답(현재 참가자 목록) 수신
    3. user-joined 자기소개 브로드캐스트
    4. 참가자 목록을 participant-update로 핸들러에 전달
    5. 수신 메시지 필터링 후 도착 순서대로 핸들러에 전달
    6. 종료 시 user-left 브로드캐스트

Inbound Filter:
    - 다른 미팅 코드의 메시지
    - 내가 보낸 메시지
    - 다른 피어를 대상으로 한 메시지 (targetPeerId)
"""

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import websockets
from pydantic import ValidationError

from ..webrtc.errors import SignalingDeliveryError
from .messages import (
    MESSAGE_TYPES,
    ParticipantDescriptor,
    ParticipantInfo,
    SignalingMessage,
    normalize_meeting_code,
    now_ms,
    room_id,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SignalingMessage], Union[None, Awaitable[None]]]


class SignalingBridge(ABC):
    """시그널링 채널 인터페이스."""

    def __init__(self):
        self._handler: Optional[MessageHandler] = None

    def on_message(self, handler: MessageHandler) -> None:
        """수신 메시지 핸들러를 등록합니다 (하나만 유지)."""
        self._handler = handler

    def local_participant(self) -> Optional[ParticipantInfo]:
        """이 채널로 참가한 자신의 참가자 정보 (모르면 None)."""
        return None

    async def _deliver(self, message: SignalingMessage) -> None:
        if self._handler is None:
            logger.debug(f"[Signaling] 핸들러 없음 - {message.type} 버림")
            return
        try:
            result = self._handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"[Signaling] {message.type} 처리 중 오류 (from {message.peer_id[:8]}): {e}")

    @abstractmethod
    async def connect(self) -> None:
        """채널에 연결합니다.

        Raises:
            SignalingDeliveryError: 연결 실패
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """채널 연결을 종료합니다."""

    @abstractmethod
    async def send(self, peer_id: Optional[str], message_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """메시지를 전송합니다.

        Args:
            peer_id (Optional[str]): 대상 피어 ID (None이면 룸 전체)
            message_type (str): 메시지 타입
            payload (Optional[dict]): data 필드

        Raises:
            SignalingDeliveryError: 전송 실패 (재시도하지 않음)
        """


class WebSocketSignalingBridge(SignalingBridge):
    """WebSocket 릴레이 기반 시그널링 브리지.

    Attributes:
        url (str): 릴레이 WebSocket URL (예: ws://localhost:8000/ws)
        meeting_code (str): 정규화된 미팅 코드
        room_id (str): 릴레이 채널 ID ("meeting-<CODE>")
        user_id (str): 내 피어 ID
        participant_name (str): 표시 이름
        is_host (bool): 호스트 여부

    Examples:
        >>> bridge = WebSocketSignalingBridge("ws://localhost:8000/ws", "abc123", "peer-a", "Alice")
        >>> bridge.on_message(client.handle_signaling_message)
        >>> await bridge.connect()
        >>> await bridge.send("peer-b", "offer", {"type": "offer", "sdp": "..."})
        >>> await bridge.disconnect()
    """

    def __init__(
        self,
        url: str,
        meeting_code: str,
        user_id: str,
        participant_name: str,
        is_host: bool = False,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        join_timeout: float = 10.0,
        connector: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        super().__init__()
        self.url = url
        self.meeting_code = normalize_meeting_code(meeting_code)
        self.room_id = room_id(meeting_code)
        self.user_id = user_id
        self.participant_name = participant_name
        self.is_host = is_host
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.join_timeout = join_timeout
        self._connector = connector

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._presence: Dict[str, ParticipantInfo] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ---------- 연결 ----------
    async def connect(self) -> None:
        attempt = 0
        while True:
            try:
                self._ws = await self._connector(self.url, ping_interval=20, ping_timeout=10)
                break
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise SignalingDeliveryError(
                        f"Cannot connect to {self.url} after {self.max_retries} retries: {e}"
                    ) from e
                delay = self.retry_delay * attempt
                logger.warning(f"[Signaling] 연결 실패, {delay:.0f}초 후 재시도 ({attempt}/{self.max_retries}): {e}")
                await asyncio.sleep(delay)

        logger.info(f"[Signaling] 릴레이 연결: {self.url} (room={self.room_id})")
        try:
            await self._join()
        except SignalingDeliveryError:
            await self._close_socket()
            raise
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _join(self) -> None:
        await self._send_raw({
            "type": "join",
            "meetingCode": self.meeting_code,
            "peerId": self.user_id,
            "participantInfo": {"name": self.participant_name, "isHost": self.is_host},
        })

        try:
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self.join_timeout)
            reply = json.loads(raw)
        except asyncio.TimeoutError as e:
            raise SignalingDeliveryError("Relay did not acknowledge join") from e
        except (ValueError, websockets.exceptions.ConnectionClosed) as e:
            raise SignalingDeliveryError(f"Join failed: {e}") from e

        if not isinstance(reply, dict) or reply.get("type") != "joined":
            raise SignalingDeliveryError(f"Unexpected join reply: {reply}")

        self._presence = {}
        for item in reply.get("participants") or []:
            info = ParticipantInfo.model_validate(item)
            self._presence[info.id] = info
        logger.info(f"[Signaling] 룸 참가 완료: {self.meeting_code}, 현재 {len(self._presence)}명")

        await self._send_message(SignalingMessage(
            type="user-joined",
            peer_id=self.user_id,
            meeting_code=self.meeting_code,
            participant_info=ParticipantDescriptor(name=self.participant_name, is_host=self.is_host),
        ))

        if self._presence:
            await self._deliver(SignalingMessage(
                type="participant-update",
                peer_id=self.user_id,
                meeting_code=self.meeting_code,
                data={"participants": [p.model_dump(by_alias=True) for p in self._presence.values()]},
            ))

    async def disconnect(self) -> None:
        if self._ws is None:
            return
        try:
            await self.send(None, "user-left")
        except SignalingDeliveryError as e:
            logger.warning(f"[Signaling] user-left 전송 실패: {e}")

        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        await self._close_socket()
        self._presence = {}
        logger.info(f"[Signaling] 릴레이 연결 종료: {self.meeting_code}")

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    # ---------- 수신 ----------
    def accepts(self, message: SignalingMessage) -> bool:
        """이 클라이언트가 처리해야 하는 메시지인지 판정합니다."""
        if normalize_meeting_code(message.meeting_code) != self.meeting_code:
            return False
        if message.peer_id == self.user_id:
            return False
        if message.target_peer_id and message.target_peer_id != self.user_id:
            return False
        return True

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning(f"[Signaling] JSON 아닌 프레임 무시: {str(raw)[:80]}")
                    continue

                if isinstance(frame, dict) and frame.get("type") == "error":
                    logger.warning(f"[Signaling] 릴레이 오류: {frame.get('message')}")
                    continue
                if not isinstance(frame, dict) or frame.get("type") not in MESSAGE_TYPES:
                    logger.debug(f"[Signaling] 알 수 없는 프레임 무시: {frame}")
                    continue

                try:
                    message = SignalingMessage.from_wire(frame)
                except ValidationError as e:
                    logger.warning(f"[Signaling] 잘못된 메시지 무시: {e}")
                    continue

                if not self.accepts(message):
                    continue
                self._track_presence(message)
                await self._deliver(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"[Signaling] 릴레이 연결 끊김: {e}")

    def _track_presence(self, message: SignalingMessage) -> None:
        if message.type == "user-joined":
            descriptor = message.participant_info
            self._presence[message.peer_id] = ParticipantInfo(
                id=message.peer_id,
                name=descriptor.name if descriptor else f"Participant {message.peer_id[:8]}",
                is_host=descriptor.is_host if descriptor else False,
                joined_at=message.timestamp,
            )
        elif message.type == "user-left":
            self._presence.pop(message.peer_id, None)
        elif message.type == "participant-update":
            self._presence = {p.id: p for p in message.participants()}

    def get_connected_participants(self) -> List[ParticipantInfo]:
        """릴레이 기준 현재 룸 참가자 목록."""
        return list(self._presence.values())

    def local_participant(self) -> Optional[ParticipantInfo]:
        existing = self._presence.get(self.user_id)
        if existing is not None:
            return existing
        return ParticipantInfo(id=self.user_id, name=self.participant_name, is_host=self.is_host)

    # ---------- 송신 ----------
    async def send(self, peer_id: Optional[str], message_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self._send_message(SignalingMessage(
            type=message_type,
            peer_id=self.user_id,
            meeting_code=self.meeting_code,
            timestamp=now_ms(),
            target_peer_id=peer_id,
            data=payload,
        ))

    async def send_participant_update(self, participants: Iterable[ParticipantInfo]) -> None:
        """참가자 목록을 룸 전체에 알립니다."""
        await self.send(None, "participant-update", {
            "participants": [p.model_dump(by_alias=True) for p in participants],
        })

    async def _send_message(self, message: SignalingMessage) -> None:
        await self._send_raw(message.to_wire())
        logger.debug(f"[Signaling] {message.type} 전송 → {message.target_peer_id or 'room'}")

    async def _send_raw(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            raise SignalingDeliveryError("Signaling channel is not connected")
        try:
            await self._ws.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingDeliveryError(f"Signaling channel closed: {e}") from e
