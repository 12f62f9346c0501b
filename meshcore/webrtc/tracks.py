"""미디어 트랙/스트림 모듈.

로컬 캡처 트랙을 감싸 enabled 토글(음소거, 카메라 끄기)을 제공하고,
수신 비디오 트랙에 content hint와 프레임레이트 상한을 적용합니다.
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

logger = logging.getLogger(__name__)

# Frames closer together than this fraction of the target interval are dropped
FRAME_INTERVAL_TOLERANCE = 0.95


class MediaStream:
    """트랙 묶음 (브라우저 MediaStream 대응).

    Attributes:
        id (str): 스트림 ID
    """

    def __init__(self, tracks: Optional[Iterable[MediaStreamTrack]] = None, stream_id: Optional[str] = None):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = []
        for track in tracks or []:
            self.add_track(track)

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def remove_track(self, track: MediaStreamTrack) -> None:
        if track in self._tracks:
            self._tracks.remove(track)

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    @property
    def active(self) -> bool:
        return any(t.readyState == "live" for t in self._tracks)

    def stop(self) -> None:
        """모든 트랙을 정지합니다."""
        for track in self._tracks:
            track.stop()

    def __repr__(self) -> str:
        kinds = ",".join(t.kind for t in self._tracks)
        return f"MediaStream(id={self.id[:8]}, tracks=[{kinds}])"


class RelayTrack(MediaStreamTrack):
    """원본 트랙의 프레임을 전달하면서 프레임레이트 상한을 적용하는 트랙.

    Attributes:
        source (MediaStreamTrack): 원본 트랙
        content_hint (str): 콘텐츠 힌트 ("motion", "detail" 등)
        max_frame_rate (Optional[float]): 비디오 프레임레이트 상한 (None이면 제한 없음)

    Note:
        - 상한보다 촘촘한 프레임은 pts 기준으로 버려짐
        - pts/time_base가 없는 프레임은 그대로 전달
    """

    def __init__(
        self,
        source: MediaStreamTrack,
        content_hint: str = "",
        max_frame_rate: Optional[float] = None,
    ):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.content_hint = content_hint
        self.max_frame_rate = max_frame_rate
        self._last_frame_time: Optional[float] = None

    def _keep(self, frame) -> bool:
        if self.kind != "video" or not self.max_frame_rate:
            return True
        if frame.pts is None or frame.time_base is None:
            return True

        frame_time = float(frame.pts * frame.time_base)
        min_interval = FRAME_INTERVAL_TOLERANCE / self.max_frame_rate
        if self._last_frame_time is not None and frame_time - self._last_frame_time < min_interval:
            return False
        self._last_frame_time = frame_time
        return True

    async def _next_frame(self):
        while True:
            frame = await self.source.recv()
            if self._keep(frame):
                return frame

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        return await self._next_frame()


class LocalMediaTrack(RelayTrack):
    """로컬 캡처 트랙 래퍼.

    enabled=False이면 트랙을 멈추지 않고 무음/검은 프레임을 내보냅니다.
    송신자(RTCRtpSender)는 같은 트랙 객체를 계속 참조하므로 재협상이 필요 없습니다.

    Examples:
        >>> track = LocalMediaTrack(player.audio)
        >>> track.enabled = False  # 음소거
    """

    def __init__(
        self,
        source: MediaStreamTrack,
        content_hint: str = "",
        max_frame_rate: Optional[float] = None,
    ):
        super().__init__(source, content_hint=content_hint, max_frame_rate=max_frame_rate)
        self.enabled = True
        self._black_cache: Dict[Tuple[int, int], np.ndarray] = {}
        # capture side ending (device unplugged, OS "stop sharing") ends this track too
        source.on("ended", self._on_source_ended)

    def _on_source_ended(self) -> None:
        logger.info(f"[Media] {self.kind} 원본 트랙 종료 감지: {self.id[:8]}")
        self.stop()

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        try:
            frame = await self._next_frame()
        except MediaStreamError:
            self.stop()
            raise

        if not self.enabled:
            return self._blank_like(frame)
        return frame

    def _blank_like(self, frame):
        if isinstance(frame, AudioFrame):
            silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
            for plane in silent.planes:
                plane.update(bytes(plane.buffer_size))
            silent.sample_rate = frame.sample_rate
        elif isinstance(frame, VideoFrame):
            key = (frame.height, frame.width)
            if key not in self._black_cache:
                self._black_cache[key] = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
            silent = VideoFrame.from_ndarray(self._black_cache[key], format="rgb24")
        else:
            return frame
        silent.pts = frame.pts
        silent.time_base = frame.time_base
        return silent

    def stop(self) -> None:
        super().stop()
        self.source.stop()
