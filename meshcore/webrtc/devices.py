"""로컬 미디어 장치 접근 모듈.

브라우저의 getUserMedia / getDisplayMedia에 해당하는 인터페이스와
aiortc MediaPlayer(ffmpeg) 기반 기본 구현을 제공합니다.

Platform Defaults:
    - Linux: v4l2 카메라, PulseAudio(실패 시 ALSA) 마이크, x11grab 화면
    - macOS: avfoundation 카메라/마이크/화면
    - Windows: dshow 카메라/마이크, gdigrab 화면
"""

import logging
import os
import platform
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import av.error
from aiortc.contrib.media import MediaPlayer

from .config import MediaConfig, media_config
from .errors import MediaAccessError
from .tracks import MediaStream

logger = logging.getLogger(__name__)


class MediaDevices(ABC):
    """로컬 캡처 장치 인터페이스."""

    @abstractmethod
    async def get_user_media(self, constraints: Dict[str, Any]) -> MediaStream:
        """카메라/마이크 스트림을 엽니다.

        Raises:
            MediaAccessError: 장치 없음 또는 권한 거부
        """

    @abstractmethod
    async def get_display_media(self, options: Dict[str, Any]) -> MediaStream:
        """화면 캡처 스트림을 엽니다.

        Raises:
            MediaAccessError: 캡처 불가 또는 사용자가 취소
        """


class PlayerMediaDevices(MediaDevices):
    """aiortc MediaPlayer 기반 장치 접근.

    Attributes:
        config (MediaConfig): 장치 이름 등 캡처 설정
        players (List[MediaPlayer]): 열린 플레이어 (트랙 정지 시 함께 종료됨)
    """

    def __init__(self, config: MediaConfig = media_config, system: Optional[str] = None):
        self.config = config
        self.system = system or platform.system()
        self.players: List[MediaPlayer] = []

    # ---------- 플랫폼별 입력 ----------
    def _camera_input(self) -> Tuple[str, str]:
        if self.system == "Darwin":
            return self.config.CAMERA_DEVICE or "default:none", "avfoundation"
        if self.system == "Windows":
            return self.config.CAMERA_DEVICE or "video=Integrated Camera", "dshow"
        return self.config.CAMERA_DEVICE or "/dev/video0", "v4l2"

    def _microphone_inputs(self) -> List[Tuple[str, str]]:
        if self.system == "Darwin":
            return [(self.config.MICROPHONE_DEVICE or "none:default", "avfoundation")]
        if self.system == "Windows":
            return [(self.config.MICROPHONE_DEVICE or "audio=Microphone", "dshow")]
        device = self.config.MICROPHONE_DEVICE or "default"
        return [(device, "pulse"), (device, "alsa")]

    def _screen_input(self) -> Tuple[str, str]:
        if self.system == "Darwin":
            return self.config.SCREEN_DEVICE or "Capture screen 0:none", "avfoundation"
        if self.system == "Windows":
            return self.config.SCREEN_DEVICE or "desktop", "gdigrab"
        return self.config.SCREEN_DEVICE or os.getenv("DISPLAY", ":0.0"), "x11grab"

    # ---------- 열기 ----------
    def _open(self, file: str, format: str, options: Dict[str, str]) -> MediaPlayer:
        logger.info(f"[Media] 장치 열기: {file} (format={format}, options={options})")
        try:
            player = MediaPlayer(file, format=format, options=options)
        except (av.error.FFmpegError, OSError) as e:
            raise MediaAccessError(f"Cannot open {format} device {file!r}: {e}") from e
        self.players.append(player)
        return player

    def _open_microphone(self, audio: Dict[str, Any]) -> MediaPlayer:
        options = {
            "sample_rate": str(audio.get("sampleRate", self.config.AUDIO_SAMPLE_RATE)),
            "channels": str(audio.get("channelCount", self.config.AUDIO_CHANNEL_COUNT)),
        }
        last_error: Optional[MediaAccessError] = None
        for device, backend in self._microphone_inputs():
            try:
                return self._open(device, backend, options)
            except MediaAccessError as e:
                logger.warning(f"[Media] 마이크 백엔드 {backend} 실패: {e}")
                last_error = e
        raise last_error or MediaAccessError("No microphone backend available")

    async def get_user_media(self, constraints: Dict[str, Any]) -> MediaStream:
        tracks = []
        audio = constraints.get("audio")
        video = constraints.get("video")

        if audio:
            # echo cancellation/noise suppression/AGC are browser DSP, ffmpeg capture has no equivalent
            microphone = self._open_microphone(audio if isinstance(audio, dict) else {})
            if microphone.audio is None:
                raise MediaAccessError("Microphone produced no audio track")
            tracks.append(microphone.audio)

        if video:
            file, format = self._camera_input()
            options = {
                "video_size": f"{video['width']}x{video['height']}",
                "framerate": str(video["frameRate"]),
            }
            camera = self._open(file, format, options)
            if camera.video is None:
                for track in tracks:
                    track.stop()
                raise MediaAccessError("Camera produced no video track")
            tracks.append(camera.video)

        return MediaStream(tracks)

    async def get_display_media(self, options: Dict[str, Any]) -> MediaStream:
        video = options.get("video") or {}
        file, format = self._screen_input()
        player_options = {
            "framerate": str(video.get("frameRate", self.config.SCREEN_FRAME_RATE)),
            "video_size": f"{video.get('width', self.config.SCREEN_WIDTH)}x{video.get('height', self.config.SCREEN_HEIGHT)}",
        }
        if format == "x11grab" and video.get("cursor") == "always":
            player_options["draw_mouse"] = "1"

        screen = self._open(file, format, player_options)
        if screen.video is None:
            raise MediaAccessError("Screen capture produced no video track")

        tracks = [screen.video]
        if options.get("audio"):
            # system audio loopback is only reachable through PulseAudio monitor sources
            if self.system == "Linux":
                try:
                    monitor = self._open("default.monitor", "pulse", {})
                    if monitor.audio is not None:
                        tracks.append(monitor.audio)
                except MediaAccessError as e:
                    logger.warning(f"[Media] 시스템 오디오 캡처 불가, 비디오만 공유: {e}")
        return MediaStream(tracks)
