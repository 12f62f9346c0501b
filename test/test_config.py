"""설정, 로깅, 캡처 장치 테스트.

사용법:
    pytest test/test_config.py
"""

import logging
from logging.handlers import RotatingFileHandler
from types import SimpleNamespace

import av.error
import pytest
from aiortc import RTCConfiguration

from meshcore.logging_config import ComponentFormatter, setup_logging
from meshcore.webrtc import devices as devices_module
from meshcore.webrtc.config import ICEServerConfig, MediaConfig
from meshcore.webrtc.devices import PlayerMediaDevices
from meshcore.webrtc.errors import MediaAccessError


# =========================================================================
# ICE
# =========================================================================

def test_stun_only_by_default():
    config = ICEServerConfig(TURN_SERVER_URL=None, TURN_USERNAME=None, TURN_CREDENTIAL=None, STUN_SERVER_URL=None)

    assert not config.has_turn_server
    assert [s.urls for s in config.ice_servers()] == [[url] for url in config.DEFAULT_STUN_SERVERS]


def test_turn_requires_all_three_settings():
    partial = ICEServerConfig(TURN_SERVER_URL="turn:turn.example.com:3478", TURN_USERNAME="user",
                              TURN_CREDENTIAL=None)
    full = ICEServerConfig(TURN_SERVER_URL="turn:turn.example.com:3478", TURN_USERNAME="user",
                           TURN_CREDENTIAL="secret")

    assert not partial.has_turn_server
    assert full.has_turn_server
    turn = full.ice_servers()[-1]
    assert turn.urls == ["turn:turn.example.com:3478"]
    assert turn.username == "user"
    assert turn.credential == "secret"


def test_custom_stun_goes_first():
    config = ICEServerConfig(STUN_SERVER_URL="stun:stun.example.com:3478")

    assert config.stun_urls[0] == "stun:stun.example.com:3478"
    assert len(config.stun_urls) == 4


def test_native_and_browser_configuration():
    config = ICEServerConfig(TURN_SERVER_URL=None, TURN_USERNAME=None, TURN_CREDENTIAL=None, STUN_SERVER_URL=None)

    native = config.build_configuration()
    browser = config.to_browser_config()

    assert isinstance(native, RTCConfiguration)
    assert native.bundlePolicy.value == "max-bundle"
    assert browser["bundlePolicy"] == "max-bundle"
    assert browser["rtcpMuxPolicy"] == "require"
    assert browser["iceCandidatePoolSize"] == 10
    assert len(browser["iceServers"]) == 3


# =========================================================================
# 캡처 제약
# =========================================================================

@pytest.mark.parametrize("tier, width, height, fps", [
    ("small", 320, 240, 15),
    ("medium", 640, 480, 20),
    ("large", 960, 720, 25),
])
def test_quality_tiers(tier, width, height, fps):
    video = MediaConfig().build_constraints(False, tier)["video"]

    assert (video["width"], video["height"], video["frameRate"]) == (width, height, fps)
    assert video["facingMode"] == "user"


def test_audio_constraints_always_present():
    constraints = MediaConfig().build_constraints(True, "small")

    assert constraints["video"] is False
    assert constraints["audio"] == {
        "echoCancellation": True,
        "noiseSuppression": True,
        "autoGainControl": True,
        "sampleRate": 48000,
        "channelCount": 1,
    }


def test_display_options_with_system_audio():
    options = MediaConfig().build_display_options(with_audio=True)

    assert options["video"]["displaySurface"] == "monitor"
    assert options["video"]["cursor"] == "always"
    assert options["audio"]["suppressLocalAudioPlayback"] is True


# =========================================================================
# 장치
# =========================================================================

class RecordingPlayer:
    opened = []

    def __init__(self, file, format=None, options=None):
        RecordingPlayer.opened.append((file, format, options))
        audio = format in ("pulse", "alsa", "avfoundation", "dshow")
        video = format in ("v4l2", "x11grab", "avfoundation", "dshow", "gdigrab")
        self.audio = SimpleNamespace(kind="audio") if audio else None
        self.video = SimpleNamespace(kind="video") if video else None


@pytest.fixture
def recording_player(monkeypatch):
    RecordingPlayer.opened = []
    monkeypatch.setattr(devices_module, "MediaPlayer", RecordingPlayer)
    return RecordingPlayer


@pytest.mark.asyncio
async def test_linux_devices_open_camera_and_microphone(recording_player):
    devices = PlayerMediaDevices(MediaConfig(CAMERA_DEVICE=None, MICROPHONE_DEVICE=None), system="Linux")

    stream = await devices.get_user_media(MediaConfig().build_constraints(False, "small"))

    assert len(stream.get_tracks()) == 2
    microphone, camera = recording_player.opened
    assert microphone == ("default", "pulse", {"sample_rate": "48000", "channels": "1"})
    assert camera == ("/dev/video0", "v4l2", {"video_size": "320x240", "framerate": "15"})


@pytest.mark.asyncio
async def test_microphone_falls_back_to_alsa(monkeypatch):
    opened = []

    def player(file, format=None, options=None):
        opened.append(format)
        if format == "pulse":
            raise av.error.FFmpegError(5, "Input/output error")
        return RecordingPlayer(file, format, options)

    monkeypatch.setattr(devices_module, "MediaPlayer", player)
    devices = PlayerMediaDevices(MediaConfig(MICROPHONE_DEVICE=None), system="Linux")

    stream = await devices.get_user_media(MediaConfig().build_constraints(True, "small"))

    assert opened == ["pulse", "alsa"]
    assert len(stream.get_audio_tracks()) == 1


@pytest.mark.asyncio
async def test_unopenable_device_raises_media_access_error(monkeypatch):
    def player(file, format=None, options=None):
        raise OSError("No such file or directory")

    monkeypatch.setattr(devices_module, "MediaPlayer", player)
    devices = PlayerMediaDevices(MediaConfig(), system="Windows")

    with pytest.raises(MediaAccessError):
        await devices.get_user_media(MediaConfig().build_constraints(True, "small"))
    with pytest.raises(MediaAccessError):
        await devices.get_display_media(MediaConfig().build_display_options())


@pytest.mark.asyncio
async def test_screen_capture_draws_cursor_on_x11(recording_player):
    devices = PlayerMediaDevices(MediaConfig(SCREEN_DEVICE=":1.0"), system="Linux")

    stream = await devices.get_display_media(MediaConfig().build_display_options())

    assert len(stream.get_tracks()) == 1
    (screen,) = recording_player.opened
    assert screen[0:2] == (":1.0", "x11grab")
    assert screen[2]["draw_mouse"] == "1"
    assert screen[2]["video_size"] == "1920x1080"


# =========================================================================
# 로깅
# =========================================================================

def test_setup_logging_writes_rotating_file(tmp_path):
    log_file = tmp_path / "logs" / "mesh.log"
    root = logging.getLogger()
    saved = root.handlers[:], root.level

    try:
        setup_logging("DEBUG", str(log_file))
        logging.getLogger("meshcore.test").info("[WebRTC] hello")

        handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(handlers) == 1
        assert handlers[0].maxBytes == 10 * 1024 * 1024
        assert handlers[0].backupCount == 5
        handlers[0].flush()
        line = log_file.read_text(encoding="utf-8").splitlines()[-1]
        assert "| WebRTC    |" in line
        assert line.endswith("| hello")
        assert logging.getLogger("aioice").level == logging.WARNING
    finally:
        for handler in root.handlers[:]:
            if handler not in saved[0]:
                root.removeHandler(handler)
                handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def _record(name, msg, *args):
    return logging.LogRecord(name, logging.INFO, __file__, 1, msg, args, None)


@pytest.mark.parametrize("message, component, body", [
    ("[Signaling] joined %s", "Signaling", "joined ABC123"),
    ("[Media] 화면 공유 시작: %s", "Media", "화면 공유 시작: ABC123"),
])
def test_formatter_moves_prefix_to_component_column(message, component, body):
    record = _record("meshcore.signaling.bridge", message, "ABC123")

    line = ComponentFormatter().format(record)

    assert f"| {component:<9} |" in line
    assert line.endswith(f"| {body}")
    # the shared record is left for other handlers
    assert record.msg == message
    assert not hasattr(record, "component")


def test_formatter_uses_logger_root_without_prefix():
    line = ComponentFormatter().format(_record("aioice.ice", "Connection(0) check failed"))

    assert "| aioice    |" in line
    assert line.endswith("| Connection(0) check failed")
