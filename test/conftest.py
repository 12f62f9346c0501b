"""
Pytest configuration and shared fakes for the mesh core tests.

The fakes stand in for the three things a test cannot own: capture devices,
native peer connections (no ICE/DTLS transport) and the signaling relay.
"""

import asyncio
from collections import deque
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack
from aiortc.exceptions import InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

from meshcore.session import MeetingClient
from meshcore.signaling.bridge import SignalingBridge
from meshcore.signaling.messages import ParticipantDescriptor, ParticipantInfo, SignalingMessage
from meshcore.webrtc.devices import MediaDevices
from meshcore.webrtc.errors import MediaAccessError
from meshcore.webrtc.tracks import MediaStream

SAMPLE_SDP = (
    "v=0\r\n"
    "o=- 3920000000 3920000000 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE 0 1\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=mid:0\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
    "a=candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=mid:1\r\n"
    "a=rtpmap:96 VP8/90000\r\n"
    "a=candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host\r\n"
)

HOST_CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 203.0.113.7 61234 typ srflx raddr 0.0.0.0 rport 0",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


# -----------------------------------------
# 피어 연결
# -----------------------------------------

class FakeSender:
    def __init__(self, kind: str, track):
        self.kind = kind
        self.track = track
        self.replaced: List[Any] = []

    def replaceTrack(self, track):
        self.replaced.append(track)
        self.track = track


class FakePeerConnection(AsyncIOEventEmitter):
    """RTCPeerConnection without transports.

    setRemoteDescription emits one "track" per m= section, like aiortc does.
    """

    def __init__(self, fail_on=()):
        super().__init__()
        self.senders: List[FakeSender] = []
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.added_candidates: List[Any] = []
        self.offers_created = 0
        self.answers_created = 0
        self.closed = False
        self.fail_on = set(fail_on)
        self.remote_tracks: List[Any] = []
        self.stats: Dict[str, Any] = {}

    def addTrack(self, track):
        sender = FakeSender(track.kind, track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    async def createOffer(self):
        if "createOffer" in self.fail_on:
            raise RuntimeError("encoder unavailable")
        self.offers_created += 1
        return RTCSessionDescription(sdp=SAMPLE_SDP, type="offer")

    async def createAnswer(self):
        if self.signalingState != "have-remote-offer":
            raise InvalidStateError(f'Cannot create answer in signaling state "{self.signalingState}"')
        self.answers_created += 1
        return RTCSessionDescription(sdp=SAMPLE_SDP, type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        if "setRemoteDescription" in self.fail_on:
            raise ValueError("malformed SDP")
        if description.type == "answer" and self.signalingState != "have-local-offer":
            raise InvalidStateError(f'Cannot handle answer in signaling state "{self.signalingState}"')
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"
        if not self.remote_tracks:
            if "m=audio" in description.sdp:
                self.remote_tracks.append(AudioStreamTrack())
            if "m=video" in description.sdp:
                self.remote_tracks.append(VideoStreamTrack())
            for track in self.remote_tracks:
                self.emit("track", track)

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError("remote description is not set")
        self.added_candidates.append(candidate)

    async def getStats(self):
        if "getStats" in self.fail_on:
            raise RuntimeError("stats unavailable")
        return self.stats

    async def close(self):
        self.closed = True
        self.signalingState = "closed"
        self.set_connection_state("closed")

    def set_connection_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")


class PeerConnectionFactory:
    def __init__(self):
        self.created: List[FakePeerConnection] = []
        self.fail_on = ()

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection(fail_on=self.fail_on)
        self.created.append(pc)
        return pc


# -----------------------------------------
# 캡처 장치
# -----------------------------------------

class FakeMediaDevices(MediaDevices):
    def __init__(self, gate: Optional[asyncio.Event] = None, fail: bool = False, display_fail: bool = False):
        self.gate = gate
        self.fail = fail
        self.display_fail = display_fail
        self.user_media_calls = 0
        self.display_calls = 0
        self.constraints: Optional[Dict[str, Any]] = None
        self.display_options: Optional[Dict[str, Any]] = None
        self.raw_tracks: List[Any] = []

    async def get_user_media(self, constraints):
        self.user_media_calls += 1
        self.constraints = constraints
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise MediaAccessError("Permission denied")
        tracks = [AudioStreamTrack()]
        if constraints.get("video"):
            tracks.append(VideoStreamTrack())
        self.raw_tracks.extend(tracks)
        return MediaStream(tracks)

    async def get_display_media(self, options):
        self.display_calls += 1
        self.display_options = options
        if self.display_fail:
            raise MediaAccessError("User cancelled screen selection")
        track = VideoStreamTrack()
        self.raw_tracks.append(track)
        return MediaStream([track])


# -----------------------------------------
# 시그널링
# -----------------------------------------

class HubBridge(SignalingBridge):
    def __init__(self, hub: "InMemorySignalingHub", peer_id: str, name: str, meeting_code: str = "ABC123",
                 is_host: bool = False):
        super().__init__()
        self.hub = hub
        self.peer_id = peer_id
        self.name = name
        self.meeting_code = meeting_code
        self.is_host = is_host
        self.sent: List[SignalingMessage] = []

    async def connect(self):
        self.hub.bridges[self.peer_id] = self
        self._post(SignalingMessage(
            type="user-joined",
            peer_id=self.peer_id,
            meeting_code=self.meeting_code,
            participant_info=ParticipantDescriptor(name=self.name, is_host=self.is_host),
        ))

    async def disconnect(self):
        await self.send(None, "user-left")
        self.hub.bridges.pop(self.peer_id, None)

    async def send(self, peer_id, message_type, payload=None):
        self._post(SignalingMessage(
            type=message_type,
            peer_id=self.peer_id,
            meeting_code=self.meeting_code,
            target_peer_id=peer_id,
            data=payload,
        ))

    def local_participant(self):
        return ParticipantInfo(id=self.peer_id, name=self.name, is_host=self.is_host, joined_at=0)

    def _post(self, message: SignalingMessage):
        self.sent.append(message)
        self.hub.outbox.append(message)

    def sent_of(self, message_type: str) -> List[SignalingMessage]:
        return [m for m in self.sent if m.type == message_type]


class InMemorySignalingHub:
    """Relay that delivers queued messages only when flushed."""

    def __init__(self):
        self.bridges: Dict[str, HubBridge] = {}
        self.outbox = deque()

    async def flush(self):
        while self.outbox:
            message = self.outbox.popleft()
            for peer_id, bridge in list(self.bridges.items()):
                if peer_id == message.peer_id:
                    continue
                if message.target_peer_id and message.target_peer_id != peer_id:
                    continue
                await bridge._deliver(message)


# -----------------------------------------
# Fixtures
# -----------------------------------------

@pytest.fixture
def hub():
    return InMemorySignalingHub()


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


@pytest_asyncio.fixture
async def make_client(hub):
    """Builds MeetingClients that share one in-memory relay."""
    clients: List[MeetingClient] = []

    def factory(peer_id: str, name: Optional[str] = None, devices: Optional[FakeMediaDevices] = None,
                is_host: bool = False):
        bridge = HubBridge(hub, peer_id, name or peer_id, is_host=is_host)
        client = MeetingClient(
            signaling=bridge,
            devices=devices or FakeMediaDevices(),
            pc_factory=PeerConnectionFactory(),
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.cleanup_webrtc()
    # let background pc.close() tasks finish
    await asyncio.sleep(0)


def connect_pair(a: MeetingClient, b: MeetingClient):
    """Reports "connected" on both ends of the a<->b connection."""
    a.peers.get_peer_connection(b.signaling.peer_id).set_connection_state("connected")
    b.peers.get_peer_connection(a.signaling.peer_id).set_connection_state("connected")
