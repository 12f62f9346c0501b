"""MeetingClient 통합 테스트.

두세 개의 클라이언트를 메모리 릴레이로 묶어 참가, 협상, 화면 공유,
연결 실패, 정리 흐름을 확인합니다.

사용법:
    pytest test/test_meeting.py
"""

import asyncio

import pytest

from meshcore.session import MeetingClient
from meshcore.session.state import ConnectionStatus
from meshcore.signaling.messages import ParticipantDescriptor, SignalingMessage
from meshcore.webrtc.errors import MediaAccessError, NegotiationError
from meshcore.webrtc.media import find_video_sender

from conftest import FakeMediaDevices, connect_pair


async def _join_all(hub, *clients):
    for client in clients:
        await client.initialize_webrtc()
    for client in clients:
        await client.join()
        await hub.flush()


def _entry(client, peer_id):
    return client.session.entries[peer_id]


# =========================================================================
# 참가 / 연결
# =========================================================================

@pytest.mark.asyncio
async def test_two_participants_connect(hub, make_client):
    alice = make_client("peer-a", "Alice", is_host=True)
    bob = make_client("peer-b", "Bob")

    await _join_all(hub, alice, bob)
    connect_pair(alice, bob)

    # the existing participant offers, the newcomer answers
    assert len(alice.signaling.sent_of("offer")) == 1
    assert bob.signaling.sent_of("offer") == []
    assert len(bob.signaling.sent_of("answer")) == 1

    assert set(alice.remote_streams) == {"peer-b"}
    assert set(bob.remote_streams) == {"peer-a"}
    for client in (alice, bob):
        assert client.connection_state == ConnectionStatus.CONNECTED
        assert client.room_status.participant_count == 2
        assert client.room_status.joined is True
        assert client.room_status.meeting_code == "ABC123"
    assert alice.connected_peers == {"peer-b"}
    assert bob.connected_peers == {"peer-a"}

    assert alice.participants["peer-b"].name == "Bob"
    names = {p.id: p.name for p in bob.all_participants}
    assert names == {"peer-a": "Participant peer-a"}


@pytest.mark.asyncio
async def test_three_participants_form_full_mesh(hub, make_client):
    clients = [make_client(f"peer-{name}") for name in "abc"]

    await _join_all(hub, *clients)
    a, b, c = clients
    connect_pair(a, b)
    connect_pair(a, c)
    connect_pair(b, c)

    for client in clients:
        others = {f"peer-{name}" for name in "abc"} - {client.signaling.peer_id}
        assert set(client.session.entries) == others
        assert client.connected_peers == others
        assert client.room_status.participant_count == 3


@pytest.mark.asyncio
async def test_initialize_moves_to_connecting(make_client):
    client = make_client("peer-a")
    assert client.connection_state == ConnectionStatus.DISCONNECTED

    await client.initialize_webrtc(quality_tier="large")

    assert client.connection_state == ConnectionStatus.CONNECTING
    assert client.local_stream is not None
    assert client.media.devices.constraints["video"]["width"] == 960
    assert client.room_status.participant_count == 1


@pytest.mark.asyncio
async def test_join_without_signaling_is_an_error():
    client = MeetingClient(devices=FakeMediaDevices())
    with pytest.raises(RuntimeError):
        await client.join()


# =========================================================================
# 화면 공유
# =========================================================================

@pytest.mark.asyncio
async def test_screen_share_needs_no_renegotiation(hub, make_client):
    alice = make_client("peer-a")
    bob = make_client("peer-b")
    await _join_all(hub, alice, bob)
    connect_pair(alice, bob)

    entry = _entry(alice, "peer-b")
    camera = alice.local_stream.get_video_tracks()[0]
    audio_sender = [s for s in entry.pc.getSenders() if s.kind == "audio"][0]
    audio_track = audio_sender.track
    offers_before = len(alice.signaling.sent_of("offer")) + len(bob.signaling.sent_of("offer"))

    await alice.start_screen_share()
    await hub.flush()

    assert alice.is_screen_sharing
    assert entry.video_source is alice.session.screen_stream.get_video_tracks()[0]
    assert audio_sender.track is audio_track

    await alice.stop_screen_share()
    await hub.flush()

    assert not alice.is_screen_sharing
    assert entry.video_source is camera
    assert find_video_sender(entry.pc).track.readyState == "live"
    offers_after = len(alice.signaling.sent_of("offer")) + len(bob.signaling.sent_of("offer"))
    assert offers_after == offers_before
    assert entry.pc.offers_created == 1


# =========================================================================
# 연결 실패 / 퇴장
# =========================================================================

@pytest.mark.asyncio
async def test_failed_peer_is_dropped_without_affecting_others(hub, make_client):
    a, b, c = (make_client(f"peer-{name}") for name in "abc")
    await _join_all(hub, a, b, c)
    connect_pair(a, b)
    connect_pair(a, c)
    connect_pair(b, c)

    a.peers.get_peer_connection("peer-c").set_connection_state("failed")
    b.peers.get_peer_connection("peer-c").set_connection_state("failed")

    for client in (a, b):
        assert "peer-c" not in client.session.entries
        assert "peer-c" not in client.remote_streams
        assert "peer-c" not in client.participants
        assert "peer-c" not in client.connected_peers
        assert client.connection_state == ConnectionStatus.CONNECTED
    assert a.connected_peers == {"peer-b"}
    assert b.connected_peers == {"peer-a"}
    assert a.room_status.participant_count == 2


@pytest.mark.asyncio
async def test_leave_notifies_others(hub, make_client):
    alice = make_client("peer-a")
    bob = make_client("peer-b")
    await _join_all(hub, alice, bob)
    connect_pair(alice, bob)
    pc = alice.peers.get_peer_connection("peer-b")

    await bob.leave()
    await hub.flush()

    assert pc.closed
    assert alice.session.entries == {}
    assert alice.remote_streams == {}
    assert alice.connection_state == ConnectionStatus.CONNECTING
    assert bob.local_stream is None
    assert bob.connection_state == ConnectionStatus.DISCONNECTED


# =========================================================================
# 동시성
# =========================================================================

@pytest.mark.asyncio
async def test_concurrent_initialize_opens_devices_once(make_client):
    gate = asyncio.Event()
    devices = FakeMediaDevices(gate=gate)
    client = make_client("peer-a", devices=devices)

    first = asyncio.create_task(client.initialize_webrtc())
    await asyncio.sleep(0)
    await client.initialize_webrtc()
    gate.set()
    await first

    assert devices.user_media_calls == 1
    assert client.local_stream is not None


@pytest.mark.asyncio
async def test_cleanup_during_initialize_discards_stream(make_client):
    gate = asyncio.Event()
    devices = FakeMediaDevices(gate=gate)
    client = make_client("peer-a", devices=devices)

    pending = asyncio.create_task(client.initialize_webrtc())
    await asyncio.sleep(0)
    client.cleanup_webrtc()
    gate.set()
    await pending

    assert client.local_stream is None
    assert client.connection_state == ConnectionStatus.DISCONNECTED
    assert all(t.readyState == "ended" for t in devices.raw_tracks)


@pytest.mark.asyncio
async def test_duplicate_user_joined_opens_one_connection(make_client):
    alice = make_client("peer-a")
    await alice.initialize_webrtc()
    joined = SignalingMessage(
        type="user-joined",
        peer_id="peer-b",
        meeting_code="ABC123",
        participant_info=ParticipantDescriptor(name="Bob"),
    )

    await asyncio.gather(alice.handle_signaling_message(joined), alice.handle_signaling_message(joined))

    assert len(alice.peers._pc_factory.created) == 1
    assert len(alice.signaling.sent_of("offer")) == 1


@pytest.mark.asyncio
async def test_offer_after_user_joined_does_not_duplicate(hub, make_client):
    alice = make_client("peer-a")
    await alice.initialize_webrtc()
    await alice.handle_signaling_message(SignalingMessage(type="user-joined", peer_id="peer-b", meeting_code="ABC123"))

    offer = alice.signaling.sent_of("offer")[0]
    await alice.handle_signaling_message(SignalingMessage(
        type="offer", peer_id="peer-b", meeting_code="ABC123", data=offer.data,
    ))

    assert len(alice.peers._pc_factory.created) == 1
    assert alice.signaling.sent_of("answer") == []


# =========================================================================
# 오류 처리
# =========================================================================

@pytest.mark.asyncio
async def test_signaling_before_initialize_reports_guard_error(make_client):
    client = make_client("peer-a")
    message = SignalingMessage(type="user-joined", peer_id="peer-b", meeting_code="ABC123")

    error = await client.handle_signaling_message(message)

    assert isinstance(error, NegotiationError)
    assert error.stage == "guard"
    assert client.session.entries == {}


@pytest.mark.asyncio
async def test_initialize_failure_keeps_disconnected_and_allows_retry(make_client):
    devices = FakeMediaDevices(fail=True)
    client = make_client("peer-a", devices=devices)

    with pytest.raises(MediaAccessError):
        await client.initialize_webrtc()
    assert client.connection_state == ConnectionStatus.DISCONNECTED
    assert client.local_stream is None

    devices.fail = False
    await client.initialize_webrtc()
    assert client.connection_state == ConnectionStatus.CONNECTING


@pytest.mark.asyncio
async def test_invalid_roster_is_ignored(make_client):
    client = make_client("peer-a")
    message = SignalingMessage(
        type="participant-update",
        peer_id="host",
        meeting_code="ABC123",
        data={"participants": [{"name": "no id"}]},
    )

    assert await client.handle_signaling_message(message) is None
    assert client.participants == {}


# =========================================================================
# 토글 / 로스터 / 정리
# =========================================================================

@pytest.mark.asyncio
async def test_toggles_are_independent_and_local(hub, make_client):
    alice = make_client("peer-a")
    bob = make_client("peer-b")
    await _join_all(hub, alice, bob)
    sent_before = len(alice.signaling.sent)

    alice.toggle_mute()
    assert alice.is_muted and not alice.is_video_off
    alice.toggle_video()
    assert alice.is_muted and alice.is_video_off
    alice.toggle_mute()
    assert not alice.is_muted and alice.is_video_off

    assert len(alice.signaling.sent) == sent_before
    assert not bob.is_muted and not bob.is_video_off


@pytest.mark.asyncio
async def test_host_publishes_roster(hub, make_client):
    host = make_client("peer-a", "Alice", is_host=True)
    guest = make_client("peer-b", "Bob")
    await _join_all(hub, host, guest)

    await host.publish_roster()
    await hub.flush()

    roster = guest.participants
    assert set(roster) == {"peer-a", "peer-b"}
    assert roster["peer-a"].is_host is True
    assert roster["peer-b"].name == "Bob"
    # roster changes never touch media
    assert set(guest.session.entries) == {"peer-a"}


@pytest.mark.asyncio
async def test_cleanup_stops_every_track_and_clears_state(hub, make_client):
    alice_devices = FakeMediaDevices()
    alice = make_client("peer-a", devices=alice_devices)
    bob = make_client("peer-b")
    await _join_all(hub, alice, bob)
    connect_pair(alice, bob)
    await alice.start_screen_share()

    remote_tracks = alice.remote_streams["peer-b"].get_tracks()
    local_tracks = alice.local_stream.get_tracks() + alice.session.screen_stream.get_tracks()
    sender_tracks = [s.track for s in alice.peers.get_peer_connection("peer-b").getSenders()]
    pc = alice.peers.get_peer_connection("peer-b")

    alice.cleanup_webrtc()

    for track in remote_tracks + local_tracks + sender_tracks + alice_devices.raw_tracks:
        assert track.readyState == "ended"
    assert alice.local_stream is None
    assert alice.session.screen_stream is None
    assert alice.session.entries == {}
    assert alice.remote_streams == {}
    assert alice.connected_peers == set()
    assert alice.participants == {}
    assert alice.connection_state == ConnectionStatus.DISCONNECTED
    assert not (alice.is_muted or alice.is_video_off or alice.is_screen_sharing)

    await asyncio.sleep(0)
    assert pc.closed
