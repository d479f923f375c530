import threading
from dataclasses import replace

from sigd.codec import encode
from sigd.constants import (
    CLOSE_INVALID_MESSAGE,
    CLOSE_MESSAGE_TOO_LARGE,
    CLOSE_RATE_LIMIT_EXCEEDED,
    CLOSE_TOO_MANY_CONNECTIONS,
    CLOSE_UNKNOWN_ORIGIN,
)
from sigd.envelope import (
    Answer,
    ClientId,
    CreateRoom,
    ErrorMessage,
    IceCandidate,
    JoinOrCreate,
    JoinRoom,
    LeaveRoom,
    Offer,
    PeerList,
)
from sigd.service import RelayService

from conftest import FakeTransport

SDP = {"type": "offer", "sdp": "v=0\r\n"}


def test_end_to_end_scenario(service) -> None:
    ta = FakeTransport(("192.0.2.1", 40001))
    a = service.on_connect(ta)
    assert ta.messages() == [ClientId(target_id=a, sender_id="", client_id=a)]

    assert service.on_frame(a, encode(CreateRoom(sender_id=a, room_code="AB12")))
    room = service.room_manager.get_room_by_code("AB12")
    assert ta.last() == PeerList(peer_list=(a,), room_code="AB12", room_id=room.id)

    tb = FakeTransport(("192.0.2.2", 40002))
    b = service.on_connect(tb)
    assert tb.last() == ClientId.assign(b)

    assert service.on_frame(b, encode(JoinRoom(sender_id=b, room_code="AB12")))
    expected = PeerList(peer_list=(a, b), room_code="AB12", room_id=room.id)
    assert ta.last() == expected
    assert tb.last() == expected

    offer = Offer(target_id=a, sender_id=b, offer=SDP)
    assert service.on_frame(b, encode(offer))
    assert ta.last() == offer

    service.on_close(b)
    assert ta.last() == PeerList(peer_list=(a,), room_code="AB12", room_id=room.id)
    assert ta.closed is None


def test_answer_and_candidates_are_relayed(service, connect) -> None:
    a, ta = connect()
    b, tb = connect()

    answer = Answer(target_id=b, sender_id=a, answer={"type": "answer", "sdp": "v=0"})
    candidate = IceCandidate(target_id=b, sender_id=a, ice_candidate={"candidate": "c"})
    service.on_frame(a, encode(answer))
    service.on_frame(a, encode(candidate))

    assert tb.messages() == [answer, candidate]
    assert ta.sent == []
    assert service.stats_manager.get("relayed") == 2


def test_relay_to_missing_target_is_dropped(service, connect) -> None:
    a, ta = connect()
    assert service.on_frame(a, encode(Offer(target_id="gone", sender_id=a, offer=SDP)))
    assert ta.sent == []
    assert ta.closed is None
    assert service.stats_manager.get("relay_dropped") == 1


def test_room_errors_are_reported_to_sender(service, connect) -> None:
    a, ta = connect()
    b, tb = connect()
    service.on_frame(a, encode(CreateRoom(sender_id=a, room_code="AB12")))

    assert service.on_frame(b, encode(CreateRoom(sender_id=b, room_code="AB12")))
    assert tb.last() == ErrorMessage.room_already_exists("AB12", b)

    assert service.on_frame(b, encode(JoinRoom(sender_id=b, room_code="NOPE")))
    assert tb.last() == ErrorMessage.room_not_found("NOPE", b)
    assert tb.closed is None
    assert service.stats_manager.get("errors_sent") == 2


def test_join_or_create_and_leave(service, connect) -> None:
    a, ta = connect()
    b, tb = connect()
    service.on_frame(a, encode(JoinOrCreate(sender_id=a, room_id="shared")))
    service.on_frame(b, encode(JoinOrCreate(sender_id=b, room_id="shared")))
    room = service.room_manager.get_room("shared")
    assert room.members == [a, b]

    service.on_frame(b, encode(LeaveRoom(sender_id=b)))
    assert ta.last() == PeerList(peer_list=(a,), room_code=room.code, room_id="shared")
    assert service.session_manager.lookup(b).room_id is None

    service.on_frame(a, encode(LeaveRoom(sender_id=a)))
    assert service.room_manager.get_room("shared") is None


def test_unknown_or_forged_sender_is_dropped(service, connect) -> None:
    a, ta = connect()
    b, tb = connect()

    assert service.on_frame(a, encode(CreateRoom(sender_id="nobody", room_code="AB12")))
    assert service.on_frame(a, encode(CreateRoom(sender_id=b, room_code="AB12")))
    assert service.room_manager.get_room_by_code("AB12") is None
    assert ta.sent == [] and tb.sent == []
    assert ta.closed is None


def test_server_authored_types_close_the_connection(service, connect) -> None:
    for message_for in (
        lambda cid: ClientId(sender_id=cid, client_id=cid),
        lambda cid: PeerList(sender_id=cid, peer_list=(cid,), room_code="AB12", room_id="r"),
        lambda cid: ErrorMessage(sender_id=cid, error_message="boom"),
    ):
        cid, transport = connect()
        assert service.on_frame(cid, encode(message_for(cid))) is False
        assert transport.closed == (CLOSE_INVALID_MESSAGE, "Invalid message type")


def test_malformed_frame_closes_the_connection(service, connect) -> None:
    a, ta = connect()
    assert service.on_frame(a, b'{"type": 42}') is False
    assert ta.closed == (CLOSE_INVALID_MESSAGE, "Invalid message")
    assert service.stats_manager.get("frames_bad") == 1


def test_deeply_nested_frame_closes_the_connection(service, connect) -> None:
    a, ta = connect()
    frame = b"[" * 3000 + b"]" * 3000
    assert len(frame) < service.config.max_message_size
    assert service.on_frame(a, frame) is False
    assert ta.closed == (CLOSE_INVALID_MESSAGE, "Invalid message")
    assert service.stats_manager.get("frames_bad") == 1


def test_batch_frames_are_dispatched_in_order(service, connect) -> None:
    a, ta = connect()
    batch = [
        encode(CreateRoom(sender_id=a, room_code="AAAA")),
        encode(LeaveRoom(sender_id=a)),
        encode(CreateRoom(sender_id=a, room_code="BBBB")),
    ]
    assert service.on_frame(a, batch)
    assert service.room_manager.get_room_by_code("AAAA") is None
    assert [m.room_code for m in ta.messages()] == ["AAAA", "BBBB"]


def test_batch_with_bad_chunk_is_not_dispatched(service, connect) -> None:
    a, ta = connect()
    batch = [encode(CreateRoom(sender_id=a, room_code="AAAA")), b"garbage"]
    assert service.on_frame(a, batch) is False
    assert service.room_manager.get_room_by_code("AAAA") is None
    assert ta.closed[0] == CLOSE_INVALID_MESSAGE


def test_oversized_frame_is_rejected_unparsed(service, connect) -> None:
    a, ta = connect()
    frame = encode(CreateRoom(sender_id=a, room_code="X" * service.config.max_message_size))
    assert service.on_frame(a, frame) is False
    assert ta.closed == (CLOSE_MESSAGE_TOO_LARGE, "Message too large.")
    assert service.room_manager.rooms == {}
    assert ta.sent == []


def test_rate_limit_closes_after_threshold(service, connect) -> None:
    a, ta = connect()
    b, tb = connect()
    limit = service.config.max_messages_per_second

    for i in range(limit):
        offer = Offer(target_id=b, sender_id=a, offer={"n": i})
        assert service.on_frame(a, encode(offer)) is True
    assert len(tb.sent) == limit

    assert service.on_frame(a, encode(Offer(target_id=b, sender_id=a, offer={}))) is False
    assert ta.closed == (CLOSE_RATE_LIMIT_EXCEEDED, "Rate limit exceeded.")
    assert len(tb.sent) == limit


def test_rate_limit_window_resets(service, connect, clock) -> None:
    a, ta = connect()
    limit = service.config.max_messages_per_second
    for _ in range(limit):
        service.on_frame(a, encode(LeaveRoom(sender_id=a)))
    clock.advance(1.5)
    assert service.on_frame(a, encode(LeaveRoom(sender_id=a))) is True
    assert ta.closed is None


def test_connection_without_address_is_rejected(service) -> None:
    transport = FakeTransport(address=None)
    assert service.on_connect(transport) is None
    assert transport.closed == (CLOSE_UNKNOWN_ORIGIN, "Unable to determine client address.")
    assert transport.sent == []


def test_per_address_connection_cap(service) -> None:
    limit = service.config.max_connections_per_address
    opened = [service.on_connect(FakeTransport(("198.51.100.9", 1000 + i))) for i in range(limit)]
    assert all(opened)

    rejected = FakeTransport(("198.51.100.9", 2000))
    assert service.on_connect(rejected) is None
    assert rejected.closed == (CLOSE_TOO_MANY_CONNECTIONS, "Too many connections.")

    service.on_close(opened[0])
    assert service.on_connect(FakeTransport(("198.51.100.9", 2001))) is not None
    assert service.on_connect(FakeTransport(("198.51.100.9", 2002))) is None
    assert service.stats_manager.get("rejected_connections") == 2


def test_frames_after_close_are_ignored(service, connect) -> None:
    a, _ = connect()
    service.on_close(a)
    assert service.on_frame(a, encode(LeaveRoom(sender_id=a))) is False
    service.on_close(a)


def test_disconnect_of_last_member_frees_code(service, connect) -> None:
    a, _ = connect()
    service.on_frame(a, encode(CreateRoom(sender_id=a, room_code="AB12")))
    service.on_close(a)
    assert service.room_manager.get_room_by_code("AB12") is None

    b, tb = connect()
    service.on_frame(b, encode(CreateRoom(sender_id=b, room_code="AB12")))
    assert isinstance(tb.last(), PeerList)


def test_handle_connection_runs_a_whole_session(service) -> None:
    peer = FakeTransport(("192.0.2.50", 1))
    peer_id = service.on_connect(peer)
    service.on_frame(peer_id, encode(CreateRoom(sender_id=peer_id, room_code="AB12")))

    class ScriptedTransport(FakeTransport):
        def __iter__(self):
            cid = self.messages()[0].client_id
            yield encode(JoinRoom(sender_id=cid, room_code="AB12"))
            yield encode(Offer(target_id=peer_id, sender_id=cid, offer=SDP))

    client = ScriptedTransport(("192.0.2.51", 2))
    service.handle_connection(client)

    client_id = client.messages()[0].client_id
    assert service.session_manager.lookup(client_id) is None
    received = peer.messages()
    assert received[-3].peer_list == (peer_id, client_id)
    assert received[-2] == Offer(target_id=peer_id, sender_id=client_id, offer=SDP)
    assert received[-1].peer_list == (peer_id,)


def test_handle_connection_stops_reading_after_violation(service) -> None:
    transport = FakeTransport(("192.0.2.60", 1), frames=[b"{}", b"{}"])
    service.handle_connection(transport)
    assert transport.closed[0] == CLOSE_INVALID_MESSAGE
    assert service.session_manager.sessions == {}
    assert service.stats_manager.get("frames_in") == 1


def test_concurrent_joins_keep_members_unique(service) -> None:
    owner = service.on_connect(FakeTransport(("192.0.2.70", 1)))
    service.on_frame(owner, encode(CreateRoom(sender_id=owner, room_code="AB12")))

    joiners = [service.on_connect(FakeTransport((f"192.0.2.{80 + i}", 1))) for i in range(8)]

    def join(cid: str) -> None:
        service.on_frame(cid, encode(JoinRoom(sender_id=cid, room_code="AB12")))

    threads = [threading.Thread(target=join, args=(cid,)) for cid in joiners]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    members = service.room_manager.get_room_by_code("AB12").members
    assert members[0] == owner
    assert sorted(members[1:]) == sorted(joiners)


def test_stop_closes_everything(service, connect) -> None:
    a, ta = connect()
    service.on_frame(a, encode(CreateRoom(sender_id=a, room_code="AB12")))
    service.stop()
    assert ta.closed == (1001, "Server shutting down.")
    assert service.room_manager.rooms == {}
    assert service.session_manager.sessions == {}


class StallingTransport(FakeTransport):
    """A peer that stops reading once ``stall`` is set."""

    def __init__(self, address) -> None:
        super().__init__(address)
        self.stall = False
        self.stalled = threading.Event()
        self.resume = threading.Event()

    def send(self, message) -> None:
        if self.stall:
            self.stalled.set()
            self.resume.wait(5)
        super().send(message)


def test_stalled_receiver_does_not_block_other_connections(service, connect) -> None:
    slow = StallingTransport(("192.0.2.90", 1))
    s = service.on_connect(slow)
    a, ta = connect(("192.0.2.91", 1))
    c, tc = connect(("192.0.2.92", 1))

    slow.stall = True
    first = Offer(target_id=s, sender_id=a, offer=SDP)
    relay = threading.Thread(target=service.on_frame, args=(a, encode(first)), daemon=True)
    relay.start()
    assert slow.stalled.wait(2)

    try:
        done = threading.Event()

        def create() -> None:
            service.on_frame(c, encode(CreateRoom(sender_id=c, room_code="ZZ99")))
            done.set()

        worker = threading.Thread(target=create, daemon=True)
        worker.start()
        assert done.wait(2)
        room = service.room_manager.get_room_by_code("ZZ99")
        assert tc.last() == PeerList(peer_list=(c,), room_code="ZZ99", room_id=room.id)

        # Queued behind the stalled write; this sender does not wait for it.
        second = Answer(target_id=s, sender_id=c, answer={"type": "answer", "sdp": "v=0"})
        assert service.on_frame(c, encode(second))
    finally:
        slow.resume.set()
        relay.join(2)

    assert not relay.is_alive()
    assert slow.messages()[-2:] == [first, second]


def test_backlog_overflow_drops_payloads(config, clock) -> None:
    service = RelayService(replace(config, max_pending_sends=1), clock=clock)
    a = service.on_connect(FakeTransport(("192.0.2.93", 1)))
    sess = service.session_manager.lookup(a)

    with service._state_lock:
        outgoing = []
        service.session_manager.send(outgoing, a, b"one")
        service.session_manager.send(outgoing, a, b"two")
        assert service._enqueue(outgoing) == [sess.outbox]

    sess.outbox.flush()
    assert sess.transport.sent[-1] == b"one"
    assert service.stats_manager.get("send_overflow") == 1
