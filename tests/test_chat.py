"""
Chat: frame validation, live ingestion over the hub, the WebSocket endpoint
and the conversation HTTP API.
"""
import asyncio
import json

import pytest
from sqlalchemy import select
from starlette.websockets import WebSocketDisconnect

from conftest import FakeStorage, FakeWebSocket, auth_headers, make_ad, make_conversation, make_user
from kivendi.core.errors import Forbidden, UpstreamUnavailable, ValidationFailed
from kivendi.core.security import issue_token
from kivendi.db.base import utcnow
from kivendi.db.models import Message, Notification, UserBlock
from kivendi.realtime.hub import chat_hub
from kivendi.services import chat
from kivendi.services.chat import ChatService, ConversationLocks, parse_frame
from kivendi.services.push import PushService
from kivendi.services.storage import StorageError


@pytest.fixture
def parties(db):
    seller = make_user(db, email="seller@kivendi.test", first_name="Awa", last_name="Koné")
    buyer = make_user(db, email="buyer@kivendi.test", first_name="Koffi")
    ad = make_ad(db, seller)
    conv = make_conversation(db, ad, buyer)
    return seller, buyer, ad, conv


class TestParseFrame:
    def test_text(self):
        msg = parse_frame({"type": "text", "text": "  Bonjour  ", "sender_id": "7"}, 7)
        assert msg.message_type == "text"
        assert msg.text == "Bonjour"

    def test_offer(self):
        msg = parse_frame({"type": "offer", "offer_amount": 15000}, 7)
        assert str(msg.offer_amount) == "15000"

    def test_image(self):
        msg = parse_frame({"type": "image", "images": ["aGVsbG8="]}, 7)
        assert msg.images == ["aGVsbG8="]

    @pytest.mark.parametrize(
        "frame",
        [
            {"type": "text", "text": "hi", "images": ["aGVsbG8="]},
            {"type": "text", "text": ""},
            {"type": "offer", "offer_amount": 100, "text": "hi"},
            {"type": "offer", "offer_amount": -5},
            {"type": "offer"},
            {"type": "image", "images": []},
            {"type": "image", "images": ["aGVsbG8="], "text": "caption"},
            {"type": "voice", "text": "hi"},
            {"type": "text", "text": "hi", "sender_id": "abc"},
            ["not", "an", "object"],
        ],
    )
    def test_rejected(self, frame):
        with pytest.raises(ValidationFailed):
            parse_frame(frame, 7)

    def test_sender_mismatch_is_forbidden(self):
        with pytest.raises(Forbidden):
            parse_frame({"type": "text", "text": "hi", "sender_id": 8}, 7)


class TestPostMessage:
    async def test_fan_out_with_eviction(self, parties, push_service, db):
        seller, buyer, ad, conv = parties
        alive_1, dead, alive_2 = FakeWebSocket(), FakeWebSocket(fail=True), FakeWebSocket()
        for ws in (alive_1, dead, alive_2):
            await chat_hub.connect(conv.id, ws)
        service = ChatService(FakeStorage(), push_service)

        payload = await service.post_message(conv.id, buyer.id, {"type": "text", "text": "Toujours dispo ?"})

        stored = db.execute(select(Message)).scalar_one()
        assert payload["id"] == stored.id
        assert json.loads(alive_1.messages[0])["id"] == stored.id
        assert json.loads(alive_2.messages[0])["id"] == stored.id
        assert dead.closed
        assert chat_hub.connection_count(conv.id) == 2

        late = FakeWebSocket()
        await chat_hub.connect(conv.id, late)
        assert late.messages == []
        history = chat.get_messages(db, conv.id, seller.id)
        assert [m.id for m in history] == [stored.id]

    async def test_messages_broadcast_in_id_order(self, parties, push_service, db):
        seller, buyer, ad, conv = parties
        ws = FakeWebSocket()
        await chat_hub.connect(conv.id, ws)
        service = ChatService(FakeStorage(), push_service)

        for i in range(3):
            await service.post_message(conv.id, buyer.id, {"type": "text", "text": f"message {i}"})

        ids = [json.loads(m)["id"] for m in ws.messages]
        assert ids == sorted(ids)
        assert len(ids) == 3

    async def test_conversation_locks_released_after_posting(self, parties, db):
        seller, buyer, ad, conv = parties
        service = ChatService(FakeStorage(), PushService(None))

        await asyncio.gather(
            *(service.post_message(conv.id, buyer.id, {"type": "text", "text": f"m{i}"}) for i in range(5))
        )

        assert len(chat._conversation_locks) == 0
        assert len(db.execute(select(Message)).scalars().all()) == 5

    async def test_recipient_gets_in_app_notification(self, parties, push_service, db):
        seller, buyer, ad, conv = parties
        service = ChatService(FakeStorage(), push_service)

        await service.post_message(conv.id, buyer.id, {"type": "offer", "offer_amount": "40000"})

        note = db.execute(select(Notification)).scalar_one()
        assert note.user_id == seller.id
        assert note.type == "new_message"
        assert note.message == "Offre: 40000"
        assert note.data["conversation_id"] == conv.id

    async def test_images_uploaded_before_insert(self, parties, push_service, db):
        seller, buyer, ad, conv = parties
        storage = FakeStorage()
        service = ChatService(storage, push_service)

        payload = await service.post_message(conv.id, buyer.id, {"type": "image", "images": ["aGVsbG8=", "d29ybGQ="]})

        assert len(storage.uploads) == 2
        assert len(payload["images"]) == 2
        assert payload["text"] is None

    async def test_upload_failure_stores_nothing(self, parties, push_service, db):
        seller, buyer, ad, conv = parties
        storage = FakeStorage()
        storage.error = StorageError("S3 down")
        service = ChatService(storage, push_service)

        with pytest.raises(UpstreamUnavailable):
            await service.post_message(conv.id, buyer.id, {"type": "image", "images": ["aGVsbG8="]})
        assert db.execute(select(Message)).first() is None

    async def test_outsider_cannot_post(self, parties, push_service, db):
        outsider = make_user(db, email="x@kivendi.test")
        conv = parties[3]
        service = ChatService(FakeStorage(), push_service)
        with pytest.raises(Forbidden):
            await service.post_message(conv.id, outsider.id, {"type": "text", "text": "spam"})

    async def test_blocked_conversation_rejects_messages(self, parties, push_service, db):
        seller, buyer, ad, conv = parties
        chat.block_in_conversation(db, conv.id, seller.id)
        service = ChatService(FakeStorage(), push_service)
        with pytest.raises(Forbidden):
            await service.post_message(conv.id, buyer.id, {"type": "text", "text": "hello?"})


class TestConversationLocks:
    async def test_serializes_and_frees(self):
        locks = ConversationLocks()
        order = []

        async def hold(tag):
            async with locks.hold(7):
                order.append(f"{tag}-in")
                await asyncio.sleep(0)
                order.append(f"{tag}-out")

        await asyncio.gather(hold("a"), hold("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    async def test_freed_when_body_raises(self):
        locks = ConversationLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold(7):
                raise RuntimeError("boom")
        assert len(locks) == 0


class TestChatSocket:
    def test_message_round_trip(self, client, parties):
        seller, buyer, ad, conv = parties
        token = issue_token(buyer.id)

        with client.websocket_connect(f"/api/v1/ws/chat/{conv.id}?token={token}") as ws:
            ws.send_text(json.dumps({"type": "text", "text": "Bonjour", "sender_id": buyer.id}))
            data = json.loads(ws.receive_text())

        assert data["text"] == "Bonjour"
        assert data["sender_id"] == buyer.id
        assert data["type"] == "text"

    def test_invalid_frame_gets_error_frame(self, client, parties):
        seller, buyer, ad, conv = parties
        token = issue_token(buyer.id)

        with client.websocket_connect(f"/api/v1/ws/chat/{conv.id}?token={token}") as ws:
            ws.send_text(json.dumps({"type": "text", "text": "hi", "images": ["aGVsbG8="]}))
            data = json.loads(ws.receive_text())
            ws.send_text("{broken")
            broken = json.loads(ws.receive_text())

        assert data["type"] == "error"
        assert data["code"] == "validation"
        assert broken["type"] == "error"

    def test_unauthenticated_socket_closed(self, client, parties):
        conv = parties[3]
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/v1/ws/chat/{conv.id}"):
                pass
        assert exc_info.value.code == 4401

    def test_outsider_socket_closed(self, client, parties, db):
        outsider = make_user(db, email="x@kivendi.test")
        conv = parties[3]
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/v1/ws/chat/{conv.id}?token={issue_token(outsider.id)}"):
                pass
        assert exc_info.value.code == 4403

    def test_unknown_conversation_closed(self, client, parties):
        buyer = parties[1]
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/v1/ws/chat/9999?token={issue_token(buyer.id)}"):
                pass
        assert exc_info.value.code == 4404

    def test_inbox_socket_receives_new_message_event(self, client, parties):
        seller, buyer, ad, conv = parties
        with client.websocket_connect(f"/api/v1/ws/notifications?token={issue_token(seller.id)}") as inbox:
            with client.websocket_connect(f"/api/v1/ws/chat/{conv.id}?token={issue_token(buyer.id)}") as ws:
                ws.send_text(json.dumps({"type": "text", "text": "Bonjour"}))
                ws.receive_text()
            event = json.loads(inbox.receive_text())
            stored = json.loads(inbox.receive_text())

        assert event == {"type": "new_message_notification", "conversation_id": conv.id}
        assert stored["type"] == "notification"
        assert stored["notification"]["type"] == "new_message"


class TestConversationApi:
    def test_create_then_reuse(self, client, db):
        seller = make_user(db)
        buyer = make_user(db, email="buyer@kivendi.test")
        ad = make_ad(db, seller)

        first = client.post(f"/api/v1/conversations/ad/{ad.id}", headers=auth_headers(buyer.id))
        second = client.post(f"/api/v1/conversations/ad/{ad.id}", headers=auth_headers(buyer.id))

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.json()["id"] == second.json()["id"]
        assert first.json()["seller_id"] == seller.id

    def test_cannot_contact_self(self, client, db):
        seller = make_user(db)
        ad = make_ad(db, seller)
        assert client.post(f"/api/v1/conversations/ad/{ad.id}", headers=auth_headers(seller.id)).status_code == 400

    def test_list_with_unread_and_last_message(self, client, parties, db):
        seller, buyer, ad, conv = parties
        db.add(Message(conversation_id=conv.id, sender_id=buyer.id, message_type="text", text="Salut", created_at=utcnow()))
        db.commit()

        items = client.get("/api/v1/conversations/list", headers=auth_headers(seller.id)).json()
        assert len(items) == 1
        assert items[0]["unread_count"] == 1
        assert items[0]["last_message"]["text"] == "Salut"
        assert items[0]["other_user_name"] == "Koffi"

        resp = client.patch(f"/api/v1/conversations/{conv.id}/messages/read", headers=auth_headers(seller.id))
        assert resp.json()["updated"] == 1
        items = client.get("/api/v1/conversations/list", headers=auth_headers(seller.id)).json()
        assert items[0]["unread_count"] == 0

    def test_history_requires_participant(self, client, parties, db):
        conv = parties[3]
        outsider = make_user(db, email="x@kivendi.test")
        assert client.get(f"/api/v1/conversations/{conv.id}/messages", headers=auth_headers(outsider.id)).status_code == 403
        assert client.get("/api/v1/conversations/999/messages", headers=auth_headers(outsider.id)).status_code == 404

    def test_block_flow(self, client, parties, db):
        seller, buyer, ad, conv = parties

        assert client.post(f"/api/v1/conversations/{conv.id}/block", headers=auth_headers(seller.id)).status_code == 200
        status = client.get(f"/api/v1/conversations/{conv.id}/block-status", headers=auth_headers(buyer.id)).json()
        assert status == {"is_blocked": True, "i_blocked": False, "blocked_me": True}

        resp = client.delete(f"/api/v1/conversations/{conv.id}/unblock", headers=auth_headers(seller.id))
        assert resp.json()["removed"] is True
        assert db.execute(select(UserBlock)).first() is None
