from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from app.models import Conversation, Message
from app.services.conversation_service import ensure_conversation
from app.services.llm import CompletionError
from app.services.media_service import MaterializedMedia, MediaFetchError
from app.services.zapi_service import SendResult
from conftest import CONTACT, make_payload


def _messages(db, role=None):
    db.expire_all()
    query = db.query(Message).filter(Message.conversation_id == CONTACT)
    if role:
        query = query.filter(Message.role == role)
    return query.order_by(Message.sent_at).all()


def _conversation(db) -> Conversation:
    db.expire_all()
    return db.query(Conversation).filter(Conversation.contact_id == CONTACT).first()


def _without_text(**fields):
    payload = make_payload(**fields)
    payload.pop("text")
    return payload


@pytest.fixture
def llm_stack(ai_settings, mock_provider, mock_send_text):
    with patch("app.services.auto_reply_service.OpenAIProvider", return_value=mock_provider), patch(
        "app.services.auto_reply_service.send_text", mock_send_text
    ):
        yield mock_provider, mock_send_text


class TestIgnoredDeliveries:
    def test_probe(self, client):
        response = client.get("/webhook")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_status_callback(self, client, db):
        response = client.post("/webhook", json=make_payload(type="MessageStatusCallback"))

        assert response.status_code == 200
        assert response.json() == {"ignored": True, "reason": "status_callback"}
        assert _messages(db) == []

    def test_missing_identifiers_persist_nothing(self, client, db):
        response = client.post("/webhook", json=make_payload(messageId=None))

        assert response.json() == {"ignored": True, "reason": "missing_identifiers"}
        assert _conversation(db) is None

    def test_invalid_json(self, client):
        response = client.post("/webhook", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json()["reason"] == "invalid_payload"

    def test_empty_message(self, client, db):
        response = client.post("/webhook", json=_without_text())

        assert response.json() == {"ignored": True, "reason": "empty_message"}
        assert _messages(db) == []

    def test_text_empty_after_sender_prefix(self, client, db, llm_stack):
        mock_provider, _ = llm_stack

        response = client.post("/webhook", json=make_payload(text={"message": "*Clara:*\n"}))

        assert response.json() == {"ignored": True, "reason": "empty_message"}
        assert _messages(db) == []
        assert _conversation(db) is None
        mock_provider.generate.assert_not_called()


class TestNewContact:
    def test_first_message_creates_conversation_and_replies(self, client, db, llm_stack):
        mock_provider, mock_send_text = llm_stack

        response = client.post("/webhook", json=make_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message_id"] == "MSG-1"
        assert body["contact_id"] == CONTACT
        assert body["auto_reply"] == "sent"

        conversation = _conversation(db)
        assert conversation.display_name == "Maria"
        assert conversation.conversation_stage == "ai_active"
        assert conversation.last_message == "Hello from Clara"
        assert conversation.unread_count == 0

        inbound, reply = _messages(db)
        assert inbound.role == "inbound"
        assert inbound.content == "Hi, any rooms in March?"
        assert reply.role == "outbound-ai"
        assert reply.agent_name == "Clara"
        assert reply.provider_message_id == "ZAPI-OUT-1"
        mock_send_text.assert_awaited_once()

    def test_reply_failure_keeps_inbound_message(self, client, db, ai_settings):
        with patch("app.services.auto_reply_service.OpenAIProvider") as provider_class:
            provider_class.return_value.generate = AsyncMock(side_effect=CompletionError("OpenAI API error: 500"))
            response = client.post("/webhook", json=make_payload())

        assert response.status_code == 200
        assert response.json()["auto_reply"] == "failed:completion_error"
        assert [m.role for m in _messages(db)] == ["inbound"]
        assert _conversation(db).unread_count == 1

    def test_non_json_completion_body_is_non_fatal(self, client, db, ai_settings, mock_send_text):
        openai_client = MagicMock()
        openai_client.post = AsyncMock(return_value=httpx.Response(200, text="<html>gateway error</html>"))
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=openai_client)
        context.__aexit__ = AsyncMock(return_value=False)

        with patch("app.services.llm.openai_provider.httpx.AsyncClient", return_value=context), patch(
            "app.services.auto_reply_service.send_text", mock_send_text
        ):
            response = client.post("/webhook", json=make_payload())

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["auto_reply"] == "failed:completion_error"
        assert [m.role for m in _messages(db)] == ["inbound"]
        mock_send_text.assert_not_called()

    def test_unexpected_reply_error_is_non_fatal(self, client, db, ai_settings):
        with patch(
            "app.services.auto_reply_service.load_ai_settings", side_effect=RuntimeError("settings unavailable")
        ), patch("app.services.auto_reply_service.alert_error") as mock_alert:
            response = client.post("/webhook", json=make_payload())

        assert response.status_code == 200
        assert response.json()["auto_reply"] == "failed:auto_reply_error"
        assert [m.role for m in _messages(db)] == ["inbound"]
        mock_alert.assert_called_once()


class TestIdempotence:
    def test_redelivery_stores_once(self, client, db):
        first = client.post("/webhook", json=make_payload())
        second = client.post("/webhook", json=make_payload())

        assert first.json()["success"] is True
        assert second.json() == {"ignored": True, "reason": "already_processed"}
        assert len(_messages(db)) == 1
        assert _conversation(db).unread_count == 1

    def test_unread_counts_each_distinct_inbound(self, client, db):
        for index in range(3):
            client.post("/webhook", json=make_payload(messageId=f"MSG-{index}"))

        assert _conversation(db).unread_count == 3


class TestEchoSuppression:
    def test_ai_reply_echo_by_provider_id(self, client, db, llm_stack):
        client.post("/webhook", json=make_payload())

        echo = client.post(
            "/webhook",
            json=make_payload(messageId="ZAPI-OUT-1", fromMe=True, text={"message": "*Clara:*\nHello from Clara"}),
        )

        assert echo.json() == {"ignored": True, "reason": "already_processed_by_provider_id"}
        assert len(_messages(db, "outbound-ai")) == 1

    def test_ai_reply_echo_by_content_window(self, client, db, ai_settings, mock_provider):
        no_id_send = AsyncMock(return_value=SendResult(success=True, provider_message_id=None))
        with patch("app.services.auto_reply_service.OpenAIProvider", return_value=mock_provider), patch(
            "app.services.auto_reply_service.send_text", no_id_send
        ):
            client.post("/webhook", json=make_payload())

        echo = client.post(
            "/webhook",
            json=make_payload(messageId="ECHO-9", fromMe=True, text={"message": "*Clara:*\nHello from Clara"}),
        )

        assert echo.json()["reason"] == "already_processed_by_content_time"
        assert len(_messages(db, "outbound-ai")) == 1

    def test_agent_message_from_phone_is_stored(self, client, db):
        client.post("/webhook", json=make_payload())

        response = client.post(
            "/webhook",
            json=make_payload(messageId="PHONE-1", fromMe=True, senderName="Rafael", text={"message": "On it!"}),
        )

        assert response.json()["auto_reply"] == "skipped"
        [agent_message] = _messages(db, "outbound-agent")
        assert agent_message.agent_name == "Rafael"
        assert agent_message.origin == "device"
        assert _conversation(db).unread_count == 0


class TestAutoReplyGating:
    def test_paused_conversation_gets_no_reply(self, client, db, llm_stack):
        mock_provider, _ = llm_stack
        client.post("/webhook", json=make_payload())
        mock_provider.generate.reset_mock()

        conversation = _conversation(db)
        conversation.ai_paused = True
        db.commit()

        response = client.post("/webhook", json=make_payload(messageId="MSG-2"))

        assert response.json()["auto_reply"] == "skipped"
        mock_provider.generate.assert_not_called()

    def test_agent_assigned_stage_gets_no_reply(self, client, db, llm_stack):
        mock_provider, _ = llm_stack
        client.post("/webhook", json=make_payload())
        mock_provider.generate.reset_mock()

        client.post(f"/conversations/{CONTACT}/ai-control", json={"action": "assume_chat", "agent_id": "a1"})
        response = client.post("/webhook", json=make_payload(messageId="MSG-2"))

        assert response.json()["auto_reply"] == "skipped"
        mock_provider.generate.assert_not_called()

    def test_ai_disabled_never_calls_completion(self, client, db, llm_stack):
        mock_provider, mock_send_text = llm_stack
        ensure_conversation(db, CONTACT, "Maria").ai_enabled = False
        db.commit()

        for index in range(3):
            response = client.post("/webhook", json=make_payload(messageId=f"MSG-{index}"))
            assert response.json()["auto_reply"] == "skipped"

        assert mock_provider.generate.await_count == 0
        mock_send_text.assert_not_called()
        assert len(_messages(db, "inbound")) == 3


class TestMedia:
    def test_fetch_failure_stores_origin_url(self, client, db):
        with patch(
            "app.services.media_service.download_media",
            new=AsyncMock(side_effect=MediaFetchError("http_status:403")),
        ):
            response = client.post(
                "/webhook",
                json=_without_text(image={"imageUrl": "https://mmg.whatsapp.net/x.jpg", "caption": "view"}),
            )

        assert response.json()["success"] is True
        [message] = _messages(db)
        assert message.media_type == "image"
        assert message.media_url == "https://mmg.whatsapp.net/x.jpg"
        assert message.media_fallback is True
        assert message.content == "📷 Image: view"

    def test_durable_copy_is_stored(self, client, db):
        durable = MaterializedMedia(url="http://testserver/media/audio/1_ab.ogg?expires=9&sig=s", durable=True)
        with patch("app.routers.webhook.materialize", new=AsyncMock(return_value=durable)) as mock_materialize:
            client.post("/webhook", json=_without_text(audio={"audioUrl": "https://mmg.whatsapp.net/a.ogg"}))

        mock_materialize.assert_awaited_once_with("https://mmg.whatsapp.net/a.ogg", "audio", None)
        [message] = _messages(db)
        assert message.media_url == durable.url
        assert message.media_fallback is False

    def test_new_conversation_written_after_download(self, client, db):
        rows_during_download = []

        async def fake_materialize(source_url, media_type, suggested_name=None):
            rows_during_download.append(_conversation(db))
            return MaterializedMedia(url=source_url, durable=False, error="timeout")

        with patch("app.routers.webhook.materialize", new=fake_materialize):
            response = client.post("/webhook", json=_without_text(video={"videoUrl": "https://mmg.whatsapp.net/v.mp4"}))

        assert response.json()["success"] is True
        assert rows_during_download == [None]
        assert _conversation(db) is not None


class TestReactions:
    def _react(self, client, message_id, emoji, target="MSG-1"):
        return client.post(
            "/webhook",
            json=_without_text(messageId=message_id, reaction={"value": emoji, "referencedMessage": {"messageId": target}}),
        )

    def test_add_then_remove(self, client, db):
        client.post("/webhook", json=make_payload())

        self._react(client, "R-1", "👍")
        target = _messages(db, "inbound")[0]
        assert [r["emoji"] for r in target.reactions] == ["👍"]

        self._react(client, "R-2", "")
        target = _messages(db, "inbound")[0]
        assert target.reactions == []

        notes = _messages(db, "system")
        assert len(notes) == 2
        assert _conversation(db).unread_count == 1

    def test_missing_target_becomes_note(self, client, db):
        client.post("/webhook", json=make_payload())

        response = self._react(client, "R-3", "😂", target="UNKNOWN")

        assert response.status_code == 200
        [note] = _messages(db, "system")
        assert note.content == "Reacted with 😂 to a removed/unknown message"
        assert all(m.reactions == [] for m in _messages(db, "inbound"))

    def test_reaction_redelivery_is_deduplicated(self, client, db):
        client.post("/webhook", json=make_payload())

        self._react(client, "R-4", "👍")
        second = self._react(client, "R-4", "👍")

        assert second.json()["reason"] == "already_processed"
        assert len(_messages(db, "system")) == 1


class TestRepliesAndAvatar:
    def test_quoted_message_is_resolved(self, client, db):
        client.post("/webhook", json=make_payload())

        client.post("/webhook", json=make_payload(messageId="MSG-2", text={"message": "this one"}, referenceMessageId="MSG-1"))

        reply = [m for m in _messages(db) if m.id == "MSG-2"][0]
        assert reply.reply_to == {"id": "MSG-1", "text": "Hi, any rooms in March?", "author": "customer"}

    def test_unknown_quote_gets_placeholder(self, client, db):
        client.post("/webhook", json=make_payload(quotedMsgId="OLD"))

        assert _messages(db)[0].reply_to["text"] == "message unavailable"

    def test_avatar_set_then_cleared(self, client, db):
        client.post("/webhook", json=make_payload(photo="https://pps.whatsapp.net/p.jpg"))
        assert _conversation(db).avatar_url == "https://pps.whatsapp.net/p.jpg"

        client.post("/webhook", json=make_payload(messageId="MSG-2"))
        assert _conversation(db).avatar_url == "https://pps.whatsapp.net/p.jpg"

        client.post("/webhook", json=make_payload(messageId="MSG-3", photo=""))
        assert _conversation(db).avatar_url is None


class TestStoreFailure:
    def test_write_failure_answers_500(self, client, db):
        error = OperationalError("INSERT INTO messages", {}, Exception("disk I/O error"))
        with patch("app.routers.webhook.save_message", side_effect=error), patch(
            "app.routers.webhook.alert_error"
        ) as mock_alert:
            response = client.post("/webhook", json=make_payload())

        assert response.status_code == 500
        mock_alert.assert_called_once()
        assert _messages(db) == []
