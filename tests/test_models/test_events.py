"""
Tests para los modelos de eventos y sesiones.
"""

from wa_bot_service.models.events import ConnectionUpdate, DisconnectReason, InboundMessage, WhatsAppUser
from wa_bot_service.models.results import OperationResult, WebhookResult
from wa_bot_service.models.sessions import PhoneInfo


class TestConnectionUpdate:
    """Tests para ConnectionUpdate."""

    def test_only_401_is_logged_out(self):
        assert ConnectionUpdate(connection="close", status_code=401).is_logged_out
        assert not ConnectionUpdate(connection="close", status_code=DisconnectReason.RESTART_REQUIRED).is_logged_out
        assert not ConnectionUpdate(connection="close").is_logged_out


class TestInboundMessage:
    """Tests para la extracción de texto."""

    def test_conversation_wins_over_extended_text(self):
        # Arrange
        message = InboundMessage.model_validate({
            "key": {"remoteJid": "1@s.whatsapp.net"},
            "message": {"conversation": "plain", "extendedTextMessage": {"text": "extended"}},
        })

        # Assert
        assert message.text == "plain"
        assert message.has_content
        assert not message.key.from_me

    def test_extended_text_fallback(self):
        message = InboundMessage.model_validate({
            "key": {"remoteJid": "1@s.whatsapp.net", "fromMe": True},
            "message": {"extendedTextMessage": {"text": "extended"}},
        })

        assert message.text == "extended"
        assert message.key.from_me

    def test_missing_message_has_no_content(self):
        message = InboundMessage.model_validate({"key": {"remoteJid": "1@s.whatsapp.net"}})

        assert not message.has_content
        assert message.text == ""


class TestPhoneInfo:
    """Tests para PhoneInfo."""

    def test_phone_from_plain_jid(self):
        info = PhoneInfo.from_user(WhatsAppUser(id="123@s.whatsapp.net", name="Alice"))

        assert info.model_dump() == {"jid": "123@s.whatsapp.net", "name": "Alice", "phone": "123"}

    def test_phone_strips_device_suffix(self):
        info = PhoneInfo.from_user(WhatsAppUser(id="5511999:7@s.whatsapp.net"))

        assert info.phone == "5511999"
        assert info.jid == "5511999:7@s.whatsapp.net"


class TestResults:
    """Tests para los resultados tipados."""

    def test_reply_requires_success_and_string(self):
        assert WebhookResult(endpoint="/x", ok=True, data={"reply": "hello"}).reply == "hello"
        assert WebhookResult(endpoint="/x", ok=False, data={"reply": "hello"}).reply is None
        assert WebhookResult(endpoint="/x", ok=True, data={"reply": 42}).reply is None
        assert WebhookResult(endpoint="/x", ok=True, data=["reply"]).reply is None

    def test_operation_result_constructors(self):
        assert OperationResult.success("acme") == OperationResult(session_id="acme", ok=True)
        assert OperationResult.failure("acme", "boom").error == "boom"
