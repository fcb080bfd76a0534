import json
import unittest

from pydantic import ValidationError

from services.ai.chat.chat_models import (
    ChatStreamRequest,
    IntentDetectionResult,
    Message,
    MessageContext,
    ProfileUpdateIntent,
    QuotaStatus,
    done_frame,
    format_frame,
    session_name_from,
)


class FrameTests(unittest.TestCase):
    def test_format_frame_keeps_unicode(self):
        frame = format_frame({"content": "Hej på dig"})
        self.assertTrue(frame.startswith("data: "))
        self.assertTrue(frame.endswith("\n\n"))
        self.assertEqual(json.loads(frame[len("data: "):]), {"content": "Hej på dig"})
        self.assertIn("på", frame)

    def test_done_frame(self):
        self.assertEqual(done_frame(), "data: [DONE]\n\n")


class RequestModelTests(unittest.TestCase):
    def test_camel_case_body(self):
        req = ChatStreamRequest.model_validate(
            {
                "message": "  Hur går det för Volvo?  ",
                "sessionId": "s1",
                "requestId": "r1",
                "chatHistory": [{"role": "user", "content": "hej"}],
                "hasUploadedDocuments": True,
            }
        )
        self.assertEqual(req.message, "Hur går det för Volvo?")
        self.assertEqual(req.chat_history[0].role, "user")
        self.assertTrue(req.has_uploaded_documents)

    def test_rejects_blank_and_oversized(self):
        with self.assertRaises(ValidationError):
            ChatStreamRequest(message="   ", session_id="s1", request_id="r1")
        with self.assertRaises(ValidationError):
            ChatStreamRequest(message="x" * 8001, session_id="s1", request_id="r1")
        with self.assertRaises(ValidationError):
            ChatStreamRequest.model_validate(
                {"message": "hej", "sessionId": "s1", "requestId": "r1", "chatHistory": [{"role": "system", "content": "x"}]}
            )


class MessageTests(unittest.TestCase):
    def test_draft_carries_request_id(self):
        draft = Message.draft(role="assistant", content="", request_id="r9")
        self.assertTrue(draft.is_draft)
        self.assertTrue(draft.id.startswith("draft-assistant-"))
        self.assertEqual(draft.request_id, "r9")
        self.assertFalse(draft.requires_confirmation)

    def test_ephemeral_proposal(self):
        proposal = ProfileUpdateIntent(updates={"investment_horizon": "long"}, summary="Vill du uppdatera din profil?")
        message = Message.ephemeral_proposal(proposal, request_id="r1")
        self.assertEqual(message.state, "ephemeral")
        self.assertTrue(message.requires_confirmation)
        self.assertEqual(message.context.profile_updates, {"investment_horizon": "long"})

    def test_context_record_uses_aliases_and_keeps_extras(self):
        ctx = MessageContext.model_validate({"requestId": "r1", "requiresConfirmation": True, "custom": 1})
        record = ctx.to_record()
        self.assertEqual(record["requestId"], "r1")
        self.assertTrue(record["requiresConfirmation"])
        self.assertEqual(record["custom"], 1)
        self.assertNotIn("sources", record)

    def test_proposal_requires_updates(self):
        with self.assertRaises(ValidationError):
            ProfileUpdateIntent(updates={}, summary="x")


class MiscTests(unittest.TestCase):
    def test_session_name_from(self):
        self.assertEqual(session_name_from(None), "Ny chatt")
        self.assertEqual(session_name_from("   "), "Ny chatt")
        self.assertEqual(session_name_from("a\n b"), "a b")
        self.assertEqual(len(session_name_from("y" * 120)), 50)

    def test_quota_remaining(self):
        self.assertEqual(QuotaStatus(allowed=True, used=3, limit=5).remaining, 2)
        self.assertEqual(QuotaStatus(allowed=False, used=7, limit=5).remaining, 0)
        self.assertIsNone(QuotaStatus(allowed=True, used=7, limit=-1).remaining)

    def test_detection_dedupes_intents(self):
        result = IntentDetectionResult(intents=["news_update", "news_update", "stock_analysis"])
        self.assertEqual(result.intents, ["news_update", "stock_analysis"])
        self.assertEqual(result.primary_intent, "news_update")
        self.assertEqual(IntentDetectionResult(intents=[]).intents, ["general_advice"])


if __name__ == "__main__":
    unittest.main()
