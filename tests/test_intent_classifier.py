import asyncio
import json
import unittest

from services.ai.chat.chat_errors import ClassificationFailure
from services.ai.chat.intent_classifier import IntentClassifier, normalize_entities


class _FakeBackend:
    def __init__(self, response=None, *, error=None, delay_s=0.0):
        self.response = response
        self.error = error
        self.delay_s = delay_s
        self.calls = []

    async def generate_json(self, *, system_prompt, user_prompt, response_schema, model_override=None):
        self.calls.append({"user_prompt": user_prompt, "model": model_override, "schema": response_schema})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.response


class IntentClassifierTests(unittest.TestCase):
    def test_normalizes_model_answer(self):
        backend = _FakeBackend(
            {
                "intent": ["stock_analysis", "bogus", "stock_analysis", "news_update"],
                "entities": [" Volvo   B ", "Volvo B", "SEB", "a", "b", "c", "d", "e"],
                "language": "SV",
            }
        )
        result = asyncio.run(IntentClassifier(backend).classify("Hur går det för Volvo B?", request_id="r1"))

        self.assertIsNotNone(result)
        self.assertEqual(result.intents, ["stock_analysis", "news_update"])
        self.assertEqual(result.primary_intent, "stock_analysis")
        self.assertEqual(result.entities, ["Volvo B", "SEB", "a", "b", "c", "d"])
        self.assertEqual(result.language, "sv")
        self.assertEqual(json.loads(result.raw)["language"], "SV")
        self.assertIn("Volvo B", backend.calls[0]["user_prompt"])

    def test_unknown_intents_default_to_general_advice(self):
        backend = _FakeBackend({"intent": ["weather"], "entities": "nope", "language": "swedish"})
        result = asyncio.run(IntentClassifier(backend).classify("hej"))
        self.assertEqual(result.intents, ["general_advice"])
        self.assertEqual(result.entities, [])
        self.assertIsNone(result.language)

    def test_blank_input_skips_call(self):
        backend = _FakeBackend({"intent": ["general_advice"]})
        self.assertIsNone(asyncio.run(IntentClassifier(backend).classify("   ")))
        self.assertEqual(backend.calls, [])

    def test_missing_backend(self):
        self.assertIsNone(asyncio.run(IntentClassifier(None).classify("hej")))

    def test_timeout_returns_none(self):
        backend = _FakeBackend({"intent": ["general_advice"]}, delay_s=0.5)
        classifier = IntentClassifier(backend, timeout_s=0.01)
        self.assertIsNone(asyncio.run(classifier.classify("hej")))

    def test_backend_error_returns_none(self):
        backend = _FakeBackend(error=RuntimeError("boom"))
        self.assertIsNone(asyncio.run(IntentClassifier(backend).classify("hej")))

    def test_non_object_returns_none(self):
        backend = _FakeBackend(["stock_analysis"])
        self.assertIsNone(asyncio.run(IntentClassifier(backend).classify("hej")))

    def test_request_wraps_failures(self):
        classifier = IntentClassifier(_FakeBackend(error=RuntimeError("boom")))
        with self.assertRaises(ClassificationFailure) as ctx:
            asyncio.run(classifier._request("hej"))
        self.assertEqual(ctx.exception.code, "classification_failure")
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

    def test_request_without_backend_raises_classification_failure(self):
        with self.assertRaises(ClassificationFailure):
            asyncio.run(IntentClassifier(None)._request("hej"))

    def test_normalize_entities_rejects_non_lists(self):
        self.assertEqual(normalize_entities(None), [])
        self.assertEqual(normalize_entities(["", "  ", 3, "AAPL"]), ["AAPL"])


if __name__ == "__main__":
    unittest.main()
