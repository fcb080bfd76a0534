import unittest

from services.ai.chat.chat_models import ConversationPlan, HistoryItem
from services.ai.chat.context_assembler import build_system_prompt, build_user_prompt, recent_history_lines
from services.ai.chat.realtime_context import RealtimeContext


class ContextAssemblerTests(unittest.TestCase):
    def test_english_plan_sets_reply_language(self):
        plan = ConversationPlan(primary_intent="general_advice", needs_realtime_data=False, language="en")
        self.assertIn("Svara på engelska.", build_system_prompt(plan))

    def test_profile_layer_in_plan_language(self):
        plan = ConversationPlan(
            primary_intent="portfolio_optimization",
            needs_realtime_data=False,
            requires_profile_context=True,
        )
        prompt = build_system_prompt(
            plan,
            profile={"risk_tolerance": "moderate", "investment_horizon": None, "age": 41},
        )
        self.assertIn("## Investerarprofil", prompt)
        self.assertIn("- Risktolerans: Måttlig", prompt)
        self.assertIn("- Ålder: 41", prompt)
        self.assertNotIn("Investeringshorisont", prompt)

    def test_empty_profile_adds_nothing(self):
        plan = ConversationPlan.fallback()
        prompt = build_system_prompt(plan, profile={"risk_tolerance": None})
        self.assertNotIn("Investerarprofil", prompt)

    def test_rules_follow_plan(self):
        plan = ConversationPlan(
            primary_intent="buy_sell_decisions",
            needs_realtime_data=False,
            detected_entities=["Volvo", "SEB"],
        )
        prompt = build_system_prompt(plan, realtime=RealtimeContext())
        self.assertIn("Ge inga garantier", prompt)
        self.assertIn("Frågan gäller: Volvo, SEB.", prompt)
        self.assertIn("Ingen realtidsdata hämtades", prompt)

    def test_user_prompt_with_history(self):
        history = [HistoryItem(role="user", content=f"q{i}") for i in range(12)]
        self.assertEqual(len(recent_history_lines(history)), 10)
        prompt = build_user_prompt("Och nu?", history)
        self.assertTrue(prompt.startswith("Konversation hittills:"))
        self.assertNotIn("USER: q1\n", prompt)
        self.assertIn("USER: q11", prompt)
        self.assertTrue(prompt.endswith("Senaste fråga:\nOch nu?"))
        self.assertEqual(build_user_prompt("Hej"), "Hej")


if __name__ == "__main__":
    unittest.main()
