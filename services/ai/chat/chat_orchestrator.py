"""Chat orchestrator: server side of ``POST /api/chat/stream``.

Flow:
  1. Intent classification and conversation planning (concurrently,
     alongside the investor profile load)
  2. Realtime augmentation when the plan asks for it (bounded, degrades
     to no context)
  3. Assemble system prompt (persona, profile, realtime context)
  4. Stream the Gemini answer as content frames
  5. Heuristic profile-update detection, attached to the final frame
  6. Persist user + assistant messages, record usage, emit ``[DONE]``
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from services.ai.chat.chat_errors import ChatError
from services.ai.chat.chat_models import (
    ChatStreamRequest,
    ConversationPlan,
    IntentDetectionResult,
    MessageContext,
    ProfileUpdateIntent,
    done_frame,
    format_frame,
)
from services.ai.chat.context_assembler import build_system_prompt, build_user_prompt, recent_history_lines
from services.ai.chat.conversation_planner import ConversationPlanner, merge_detection
from services.ai.chat.conversation_store import AsyncConversationStore
from services.ai.chat.gemini_stream_client import GeminiStreamClient
from services.ai.chat.intent_classifier import IntentClassifier
from services.ai.chat.profile_intent_matcher import ProfileIntentMatcher, get_profile_intent_matcher
from services.ai.chat.profile_update_rules import MONTHLY_AMOUNT
from services.ai.chat.realtime_context import RealtimeContext, RealtimeContextClient

logger = logging.getLogger(__name__)

DisconnectFn = Callable[[], Awaitable[bool]]
ProfileLoader = Callable[[], Awaitable[Optional[Dict[str, Any]]]]
UsageRecorder = Callable[[], Awaitable[Any]]

GENERIC_ERROR_MESSAGE = "Kunde inte behandla förfrågan just nu. Försök igen."


def _trace_info(msg: str, *args: Any) -> None:
    logger.info(msg, *args)


def _trace_exception(msg: str, *args: Any) -> None:
    logger.exception(msg, *args)


def error_frame(message: str, code: str) -> str:
    return format_frame({"error": message, "code": code})


class ChatOrchestrator:
    def __init__(
        self,
        *,
        gemini_client: Optional[GeminiStreamClient] = None,
        classifier: Optional[IntentClassifier] = None,
        planner: Optional[ConversationPlanner] = None,
        realtime: Optional[RealtimeContextClient] = None,
        matcher: Optional[ProfileIntentMatcher] = None,
        realtime_timeout_s: Optional[float] = None,
    ):
        self.gemini = gemini_client or GeminiStreamClient()
        self.classifier = classifier or IntentClassifier(self.gemini)
        self.planner = planner or ConversationPlanner(self.gemini)
        self.realtime = realtime or RealtimeContextClient()
        self.matcher = matcher or get_profile_intent_matcher()
        # outer bound on top of the client's own per-request timeout
        self.realtime_timeout_s = float(
            realtime_timeout_s
            if realtime_timeout_s is not None
            else float(os.getenv("REALTIME_TIMEOUT_S", "12")) + 2.0
        )

    # ── helpers ──────────────────────────────────────────────────────

    async def _safe_is_disconnected(self, fn: Optional[DisconnectFn]) -> bool:
        if fn is None:
            return False
        try:
            return bool(await fn())
        except Exception:
            return False

    async def _safe_load_profile(self, loader: Optional[ProfileLoader], req_id: str) -> Optional[Dict[str, Any]]:
        if loader is None:
            return None
        try:
            return await loader()
        except Exception:
            logger.warning("chat.profile_load_failed req_id=%s", req_id, exc_info=True)
            return None

    async def _understand(
        self,
        req: ChatStreamRequest,
        profile_loader: Optional[ProfileLoader],
    ) -> tuple[Optional[IntentDetectionResult], ConversationPlan, Optional[Dict[str, Any]]]:
        req_id = req.request_id
        history = recent_history_lines(req.chat_history)
        detection, plan, profile = await asyncio.gather(
            self.classifier.classify(req.message, request_id=req_id),
            self.planner.plan(
                req.message,
                history,
                has_uploaded_documents=req.has_uploaded_documents,
                request_id=req_id,
            ),
            self._safe_load_profile(profile_loader, req_id),
        )
        return detection, merge_detection(plan, detection), profile

    async def _augment(self, plan: ConversationPlan, req_id: str) -> RealtimeContext:
        if not plan.needs_realtime_data:
            return RealtimeContext()
        try:
            return await asyncio.wait_for(
                self.realtime.fetch(plan, request_id=req_id),
                timeout=self.realtime_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("chat.realtime_timeout req_id=%s timeout_s=%.1f", req_id, self.realtime_timeout_s)
            return RealtimeContext()

    def _detect_profile_update(
        self,
        message: str,
        profile: Optional[Dict[str, Any]],
        language: str,
    ) -> Optional[ProfileUpdateIntent]:
        current = (profile or {}).get(MONTHLY_AMOUNT)
        current_amount = float(current) if isinstance(current, (int, float)) else None
        return self.matcher.match(message, current_amount=current_amount, language=language)

    @staticmethod
    def _assistant_context(
        req: ChatStreamRequest,
        plan: ConversationPlan,
        realtime: RealtimeContext,
        proposal: Optional[ProfileUpdateIntent],
    ) -> Dict[str, Any]:
        ctx = MessageContext(
            analysis_type=req.analysis_type or plan.primary_intent,
            request_id=req.request_id,
            sources=[ref.model_dump(by_alias=True, exclude_none=True) for ref in realtime.references] or None,
        )
        if proposal is not None:
            ctx.profile_updates = dict(proposal.updates)
            ctx.profile_summary = proposal.summary
            ctx.requires_confirmation = True
        return ctx.to_record()

    # ── main entry ───────────────────────────────────────────────────

    async def stream_frames(
        self,
        req: ChatStreamRequest,
        *,
        store: AsyncConversationStore,
        profile_loader: Optional[ProfileLoader] = None,
        usage_recorder: Optional[UsageRecorder] = None,
        is_disconnected: Optional[DisconnectFn] = None,
    ) -> AsyncIterator[str]:
        req_id = req.request_id
        start = time.perf_counter()
        _trace_info(
            "chat.start req_id=%s session_id=%s history=%s docs=%s",
            req_id,
            req.session_id,
            len(req.chat_history),
            req.has_uploaded_documents,
        )

        try:
            await store.ensure_session(req.session_id, first_message=req.message)

            # ── Step 1: classify + plan ──
            step_start = time.perf_counter()
            detection, plan, profile = await self._understand(req, profile_loader)
            _trace_info(
                "chat.plan req_id=%s elapsed_ms=%s intent=%s detected=%s realtime=%s profile_ctx=%s lang=%s",
                req_id,
                int((time.perf_counter() - step_start) * 1000),
                plan.primary_intent,
                detection is not None,
                plan.needs_realtime_data,
                plan.requires_profile_context,
                plan.language,
            )

            # ── Step 2: realtime augmentation ──
            step_start = time.perf_counter()
            realtime = await self._augment(plan, req_id)
            if plan.needs_realtime_data:
                _trace_info(
                    "chat.realtime req_id=%s elapsed_ms=%s references=%s",
                    req_id,
                    int((time.perf_counter() - step_start) * 1000),
                    len(realtime.references),
                )

            # ── Step 3: prompt ──
            system_prompt = build_system_prompt(plan, profile=profile, realtime=realtime)
            user_prompt = build_user_prompt(req.message, req.chat_history)

            if await self._safe_is_disconnected(is_disconnected):
                _trace_info("chat.disconnect req_id=%s before_stream", req_id)
                return

            # ── Step 4: stream answer ──
            parts: List[str] = []
            first_token_at: Optional[float] = None
            async for chunk in self.gemini.stream_answer(system_prompt=system_prompt, user_prompt=user_prompt):
                if await self._safe_is_disconnected(is_disconnected):
                    _trace_info("chat.disconnect req_id=%s during_stream", req_id)
                    return
                if first_token_at is None:
                    first_token_at = time.perf_counter()
                    _trace_info(
                        "chat.first_token req_id=%s first_token_ms=%s",
                        req_id,
                        int((first_token_at - start) * 1000),
                    )
                parts.append(chunk)
                yield format_frame({"content": chunk})

            # ── Step 5: profile-update proposal ──
            proposal: Optional[ProfileUpdateIntent] = None
            if await store.has_unresolved_confirmation(req.session_id):
                _trace_info("chat.profile_match_skipped req_id=%s reason=pending_confirmation", req_id)
            else:
                proposal = self._detect_profile_update(req.message, profile, plan.language)

            if proposal is not None or realtime.references:
                final: Dict[str, Any] = {"content": ""}
                if realtime.references:
                    final["sources"] = [ref.model_dump(by_alias=True, exclude_none=True) for ref in realtime.references]
                if proposal is not None:
                    final["profileUpdates"] = dict(proposal.updates)
                    final["profileSummary"] = proposal.summary
                    final["requiresConfirmation"] = True
                yield format_frame(final)

            # ── Step 6: persist + usage ──
            await store.append_message(
                req.session_id,
                role="user",
                content=req.message,
                context=MessageContext(analysis_type=req.analysis_type, request_id=req_id).to_record(),
            )
            await store.append_message(
                req.session_id,
                role="assistant",
                content="".join(parts),
                context=self._assistant_context(req, plan, realtime, proposal),
            )
            if usage_recorder is not None:
                await usage_recorder()

            elapsed_ms = int((time.perf_counter() - start) * 1000)
            _trace_info(
                "chat.done req_id=%s elapsed_ms=%s answer_chars=%s proposal=%s",
                req_id,
                elapsed_ms,
                sum(len(p) for p in parts),
                proposal is not None,
            )
            yield done_frame()
        except ChatError as exc:
            _trace_exception("chat.failed req_id=%s code=%s", req_id, exc.code)
            yield error_frame(exc.user_message, exc.code)
        except asyncio.TimeoutError:
            _trace_exception("chat.timeout req_id=%s", req_id)
            yield error_frame("Förfrågan tog för lång tid. Försök igen.", "timeout")
        except Exception:
            _trace_exception("chat.error req_id=%s", req_id)
            yield error_frame(GENERIC_ERROR_MESSAGE, "internal_error")
