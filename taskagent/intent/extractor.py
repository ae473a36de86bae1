from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from typing import Any

from pydantic import ValidationError

from taskagent.inference.client import ChatTurn, InferenceClient, extract_completion_text
from taskagent.models.state import (
    ChatMessage,
    Inference,
    Task,
    TaskDraft,
    utc_now,
)
from taskagent.observability import get_json_logger, get_metrics

from .classifier import IntentClassifier, KeywordIntentClassifier
from .jsontext import loads_object

FALLBACK_CONFIDENCE = 0.0

_ASSISTANT_PROMPT = """\
You are a helpful task management assistant. You help the user:
1. Create new tasks
2. Update existing tasks
3. Delete tasks
4. Search and filter tasks
5. Set reminders and due dates
6. Organize tasks by priority and tags

Context:
- User ID: {user_id}
- Current time: {now}
- Recently updated tasks: {tasks}

Be conversational and concise. Ask for clarification when the request is ambiguous.
"""

_EXTRACTION_SYSTEM = "You are a task extraction assistant. Return only valid JSON."

_EXTRACTION_PROMPT = """\
Extract the task the user wants to create from this conversation:
{conversation}

Current time: {now}
Return a JSON object with: "title" (string), "description" (string), \
"priority" ("low", "medium", "high" or "urgent"), "dueDate" (ISO 8601 string or null), \
"tags" (array of strings).
"""


def canned_reply(message: str) -> str:
    return (
        "I'm here to help with task management! "
        f'You said: "{message}". '
        "What specific task would you like to create or manage?"
    )


class IntentExtractor:
    """Turn a chat message into a reply plus an action descriptor.

    The reply comes from the inference service; the action comes from the configured
    classifier. Any failure to obtain a reply yields the canned reply and no action.
    """

    def __init__(
        self,
        inference: InferenceClient,
        classifier: IntentClassifier | None = None,
        *,
        timeout: float = 30.0,
        max_tokens: int = 512,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        self._inference = inference
        self._classifier = classifier or KeywordIntentClassifier()
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._clock = clock
        self._logger = get_json_logger("taskagent.intent")

    async def infer(
        self, message: str, context: Sequence[Task], *, user_id: str = "anonymous"
    ) -> Inference:
        tasks = json.dumps([t.model_dump(mode="json", by_alias=True) for t in context], indent=2)
        system = _ASSISTANT_PROMPT.format(
            user_id=user_id, now=self._clock().isoformat(), tasks=tasks
        )
        reply = await self._complete_text(
            [{"role": "system", "content": system}, {"role": "user", "content": message}],
            purpose="reply",
        )
        if reply is None:
            return Inference(reply_text=canned_reply(message), confidence=FALLBACK_CONFIDENCE)

        intent = await self._classifier.classify(message, context)
        return Inference(
            reply_text=reply,
            action=intent.action,
            task_id=intent.task_id,
            confidence=intent.confidence,
        )

    async def extract_task(self, history: Sequence[ChatMessage]) -> TaskDraft | None:
        """Second pass for create_task: structured fields from the user's recent messages."""
        conversation = "\n".join(m.content for m in history[-5:])
        prompt = _EXTRACTION_PROMPT.format(
            conversation=conversation, now=self._clock().isoformat()
        )
        text = await self._complete_text(
            [
                {"role": "system", "content": _EXTRACTION_SYSTEM},
                {"role": "user", "content": prompt},
            ],
            purpose="extraction",
            temperature=0.0,
        )
        if text is None:
            return None
        try:
            draft = TaskDraft.model_validate(loads_object(text))
        except (ValidationError, ValueError) as exc:
            self._logger.warning(
                "task extraction failed",
                extra={
                    "event": "task_extraction_failed",
                    "attributes": {"error": str(exc)[:200], "raw": text[:200]},
                },
            )
            get_metrics().increment("task_extraction_failures", {})
            return None
        return draft

    async def _complete_text(
        self,
        messages: Sequence[ChatTurn],
        *,
        purpose: str,
        temperature: float | None = None,
    ) -> str | None:
        try:
            raw = await asyncio.wait_for(
                self._inference.complete(
                    messages, max_tokens=self._max_tokens, temperature=temperature
                ),
                timeout=self._timeout,
            )
        except TimeoutError:
            self._log_fallback(purpose, "timeout", f"no reply within {self._timeout}s")
            return None
        except Exception as exc:  # noqa: BLE001 - availability boundary
            self._log_fallback(purpose, "error", repr(exc))
            return None
        text = extract_completion_text(raw)
        if text is None:
            self._log_fallback(purpose, "shape", type(raw).__name__)
        return text

    def _log_fallback(self, purpose: str, reason: str, detail: str) -> None:
        self._logger.warning(
            "inference fallback",
            extra={
                "event": "inference_fallback",
                "attributes": {"purpose": purpose, "reason": reason, "detail": detail[:200]},
            },
        )
        get_metrics().increment("inference_fallbacks", {"purpose": purpose, "reason": reason})


__all__ = ["FALLBACK_CONFIDENCE", "IntentExtractor", "canned_reply"]
