from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from taskagent.inference.client import InferenceClient, extract_completion_text
from taskagent.models.state import (
    ActionKind,
    SearchCriteria,
    Task,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
)
from taskagent.observability import get_json_logger, get_metrics

from .jsontext import loads_object

DEFAULT_CONFIDENCE = 0.7

# First matching rule wins; keywords are substring matches on the lowercased message
KEYWORD_RULES: tuple[tuple[ActionKind, tuple[str, ...], float], ...] = (
    (ActionKind.CREATE_TASK, ("create", "add", "new"), 0.8),
    (ActionKind.UPDATE_TASK, ("update", "change", "modify"), 0.7),
    (ActionKind.DELETE_TASK, ("delete", "remove", "cancel"), 0.8),
    (ActionKind.SEARCH_TASKS, ("list", "show", "find"), 0.9),
    (ActionKind.SET_REMINDER, ("remind",), 0.7),
)

_STATUS_WORDS: tuple[tuple[str, TaskStatus], ...] = (
    ("in progress", TaskStatus.IN_PROGRESS),
    ("in-progress", TaskStatus.IN_PROGRESS),
    ("done", TaskStatus.COMPLETED),
    ("complete", TaskStatus.COMPLETED),
    ("pending", TaskStatus.PENDING),
    ("cancelled", TaskStatus.CANCELLED),
)

_PRIORITY_WORDS: tuple[tuple[str, TaskPriority], ...] = (
    ("urgent", TaskPriority.URGENT),
    ("high priority", TaskPriority.HIGH),
    ("medium priority", TaskPriority.MEDIUM),
    ("low priority", TaskPriority.LOW),
)

_TASK_ID_RE = re.compile(r"\btask_[0-9a-f]{32}\b")
_HASHTAG_RE = re.compile(r"#([\w-]+)")


@dataclass(slots=True)
class Intent:
    action: ActionKind | None
    confidence: float = DEFAULT_CONFIDENCE
    task_id: str | None = None


class IntentClassifier(Protocol):
    async def classify(self, message: str, context: Sequence[Task]) -> Intent: ...


def find_target_task(message: str, context: Sequence[Task]) -> str | None:
    """Resolve which task a message refers to.

    An explicit task id wins; otherwise a single context task whose title appears in
    the message. Ambiguous title matches resolve to None.
    """
    known = {t.id for t in context}
    for match in _TASK_ID_RE.findall(message):
        if match in known:
            return match
    text = message.lower()
    hits = [t.id for t in context if t.title.strip() and t.title.lower() in text]
    return hits[0] if len(hits) == 1 else None


def _status_from(text: str) -> TaskStatus | None:
    for word, status in _STATUS_WORDS:
        if word in text:
            return status
    return None


def _priority_from(text: str) -> TaskPriority | None:
    for word, priority in _PRIORITY_WORDS:
        if word in text:
            return priority
    return None


def derive_updates(message: str) -> TaskUpdate:
    """Field changes implied by a chat message ("mark X done", "make Y urgent")."""
    text = message.lower()
    fields: dict[str, object] = {}
    if "start" in text:
        fields["status"] = TaskStatus.IN_PROGRESS
    status = _status_from(text)
    if status is not None:
        fields["status"] = status
    priority = _priority_from(text)
    if priority is not None:
        fields["priority"] = priority
    return TaskUpdate(**fields)  # type: ignore[arg-type]


def derive_criteria(message: str) -> SearchCriteria:
    """Search filters implied by a chat message ("show my urgent pending tasks #work")."""
    text = message.lower()
    return SearchCriteria(
        status=_status_from(text),
        priority=_priority_from(text),
        tags=_HASHTAG_RE.findall(message),
    )


class KeywordIntentClassifier:
    """Deterministic keyword heuristics over the lowercased message."""

    async def classify(self, message: str, context: Sequence[Task]) -> Intent:
        text = message.lower()
        for action, keywords, confidence in KEYWORD_RULES:
            if any(k in text for k in keywords):
                return Intent(
                    action=action,
                    confidence=confidence,
                    task_id=find_target_task(message, context),
                )
        return Intent(action=None, confidence=DEFAULT_CONFIDENCE)


class _ModelIntent(BaseModel):
    action: ActionKind | None = None
    task_id: str | None = None
    confidence: float = Field(default=DEFAULT_CONFIDENCE, ge=0.0, le=1.0)


_CLASSIFIER_PROMPT = """\
You classify a user's message to a task management assistant.
Return ONLY a JSON object: {{"action": one of {actions} or null, "task_id": string or null, "confidence": number between 0 and 1}}.
Use a task_id only if it appears in the known tasks below.
Known tasks: {tasks}
"""


class ModelIntentClassifier:
    """Ask the inference service for the intent; fall back to another classifier on any failure."""

    def __init__(
        self,
        inference: InferenceClient,
        *,
        fallback: IntentClassifier | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._inference = inference
        self._fallback = fallback or KeywordIntentClassifier()
        self._timeout = timeout
        self._logger = get_json_logger("taskagent.intent")

    async def classify(self, message: str, context: Sequence[Task]) -> Intent:
        tasks = json.dumps([{"id": t.id, "title": t.title} for t in context])
        system = _CLASSIFIER_PROMPT.format(
            actions=", ".join(f'"{a.value}"' for a in ActionKind), tasks=tasks
        )
        try:
            raw = await asyncio.wait_for(
                self._inference.complete(
                    [{"role": "system", "content": system}, {"role": "user", "content": message}],
                    max_tokens=128,
                    temperature=0.0,
                ),
                timeout=self._timeout,
            )
            text = extract_completion_text(raw)
            if text is None:
                raise ValueError("no usable content in classifier response")
            parsed = _ModelIntent.model_validate(loads_object(text))
        except (ValidationError, ValueError) as exc:
            self._logger.warning(
                "intent classification unparsable",
                extra={"event": "intent_fallback", "attributes": {"error": str(exc)[:200]}},
            )
            get_metrics().increment("intent_fallbacks", {"reason": "parse"})
            return await self._fallback.classify(message, context)
        except Exception as exc:  # noqa: BLE001 - availability boundary
            self._logger.warning(
                "intent classification failed",
                extra={"event": "intent_fallback", "attributes": {"error": repr(exc)[:200]}},
            )
            get_metrics().increment("intent_fallbacks", {"reason": "inference"})
            return await self._fallback.classify(message, context)

        known = {t.id for t in context}
        task_id = parsed.task_id if parsed.task_id in known else find_target_task(message, context)
        return Intent(action=parsed.action, confidence=parsed.confidence, task_id=task_id)


def build_classifier(strategy: str, inference: InferenceClient, *, timeout: float) -> IntentClassifier:
    if strategy == "model":
        return ModelIntentClassifier(inference, timeout=timeout)
    return KeywordIntentClassifier()


__all__ = [
    "DEFAULT_CONFIDENCE",
    "KEYWORD_RULES",
    "Intent",
    "IntentClassifier",
    "KeywordIntentClassifier",
    "ModelIntentClassifier",
    "build_classifier",
    "derive_criteria",
    "derive_updates",
    "find_target_task",
]
