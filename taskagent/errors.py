from __future__ import annotations


class TaskAgentError(Exception):
    """Base class for errors raised inside taskagent."""


class InferenceUnavailable(TaskAgentError):
    """The language inference service could not be reached or is not configured."""


class InvalidFrame(TaskAgentError):
    """An inbound client frame could not be parsed or validated."""


class PersistenceError(TaskAgentError):
    """The state backend rejected a read or write."""


__all__ = ["TaskAgentError", "InferenceUnavailable", "InvalidFrame", "PersistenceError"]
