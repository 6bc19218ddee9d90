"""Failure taxonomy for the reply engine.

Everything here is scoped to a single turn. Malformed model output and
unknown emoji keys are *not* errors: they degrade to plain text inside the
parser / post-processor and are only logged.
"""

from __future__ import annotations

from typing import Optional


class ReplyEngineError(Exception):
    """Base class for all reply engine failures."""


class ConfigError(RuntimeError):
    """Configuration file exists but cannot be used."""


class InvalidTransition(ReplyEngineError):
    """A conversation phase change that the state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"cannot move from {current} to {target}")
        self.current = current
        self.target = target


# -----------------------------
# Generation failures
# -----------------------------
class GenerationError(ReplyEngineError):
    """The single generation call for a turn did not produce usable text."""


class NoApiConfig(GenerationError):
    """Endpoint or model missing; the UI should prompt the user to configure the API."""


class TransportError(GenerationError):
    """Network or HTTP failure talking to the completion service."""


class HttpError(TransportError):
    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"completion service returned HTTP {status}")
        self.status = status
        self.body = body[:300]


class NetworkError(TransportError):
    pass


class EmptyCompletion(TransportError):
    """The service answered 2xx but no text could be extracted."""

    def __init__(self, finish_reason: Optional[str] = None) -> None:
        msg = "completion service returned no content"
        if finish_reason:
            msg += f" (finish_reason={finish_reason})"
        super().__init__(msg)
        self.finish_reason = finish_reason
