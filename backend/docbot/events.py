"""
Event system for the docs assistant.

Each component emits structured events as it works, so any consumer
(logging, console, SSE stream) can follow a request through the
normalize → reconstruct → retrieve → reason pipeline.

Event schema:
{
    "component": "conversation" | "retrieval" | "reasoner" | ...,
    "type":      "status" | "progress" | "result" | "error" | "warning" | "log",
    "step":      "cutoff" | "fetch_history" | "rerank" | ...,
    "message":   "Human-readable status message",
    "data":      { ... optional structured payload ... },
    "timestamp": 1234567890.123
}

Usage:
    emitter = LoggingEventEmitter()          # forwards to the logging module
    emitter = ConsoleEventEmitter()          # prints to stdout
    emitter = CallbackEventEmitter(my_func)  # calls your function
    emitter = NoOpEventEmitter()             # silent

    emitter.emit("retrieval", "progress", "search", "Querying vector store...")
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol


# ═══════════════════════════════════════════════════════════════════
#  EVENT TYPES
# ═══════════════════════════════════════════════════════════════════

# Component identifiers
COMPONENT_CONVERSATION = "conversation"
COMPONENT_REGISTRY = "registry"
COMPONENT_RETRIEVAL = "retrieval"
COMPONENT_REASONER = "reasoner"
COMPONENT_PIPELINE = "pipeline"
COMPONENT_DOCS_SYNC = "docs_sync"

# Event types
EVENT_STATUS = "status"       # Component changed state (starting, step change)
EVENT_PROGRESS = "progress"   # Incremental progress within a step
EVENT_RESULT = "result"       # Component produced a result
EVENT_WARNING = "warning"     # Recovered locally, request continues
EVENT_ERROR = "error"         # Something went wrong
EVENT_LOG = "log"             # Verbose debug log line


# ═══════════════════════════════════════════════════════════════════
#  EVENT EMITTER PROTOCOL + IMPLEMENTATIONS
# ═══════════════════════════════════════════════════════════════════

class EventEmitter(Protocol):
    """Protocol for event emitters — any object with an emit() method."""

    def emit(
        self,
        component: str,
        event_type: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None: ...


class LoggingEventEmitter:
    """Forwards events to the standard logging module.

    Each component logs under ``docbot.<component>`` so levels can be tuned
    per component from the usual logging configuration.
    """

    _LEVELS = {
        EVENT_STATUS: logging.INFO,
        EVENT_PROGRESS: logging.INFO,
        EVENT_RESULT: logging.INFO,
        EVENT_WARNING: logging.WARNING,
        EVENT_ERROR: logging.ERROR,
        EVENT_LOG: logging.DEBUG,
    }

    def __init__(self, prefix: str = "docbot") -> None:
        self._prefix = prefix

    def emit(
        self,
        component: str,
        event_type: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        logger = logging.getLogger(f"{self._prefix}.{component}")
        level = self._LEVELS.get(event_type, logging.INFO)
        if data:
            logger.log(level, "[%s] %s %s", step, message, data)
        else:
            logger.log(level, "[%s] %s", step, message)


class ConsoleEventEmitter:
    """Prints events to the console with colored prefixes."""

    # ANSI colors for different components
    _COLORS = {
        COMPONENT_CONVERSATION: "\033[36m",  # cyan
        COMPONENT_REGISTRY: "\033[33m",      # yellow
        COMPONENT_RETRIEVAL: "\033[34m",     # blue
        COMPONENT_REASONER: "\033[32m",      # green
        COMPONENT_DOCS_SYNC: "\033[96m",     # bright cyan
        COMPONENT_PIPELINE: "\033[35m",      # magenta
    }
    _RESET = "\033[0m"
    _BOLD = "\033[1m"
    _DIM = "\033[2m"

    _ICONS = {
        EVENT_STATUS: "●",
        EVENT_PROGRESS: "→",
        EVENT_RESULT: "✓",
        EVENT_WARNING: "!",
        EVENT_ERROR: "✗",
        EVENT_LOG: "·",
    }

    def emit(
        self,
        component: str,
        event_type: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        color = self._COLORS.get(component, "")
        icon = self._ICONS.get(event_type, " ")
        label = component.upper().replace("_", " ")

        if event_type in (EVENT_STATUS, EVENT_RESULT):
            print(f"{color}{self._BOLD}  [{label}] {icon} {message}{self._RESET}")
        elif event_type == EVENT_PROGRESS:
            print(f"{color}  [{label}] {icon} {message}{self._RESET}")
        elif event_type == EVENT_WARNING:
            print(f"\033[33m  [{label}] {icon} {message}{self._RESET}")
        elif event_type == EVENT_ERROR:
            print(f"\033[31m  [{label}] {icon} {message}{self._RESET}")
        elif event_type == EVENT_LOG:
            print(f"{self._DIM}  [{label}] {message}{self._RESET}")


class CallbackEventEmitter:
    """Forwards events to a callback function (for SSE streams).

    The callback receives a single dict with the full event payload.
    """

    def __init__(self, callback: Callable[[dict[str, Any]], None]) -> None:
        self._callback = callback

    def emit(
        self,
        component: str,
        event_type: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = {
            "component": component,
            "type": event_type,
            "step": step,
            "message": message,
            "data": data or {},
            "timestamp": time.time(),
        }
        self._callback(event)


class NoOpEventEmitter:
    """Silent emitter — discards all events."""

    def emit(
        self,
        component: str,
        event_type: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        pass


# ── Default singleton ─────────────────────────────────────────────
_default_emitter: EventEmitter = LoggingEventEmitter()


def get_default_emitter() -> EventEmitter:
    """Get the default event emitter."""
    return _default_emitter


def set_default_emitter(emitter: EventEmitter) -> None:
    """Set the default event emitter globally."""
    global _default_emitter
    _default_emitter = emitter
