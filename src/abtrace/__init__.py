"""Session-scoped tracing and model/prompt A/B testing for LLM applications.

Example::

    import abtrace

    client = abtrace.init(api_key="...")
    abtrace.set_session("support-agent", session_id)
    choice = client.get_model_sync("support-agent", session_id, fallback="gpt-4o-mini")
"""

from __future__ import annotations

from .assignment import AssignmentEngine, AssignmentResult, assign, bucket_for
from .client import AbTraceClient, get_client, init, shutdown
from .config import ClientConfig
from .context import (
    ContextStore,
    SessionContext,
    TraceContext,
    clear_session,
    default_store,
    get_session,
    run_with_session,
    set_session,
)
from .errors import (
    AssignmentFailure,
    AssignmentFailureKind,
    ConfigurationError,
    DeliveryFailure,
    InvalidSnapshotError,
    PromptNotFoundError,
)
from .prompts import PromptManager, PromptResult, render_template
from .recorder import SpanRecorder
from .snapshots import ConfigSnapshot, SnapshotCache, Variant
from .spans import SpanRecord, SpanStatus

__version__ = "0.1.0"

__all__ = [
    "AbTraceClient",
    "AssignmentEngine",
    "AssignmentFailure",
    "AssignmentFailureKind",
    "AssignmentResult",
    "ClientConfig",
    "ConfigSnapshot",
    "ConfigurationError",
    "ContextStore",
    "DeliveryFailure",
    "InvalidSnapshotError",
    "PromptManager",
    "PromptNotFoundError",
    "PromptResult",
    "SessionContext",
    "SnapshotCache",
    "SpanRecord",
    "SpanRecorder",
    "SpanStatus",
    "TraceContext",
    "Variant",
    "assign",
    "bucket_for",
    "clear_session",
    "default_store",
    "get_client",
    "get_session",
    "init",
    "render_template",
    "run_with_session",
    "set_session",
    "shutdown",
]
