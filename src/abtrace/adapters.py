"""Interface between provider-specific instrumentation and the span recorder.

Each supported provider gets its own :class:`ProviderAdapter`. The adapter
knows the shape of that provider's requests and results and turns one
intercepted call into a :class:`CapturedCall` tagged with a :class:`CallKind`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol


class CallKind(str, Enum):
    """Recognised call shapes."""

    GENERATE_TEXT = "generateText"
    STREAM_TEXT = "streamText"
    GENERATE_OBJECT = "generateObject"
    STREAM_OBJECT = "streamObject"
    CHAT_COMPLETION = "chatCompletion"
    CUSTOM = "custom"


@dataclass(frozen=True)
class CapturedCall:
    """``{request, result | error, model}`` tuple for one intercepted call."""

    kind: CallKind
    request_params: Mapping[str, Any] = field(default_factory=dict)
    result: Any = None
    error: Optional[BaseException] = None
    model_id: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class ProviderAdapter(Protocol):
    """Extracts the recorded views of a call for one provider."""

    def request_view(self, kind: CallKind, params: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def response_view(self, kind: CallKind, result: Any) -> Dict[str, Any]:
        ...

    def usage(self, result: Any) -> Optional[Mapping[str, Any]]:
        ...

    def model_id(self, params: Mapping[str, Any], result: Any) -> str:
        ...


def _get(source: Any, key: str, default: Any = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


class MappingAdapter:
    """Adapter for providers whose requests and results are plain dicts or objects.

    Request views keep the prompt-bearing fields plus the model id; response
    views keep text, finish reason, tool activity and steps. Everything else is
    left for the collector to parse from the raw capture.
    """

    request_fields = ("prompt", "messages", "system", "maxSteps", "temperature", "max_tokens")
    response_fields = ("text", "finishReason", "toolCalls", "toolResults", "steps", "responseMessages", "object")

    def request_view(self, kind: CallKind, params: Mapping[str, Any]) -> Dict[str, Any]:
        view: Dict[str, Any] = {name: params.get(name) for name in self.request_fields if name in params}
        tools = params.get("tools")
        if isinstance(tools, Mapping):
            view["tools"] = list(tools)
        return view

    def response_view(self, kind: CallKind, result: Any) -> Dict[str, Any]:
        view: Dict[str, Any] = {}
        for name in self.response_fields:
            value = _get(result, name)
            if value is not None:
                view[name] = value
        response = _get(result, "response")
        if response is not None:
            view["responseId"] = _get(response, "id")
            view["modelId"] = _get(response, "modelId")
        choices = _get(result, "choices")
        if choices:
            view["choices"] = choices
        return view

    def usage(self, result: Any) -> Optional[Mapping[str, Any]]:
        usage = _get(result, "usage")
        if usage is None:
            return None
        if isinstance(usage, Mapping):
            return dict(usage)
        if hasattr(usage, "__dict__"):
            return {key: value for key, value in vars(usage).items() if not key.startswith("_")}
        return {"value": usage}

    def model_id(self, params: Mapping[str, Any], result: Any) -> str:
        response = _get(result, "response")
        model = _get(response, "modelId") if response is not None else None
        model = model or _get(result, "model")
        if model:
            return str(model)
        requested = params.get("model")
        if requested is None:
            return "unknown"
        return str(_get(requested, "modelId") or requested)


__all__ = ["CallKind", "CapturedCall", "MappingAdapter", "ProviderAdapter"]
