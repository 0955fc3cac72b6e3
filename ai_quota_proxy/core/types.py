"""
Canonical chat-completion types shared by the proxy and its adapters.

Adapters translate these shapes to and from each vendor's wire format;
nothing above the adapter layer sees vendor-specific payloads.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import UpstreamError, UpstreamErrorKind

VALID_ROLES = ("system", "user", "assistant")

MAX_MODEL_LENGTH = 100
MAX_MESSAGES = 100
MAX_CONTENT_LENGTH = 100_000
MAX_TOKENS_CAP = 100_000


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True)
class LLMRequest:
    """Provider-neutral chat-completion request."""
    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LLMRequest":
        """Build a request from a JSON-style dictionary."""
        messages = [
            m if isinstance(m, ChatMessage) else ChatMessage(role=m["role"], content=m["content"])
            for m in data.get("messages", [])
        ]
        return cls(
            model=data.get("model", ""),
            messages=messages,
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
        )

    def message_dicts(self) -> List[Dict[str, str]]:
        return [{"role": m.role, "content": m.content} for m in self.messages]


@dataclass(frozen=True)
class CompletionUsage:
    """Token counts reported by the provider."""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "CompletionUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


@dataclass(frozen=True)
class Choice:
    role: str
    content: str
    finish_reason: str = "stop"


@dataclass(frozen=True)
class LLMResponse:
    """Provider-neutral chat-completion response."""
    id: str
    model: str
    choices: List[Choice]
    created: int
    usage: Optional[CompletionUsage] = None

    @property
    def text(self) -> str:
        """Content of the first choice, or an empty string."""
        return self.choices[0].content if self.choices else ""


@dataclass(frozen=True)
class ProxyRequest:
    """Input contract of the proxy.

    ``endpoint`` is a caller-supplied tag used only to label usage rows.
    """
    provider: str
    workspace_id: str
    request: LLMRequest
    endpoint: str


@dataclass(frozen=True)
class ProxyUsage:
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost: float


@dataclass
class ProxyResponse:
    """Output contract of the proxy."""
    data: LLMResponse
    usage: ProxyUsage
    cached: bool
    key_source: str
    latency_ms: int
    request_id: str
    warnings: List[str] = field(default_factory=list)


def validate_llm_request(request: LLMRequest) -> LLMRequest:
    """Check a request against the limits the proxy accepts.

    Message content is never rewritten, so the cache fingerprint always
    reflects exactly what the caller sent.

    Args:
        request: Canonical request to validate

    Returns:
        The same request

    Raises:
        UpstreamError: With kind BAD_REQUEST on the first violation found
    """
    def _invalid(reason: str) -> UpstreamError:
        return UpstreamError(f"Invalid request: {reason}", kind=UpstreamErrorKind.BAD_REQUEST)

    if not isinstance(request.model, str) or not 1 <= len(request.model) <= MAX_MODEL_LENGTH:
        raise _invalid(f"model must be 1-{MAX_MODEL_LENGTH} characters")

    if not request.messages or len(request.messages) > MAX_MESSAGES:
        raise _invalid(f"messages must contain 1-{MAX_MESSAGES} entries")

    for i, message in enumerate(request.messages):
        if message.role not in VALID_ROLES:
            raise _invalid(f"messages[{i}].role must be one of {list(VALID_ROLES)}")
        if not isinstance(message.content, str) or not 1 <= len(message.content) <= MAX_CONTENT_LENGTH:
            raise _invalid(f"messages[{i}].content must be 1-{MAX_CONTENT_LENGTH} characters")

    if request.temperature is not None:
        if isinstance(request.temperature, bool) or not isinstance(request.temperature, (int, float)):
            raise _invalid("temperature must be a number")
        if not 0 <= request.temperature <= 2:
            raise _invalid("temperature must be between 0 and 2")

    if request.max_tokens is not None:
        if isinstance(request.max_tokens, bool) or not isinstance(request.max_tokens, int):
            raise _invalid("max_tokens must be an integer")
        if not 0 < request.max_tokens <= MAX_TOKENS_CAP:
            raise _invalid(f"max_tokens must be between 1 and {MAX_TOKENS_CAP}")

    return request
