"""Request and response records for the chat completion API.

Request types serialize with ``to_dict()`` (unset optional fields omitted).
Response types are frozen dataclasses built with ``from_dict()``, which
raises DecodeError when a required field is missing or mistyped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from stream_errors import DecodeError

# Roles
SYSTEM = "system"
ASSISTANT = "assistant"
USER = "user"

# Response formats
JSON_OBJECT = "json_object"
TEXT = "text"

_MISSING = object()


def _field(data: Dict[str, Any], key: str, kind, where: str, required: bool = True):
    """Fetch ``data[key]`` and check its type.

    Optional fields accept an absent key or JSON null and return None.
    """
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        if required:
            raise DecodeError(f"{where}: missing required field '{key}'")
        return None
    # bool is an int subclass; JSON true is never a valid integer here
    if kind is int and isinstance(value, bool):
        raise DecodeError(f"{where}: field '{key}' must be int, got bool")
    if not isinstance(value, kind):
        raise DecodeError(
            f"{where}: field '{key}' must be {kind.__name__}, got {type(value).__name__}"
        )
    return value


def _expect_object(value: Any, where: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(f"{where}: expected JSON object, got {type(value).__name__}")
    return value


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


# ── Requests ──────────────────────────────────────────────────────────


@dataclass
class Message:
    role: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any, where: str = "message") -> "Message":
        data = _expect_object(data, where)
        return cls(
            role=_field(data, "role", str, where),
            content=_field(data, "content", str, where),
        )


@dataclass
class ImageGeneration:
    quality: Optional[str] = None  # "standard", "hd"
    size: Optional[str] = None  # "1024x1024"
    output_format: Optional[str] = None  # "base64", "url"

    def to_dict(self) -> Dict[str, Any]:
        # Serialized as-is, nulls included
        return {
            "quality": self.quality,
            "size": self.size,
            "output_format": self.output_format,
        }


class SearchMode:
    ON = "on"
    OFF = "off"
    AUTO = "auto"


@dataclass
class SearchParameters:
    """Live search parameters (xAI Grok)."""

    mode: str = SearchMode.AUTO
    return_citations: Optional[bool] = None
    from_date: Optional[str] = None  # inclusive yyyy-mm-dd
    to_date: Optional[str] = None  # inclusive yyyy-mm-dd

    def with_citations(self, enabled: bool) -> "SearchParameters":
        self.return_citations = enabled
        return self

    def with_date_range(self, from_date: str, to_date: str) -> "SearchParameters":
        self.from_date = from_date
        self.to_date = to_date
        return self

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "mode": self.mode,
            "return_citations": self.return_citations,
            "from_date": self.from_date,
            "to_date": self.to_date,
        })


@dataclass
class ChatArguments:
    model: str
    messages: List[Message]
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    n: Optional[int] = None
    stream: Optional[bool] = None
    stop: Optional[str] = None
    max_tokens: Optional[int] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    user: Optional[str] = None
    response_format: Optional[str] = None
    image_generation: Optional[ImageGeneration] = None
    search_parameters: Optional[SearchParameters] = None

    def with_search_parameters(self, params: SearchParameters) -> "ChatArguments":
        self.search_parameters = params
        return self

    def to_dict(self) -> Dict[str, Any]:
        body = _compact({
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "temperature": self.temperature,
            "top_p": self.top_p,
            "n": self.n,
            "stream": self.stream,
            "stop": self.stop,
            "max_tokens": self.max_tokens,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
            "user": self.user,
        })
        if self.response_format is not None:
            body["response_format"] = {"type": self.response_format}
        if self.image_generation is not None:
            body["image_generation"] = self.image_generation.to_dict()
        if self.search_parameters is not None:
            body["search_parameters"] = self.search_parameters.to_dict()
        return body


@dataclass
class ImageArguments:
    prompt: str
    model: Optional[str] = None
    n: Optional[int] = None
    size: Optional[str] = None
    quality: Optional[str] = None
    user: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "prompt": self.prompt,
            "model": self.model,
            "n": self.n,
            "size": self.size,
            "quality": self.quality,
            "user": self.user,
        })


@dataclass
class CompletionArguments:
    model: str
    prompt: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    logprobs: Optional[int] = None
    stop: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "model": self.model,
            "prompt": self.prompt,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "logprobs": self.logprobs,
            "stop": self.stop,
        })


@dataclass
class EmbeddingsArguments:
    model: str
    input: str
    user: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({"model": self.model, "input": self.input, "user": self.user})


# ── Non-streaming responses ───────────────────────────────────────────


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_dict(cls, data: Any) -> "Usage":
        data = _expect_object(data, "usage")
        return cls(
            prompt_tokens=_field(data, "prompt_tokens", int, "usage"),
            completion_tokens=_field(data, "completion_tokens", int, "usage"),
            total_tokens=_field(data, "total_tokens", int, "usage"),
        )


@dataclass(frozen=True)
class Choice:
    message: Message
    finish_reason: str
    index: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any, where: str = "choice") -> "Choice":
        data = _expect_object(data, where)
        return cls(
            message=Message.from_dict(data.get("message"), f"{where}.message"),
            finish_reason=_field(data, "finish_reason", str, where),
            index=_field(data, "index", int, where, required=False),
        )


@dataclass(frozen=True)
class ChatCompletion:
    created: int
    choices: Tuple[Choice, ...]
    usage: Usage
    id: Optional[str] = None
    model: Optional[str] = None
    object: Optional[str] = None

    def __str__(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content

    @classmethod
    def from_dict(cls, data: Any) -> "ChatCompletion":
        data = _expect_object(data, "completion")
        raw_choices = _field(data, "choices", list, "completion")
        return cls(
            created=_field(data, "created", int, "completion"),
            choices=tuple(
                Choice.from_dict(c, f"choices[{i}]") for i, c in enumerate(raw_choices)
            ),
            usage=Usage.from_dict(data.get("usage")),
            id=_field(data, "id", str, "completion", required=False),
            model=_field(data, "model", str, "completion", required=False),
            object=_field(data, "object", str, "completion", required=False),
        )


@dataclass(frozen=True)
class Model:
    id: str
    object: Optional[str] = None
    created: Optional[int] = None
    owned_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Model":
        data = _expect_object(data, "model")
        return cls(
            id=_field(data, "id", str, "model"),
            object=_field(data, "object", str, "model", required=False),
            created=_field(data, "created", int, "model", required=False),
            owned_by=_field(data, "owned_by", str, "model", required=False),
        )


# ── Streaming chunks ──────────────────────────────────────────────────


@dataclass(frozen=True)
class ChoiceDelta:
    content: Optional[str] = None


@dataclass(frozen=True)
class ChunkChoice:
    delta: ChoiceDelta
    index: int
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class ChatCompletionChunk:
    """One decoded ``data:`` frame of a streamed chat completion."""

    id: str
    created: int
    model: str
    choices: Tuple[ChunkChoice, ...] = ()
    system_fingerprint: Optional[str] = None

    def __str__(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""

    @property
    def content(self) -> Optional[str]:
        """Delta text of the first choice, None when absent."""
        if not self.choices:
            return None
        return self.choices[0].delta.content

    @classmethod
    def from_dict(cls, data: Any) -> "ChatCompletionChunk":
        data = _expect_object(data, "chunk")
        raw_choices = _field(data, "choices", list, "chunk")

        choices = []
        for i, raw in enumerate(raw_choices):
            where = f"choices[{i}]"
            raw = _expect_object(raw, where)
            delta = _expect_object(raw.get("delta"), f"{where}.delta")
            choices.append(ChunkChoice(
                delta=ChoiceDelta(
                    content=_field(delta, "content", str, f"{where}.delta", required=False),
                ),
                index=_field(raw, "index", int, where),
                finish_reason=_field(raw, "finish_reason", str, where, required=False),
            ))

        return cls(
            id=_field(data, "id", str, "chunk"),
            created=_field(data, "created", int, "chunk"),
            model=_field(data, "model", str, "chunk"),
            choices=tuple(choices),
            system_fingerprint=_field(
                data, "system_fingerprint", str, "chunk", required=False
            ),
        )
