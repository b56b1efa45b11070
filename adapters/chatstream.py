#!/usr/bin/env python3
"""
chatstream.py — OpenAI-style chat client with incremental SSE streaming

Library:
  Client / AsyncClient      — list_models, create_chat, create_chat_stream, ...
  ChatCompletionChunkStream — iterator of ChatCompletionChunk over a live response

CLI:
  chatstream <prompt-file|text|-> [--model M] [--provider TYPE] [--config PATH] [--no-stream]

Exit codes:
  0 = success
  1 = provider returned error (non-200)
  2 = network/timeout error
  3 = malformed stream or response body
  4 = invalid usage or config
"""

import asyncio
import json
import logging
import os
import random
import sys
import time
from typing import Any, Dict, List, Optional

import httpx

from chat_types import (
    USER,
    ChatArguments,
    ChatCompletion,
    ChatCompletionChunk,
    CompletionArguments,
    EmbeddingsArguments,
    ImageArguments,
    Message,
    Model,
)
from config_loader import load_config, redact_config, redact_headers, redact_string
from provider_registry import (
    ProviderDefaults,
    estimate_message_tokens,
    estimate_tokens,
    get_defaults,
    is_supported_type,
    resolve_auth_headers,
    resolve_url,
    validate_provider,
)
from sse_decoder import aiter_chunks, iter_chunks
from stream_errors import ChatStreamError, DecodeError, ProviderError, TransportError

logger = logging.getLogger("chatstream.client")

# Non-retryable status codes
NON_RETRYABLE_STATUS = {400, 401, 403, 404}
DEFAULT_RETRYABLE_STATUS = [429, 500, 502, 503, 504]


# === Retry Policy ===


def _retry_delay(attempt: int, retry_config: dict) -> float:
    """Backoff before ``attempt`` (1-based retry number), with jitter."""
    base_delay = retry_config.get("base_delay_ms", 1000) / 1000.0
    max_delay = retry_config.get("max_delay_ms", 30000) / 1000.0
    jitter_pct = retry_config.get("jitter_percent", 25) / 100.0

    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    jitter = delay * jitter_pct * (random.random() * 2 - 1)
    return max(0, delay + jitter)


def _status_error(response: httpx.Response, retryable_codes: set) -> ProviderError:
    """Build the ProviderError for a non-200 response (body already read)."""
    status = response.status_code
    return ProviderError(
        f"HTTP {status}: {_safe_error_body(response)}",
        body=response.text,
        status_code=status,
        retryable=status in retryable_codes and status not in NON_RETRYABLE_STATUS,
    )


def _network_error(e: Exception) -> TransportError:
    if isinstance(e, httpx.TimeoutException):
        return TransportError(f"Request timed out: {e}", retryable=True)
    if isinstance(e, httpx.ConnectError):
        return TransportError(f"Connection failed: {e}", retryable=True)
    return TransportError(f"Unexpected error: {e}", retryable=False)


def invoke_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    headers: dict,
    body: Optional[dict],
    retry_config: dict,
    stream: bool = False,
) -> httpx.Response:
    """Send a request with exponential backoff and jitter.

    Only opening the request is retried. With stream=True the returned
    response is unread and must be closed by the caller.
    """
    max_retries = retry_config.get("max_retries", 3)
    retryable_codes = set(retry_config.get("retryable_status_codes", DEFAULT_RETRYABLE_STATUS))

    for attempt in range(max_retries + 1):
        if attempt > 0:
            delay = _retry_delay(attempt, retry_config)
            logger.warning(
                "Retry %d/%d for %s %s in %.2fs", attempt, max_retries, method, url, delay
            )
            time.sleep(delay)

        try:
            request = client.build_request(method, url, json=body, headers=headers)
            response = client.send(request, stream=stream)
        except httpx.HTTPError as e:
            error = _network_error(e)
            if error.retryable and attempt < max_retries:
                continue
            raise error

        if response.status_code == 200:
            return response

        try:
            response.read()
        finally:
            response.close()
        error = _status_error(response, retryable_codes)
        if error.retryable and attempt < max_retries:
            continue
        raise error

    raise TransportError("All retries exhausted", retryable=False)


async def invoke_with_retry_async(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: dict,
    body: Optional[dict],
    retry_config: dict,
    stream: bool = False,
) -> httpx.Response:
    """Async version of invoke_with_retry."""
    max_retries = retry_config.get("max_retries", 3)
    retryable_codes = set(retry_config.get("retryable_status_codes", DEFAULT_RETRYABLE_STATUS))

    for attempt in range(max_retries + 1):
        if attempt > 0:
            delay = _retry_delay(attempt, retry_config)
            logger.warning(
                "Retry %d/%d for %s %s in %.2fs", attempt, max_retries, method, url, delay
            )
            await asyncio.sleep(delay)

        try:
            request = client.build_request(method, url, json=body, headers=headers)
            response = await client.send(request, stream=stream)
        except httpx.HTTPError as e:
            error = _network_error(e)
            if error.retryable and attempt < max_retries:
                continue
            raise error

        if response.status_code == 200:
            return response

        try:
            await response.aread()
        finally:
            await response.aclose()
        error = _status_error(response, retryable_codes)
        if error.retryable and attempt < max_retries:
            continue
        raise error

    raise TransportError("All retries exhausted", retryable=False)


def _safe_error_body(response: httpx.Response) -> str:
    """Extract error message from response body without dumping all of it."""
    try:
        data = response.json()
        if isinstance(data, dict):
            error = data.get("error", {})
            if isinstance(error, dict):
                return error.get("message", response.text[:200])
            return str(error)[:200]
        return response.text[:200]
    except ValueError:
        return response.text[:200] if response.text else "(empty body)"


def _parse_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        raise DecodeError(f"Non-JSON response body: {response.text[:200]}")


def _default_timeout(defaults: ProviderDefaults) -> httpx.Timeout:
    return httpx.Timeout(
        connect=defaults.connect_timeout_ms / 1000.0,
        read=defaults.read_timeout_ms / 1000.0,
        write=30.0,
        pool=defaults.total_timeout_ms / 1000.0,
    )


def _image_strings(data: Any) -> List[str]:
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        raise DecodeError("Image response missing 'data' list")
    result = []
    for item in data["data"]:
        if isinstance(item, dict) and item.get("url"):
            result.append(item["url"])
        elif isinstance(item, dict) and item.get("b64_json"):
            result.append(item["b64_json"])
        else:
            raise DecodeError(f"Image object has neither url nor b64_json: {item!r}")
    return result


def _image_request(args: ImageArguments) -> dict:
    # gpt-image-1 quality: low, medium, high or auto
    return ImageArguments(
        prompt=args.prompt,
        model="gpt-image-1",
        n=1,
        size="1024x1024",
        quality="auto",
    ).to_dict()


# === Streams ===


class ChatCompletionChunkStream:
    """Iterator of ChatCompletionChunk over a live 200 streaming response.

    Stop iterating at any time and close() (or leave the ``with`` block);
    the response is released without draining it.
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._chunks = iter_chunks(response.iter_bytes())

    def __iter__(self) -> "ChatCompletionChunkStream":
        return self

    def __next__(self) -> ChatCompletionChunk:
        try:
            return next(self._chunks)
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        self._chunks.close()
        self._response.close()

    def __enter__(self) -> "ChatCompletionChunkStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class AsyncChatCompletionChunkStream:
    """Async iterator of ChatCompletionChunk over a live 200 streaming response."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._chunks = aiter_chunks(response.aiter_bytes())

    def __aiter__(self) -> "AsyncChatCompletionChunkStream":
        return self

    async def __anext__(self) -> ChatCompletionChunk:
        try:
            return await self._chunks.__anext__()
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        await self._chunks.aclose()
        await self._response.aclose()

    async def __aenter__(self) -> "AsyncChatCompletionChunkStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


# === Clients ===


class _BaseClient:
    def __init__(
        self,
        api_key: str = "",
        base_url: Optional[str] = None,
        provider_type: str = "openai",
        retry: Optional[dict] = None,
    ):
        if not is_supported_type(provider_type):
            raise ValueError(f"Unknown provider type '{provider_type}'")
        self._provider = {"type": provider_type, "api_key": api_key, "base_url": base_url or ""}
        self._defaults = get_defaults(provider_type)
        self._retry = retry if retry is not None else {}

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs: Any):
        """Build a client from a load_config() result."""
        provider = config.get("provider", {})
        return cls(
            api_key=provider.get("api_key", ""),
            base_url=provider.get("base_url"),
            provider_type=provider.get("type", "openai"),
            retry=config.get("retry"),
            **kwargs,
        )

    @property
    def provider(self) -> Dict[str, Any]:
        return dict(self._provider)

    def _headers(self) -> Dict[str, str]:
        return resolve_auth_headers(self._provider)

    def _url(self, endpoint: str, url_path: Optional[str]) -> str:
        return resolve_url(self._provider, endpoint, url_path)

    def _stream_body(self, args: ChatArguments) -> dict:
        body = args.to_dict()
        body["stream"] = True
        logger.debug(
            "Opening chat stream model=%s headers=%s", args.model, redact_headers(self._headers())
        )
        return body


class Client(_BaseClient):
    """Blocking client. Pass http_client to reuse an existing httpx.Client."""

    def __init__(
        self,
        api_key: str = "",
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        provider_type: str = "openai",
        retry: Optional[dict] = None,
    ):
        super().__init__(api_key, base_url, provider_type, retry)
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=_default_timeout(self._defaults))

    def _send(self, method: str, endpoint: str, url_path: Optional[str],
              body: Optional[dict] = None, stream: bool = False) -> httpx.Response:
        return invoke_with_retry(
            self._http, method, self._url(endpoint, url_path), self._headers(),
            body, self._retry, stream=stream,
        )

    def list_models(self, url_path: Optional[str] = None) -> List[Model]:
        data = _parse_json(self._send("GET", "models", url_path))
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise DecodeError("Model list response missing 'data' list")
        return [Model.from_dict(m) for m in data["data"]]

    def create_chat(self, args: ChatArguments, url_path: Optional[str] = None) -> ChatCompletion:
        response = self._send("POST", "chat", url_path, args.to_dict())
        return ChatCompletion.from_dict(_parse_json(response))

    def create_chat_stream(
        self, args: ChatArguments, url_path: Optional[str] = None
    ) -> ChatCompletionChunkStream:
        """Open a streaming chat completion.

        Raises ProviderError (with the full body text) on a non-200 status.
        """
        response = self._send("POST", "chat", url_path, self._stream_body(args), stream=True)
        return ChatCompletionChunkStream(response)

    def create_completion(
        self, args: CompletionArguments, url_path: Optional[str] = None
    ) -> Dict[str, Any]:
        return _parse_json(self._send("POST", "completions", url_path, args.to_dict()))

    def create_embeddings(
        self, args: EmbeddingsArguments, url_path: Optional[str] = None
    ) -> Dict[str, Any]:
        return _parse_json(self._send("POST", "embeddings", url_path, args.to_dict()))

    def create_image(self, args: ImageArguments, url_path: Optional[str] = None) -> List[str]:
        """Generate one 1024x1024 gpt-image-1 image; returns URLs or base64 data."""
        response = self._send("POST", "images", url_path, _image_request(args))
        return _image_strings(_parse_json(response))

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class AsyncClient(_BaseClient):
    """asyncio client over httpx.AsyncClient."""

    def __init__(
        self,
        api_key: str = "",
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        provider_type: str = "openai",
        retry: Optional[dict] = None,
    ):
        super().__init__(api_key, base_url, provider_type, retry)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=_default_timeout(self._defaults))

    async def _send(self, method: str, endpoint: str, url_path: Optional[str],
                    body: Optional[dict] = None, stream: bool = False) -> httpx.Response:
        return await invoke_with_retry_async(
            self._http, method, self._url(endpoint, url_path), self._headers(),
            body, self._retry, stream=stream,
        )

    async def list_models(self, url_path: Optional[str] = None) -> List[Model]:
        data = _parse_json(await self._send("GET", "models", url_path))
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise DecodeError("Model list response missing 'data' list")
        return [Model.from_dict(m) for m in data["data"]]

    async def create_chat(
        self, args: ChatArguments, url_path: Optional[str] = None
    ) -> ChatCompletion:
        response = await self._send("POST", "chat", url_path, args.to_dict())
        return ChatCompletion.from_dict(_parse_json(response))

    async def create_chat_stream(
        self, args: ChatArguments, url_path: Optional[str] = None
    ) -> AsyncChatCompletionChunkStream:
        response = await self._send(
            "POST", "chat", url_path, self._stream_body(args), stream=True
        )
        return AsyncChatCompletionChunkStream(response)

    async def create_completion(
        self, args: CompletionArguments, url_path: Optional[str] = None
    ) -> Dict[str, Any]:
        return _parse_json(await self._send("POST", "completions", url_path, args.to_dict()))

    async def create_embeddings(
        self, args: EmbeddingsArguments, url_path: Optional[str] = None
    ) -> Dict[str, Any]:
        return _parse_json(await self._send("POST", "embeddings", url_path, args.to_dict()))

    async def create_image(
        self, args: ImageArguments, url_path: Optional[str] = None
    ) -> List[str]:
        response = await self._send("POST", "images", url_path, _image_request(args))
        return _image_strings(_parse_json(response))

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "AsyncClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


# === CLI ===

EXIT_CODES = {
    "provider_error": 1,
    "network_error": 2,
    "decode_error": 3,
}


def _read_prompt(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    if os.path.isfile(source):
        with open(source) as f:
            return f.read()
    return source


def run_chat(config: Dict[str, Any], prompt: str, stream: bool = True) -> None:
    """Send one user prompt and print the reply, streaming deltas as they arrive."""
    provider = config.get("provider", {})
    errors = validate_provider(provider)
    if errors:
        for error in errors:
            print(f"ERROR: {error}", file=sys.stderr)
        sys.exit(4)

    model = config["model"]
    args = ChatArguments(model=model, messages=[Message(role=USER, content=prompt)])
    text = ""

    start_time = time.monotonic()
    try:
        with Client.from_config(config) as client:
            if stream:
                with client.create_chat_stream(args) as chunks:
                    for chunk in chunks:
                        delta = str(chunk)
                        text += delta
                        sys.stdout.write(delta)
                        sys.stdout.flush()
            else:
                completion = client.create_chat(args)
                text = str(completion)
                sys.stdout.write(text)
    except ChatStreamError as e:
        sys.stdout.write("\n")
        print(f"ERROR: {redact_string(str(e))}", file=sys.stderr)
        sys.exit(EXIT_CODES.get(e.code, 5))

    latency_ms = (time.monotonic() - start_time) * 1000
    sys.stdout.write("\n")
    print(
        f"--- {model} ({provider.get('type', 'openai')}) | "
        f"~{estimate_message_tokens(args.to_dict()['messages'])} tokens in, "
        f"~{estimate_tokens(text)} tokens out | {latency_ms:.0f}ms ---",
        file=sys.stderr,
    )


def _option(args: List[str], flag: str) -> Optional[str]:
    if flag not in args:
        return None
    idx = args.index(flag)
    if idx + 1 >= len(args):
        print(f"ERROR: {flag} requires a value", file=sys.stderr)
        sys.exit(4)
    value = args[idx + 1]
    del args[idx:idx + 2]
    return value


def main(argv: Optional[List[str]] = None) -> None:
    args = list(sys.argv[1:] if argv is None else argv)

    logging.basicConfig(
        level=os.environ.get("CHATSTREAM_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    model = _option(args, "--model")
    provider_type = _option(args, "--provider")
    config_path = _option(args, "--config")
    stream = "--no-stream" not in args
    args = [a for a in args if a != "--no-stream"]

    if len(args) != 1:
        print("Usage:", file=sys.stderr)
        print(
            "  chatstream <prompt-file|text|-> [--model M] [--provider TYPE] "
            "[--config PATH] [--no-stream]",
            file=sys.stderr,
        )
        sys.exit(4)

    overrides: Dict[str, Any] = {}
    if model:
        overrides["model"] = model
    if provider_type:
        overrides["provider"] = {"type": provider_type}

    try:
        config = load_config(config_path, overrides)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(4)
    logger.debug("Effective config: %s", json.dumps(redact_config(config)))

    run_chat(config, _read_prompt(args[0]), stream=stream)


if __name__ == "__main__":
    main()
