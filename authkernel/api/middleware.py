from __future__ import annotations

import json
from typing import Optional
from urllib.parse import parse_qsl, urlencode

from authkernel.api.error_handling import service_error_response
from authkernel.logging import get_logger
from authkernel.service.errors import PayloadTooLargeError
from authkernel.service.sanitizer import sanitize_payload, sanitize_query_pairs

logger = get_logger(__name__)

DEFAULT_MAX_BODY_BYTES = 1024 * 1024


class _BodyTooLarge(Exception):
    pass


def is_json_content_type(content_type: Optional[str]) -> bool:
    """Whether FastAPI would parse a body with this content type as JSON.

    A missing content type counts, as do ``application/json`` and any
    ``application/*+json`` structured-syntax type.
    """
    if not content_type:
        return True
    media_type = content_type.split(";")[0].strip().lower()
    maintype, _, subtype = media_type.partition("/")
    return maintype == "application" and (subtype == "json" or subtype.endswith("+json"))


class SanitizeInputMiddleware:
    """Clean JSON bodies and query strings before routing sees them.

    Pure ASGI so the rewritten body can be replayed to the downstream app
    through ``receive``. Bodies that are not valid JSON pass through
    untouched and fail later in request validation. Bodies larger than
    ``max_body_bytes`` are refused with 413 whatever their content type.
    """

    def __init__(self, app, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES):
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        query_string = scope.get("query_string", b"")
        if query_string:
            pairs = parse_qsl(query_string.decode("latin-1"), keep_blank_values=True)
            scope = dict(scope)
            scope["query_string"] = urlencode(sanitize_query_pairs(pairs)).encode("latin-1")

        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
        declared_length = headers.get("content-length")
        if declared_length:
            try:
                if int(declared_length) > self.max_body_bytes:
                    await self._refuse(scope, receive, send, declared_length)
                    return
            except ValueError:
                # Unparseable Content-Length; the streaming count still applies
                pass

        if not is_json_content_type(headers.get("content-type")):
            await self._passthrough(scope, receive, send)
            return

        chunks = []
        received = 0
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                await self.app(scope, _replay([message]), send)
                return
            chunk = message.get("body", b"")
            received += len(chunk)
            if received > self.max_body_bytes:
                await self._refuse(scope, receive, send, received)
                return
            chunks.append(chunk)
            if not message.get("more_body", False):
                break
        body = self._sanitize_body(b"".join(chunks))

        scope = dict(scope)
        scope["headers"] = [
            (k, str(len(body)).encode("latin-1")) if k.lower() == b"content-length" else (k, v)
            for k, v in scope.get("headers", [])
        ]
        await self.app(
            scope,
            _replay([{"type": "http.request", "body": body, "more_body": False}], receive),
            send,
        )

    async def _passthrough(self, scope, receive, send):
        received = 0
        started = False

        async def receive_limited():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    raise _BodyTooLarge()
            return message

        async def send_tracking(message):
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, receive_limited, send_tracking)
        except _BodyTooLarge:
            if started:
                logger.error("request_body_limit_after_response_start", path=scope.get("path"))
                raise
            await self._refuse(scope, receive, send, received)

    async def _refuse(self, scope, receive, send, size) -> None:
        logger.warning(
            "request_body_too_large",
            path=scope.get("path"),
            size=size,
            max_bytes=self.max_body_bytes,
        )
        response = service_error_response(
            PayloadTooLargeError(
                "Request body too large",
                detail={"max_bytes": self.max_body_bytes},
            )
        )
        await response(scope, receive, send)

    @staticmethod
    def _sanitize_body(body: bytes) -> bytes:
        if not body:
            return body
        try:
            payload = json.loads(body)
        except (ValueError, RecursionError):
            # Left for request validation to reject with a 400
            logger.info("sanitize_body_not_json", size=len(body))
            return body
        return json.dumps(sanitize_payload(payload), separators=(",", ":")).encode("utf-8")


def _replay(messages, receive=None):
    pending = list(messages)

    async def replay_receive():
        if pending:
            return pending.pop(0)
        if receive is not None:
            # After the body is consumed only disconnect notifications remain
            return await receive()
        return {"type": "http.disconnect"}

    return replay_receive
