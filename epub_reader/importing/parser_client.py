from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from ..errors import ParserError
from .models import ParsedBook
from .schema import ParseResponse

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/epub+zip"


class ParserClient:
    """
    Abstract parser boundary. Implementations turn raw EPUB bytes into a
    validated ParsedBook or raise ParserError; nothing else escapes.
    """

    def parse(self, data: bytes, file_name: str, content_type: Optional[str] = None) -> ParsedBook:
        raise NotImplementedError


def parse_response_body(body: object) -> ParsedBook:
    """
    Validate a decoded JSON body and convert it to the internal dataclasses.
    """
    if not isinstance(body, dict):
        raise ParserError("Parser response is not a JSON object", retryable=False)
    try:
        return ParseResponse.model_validate(body).to_parsed_book()
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", str(exc))
        message = f"Invalid parser response: {location}: {detail}" if location else f"Invalid parser response: {detail}"
        raise ParserError(message, retryable=False) from exc
    except ValueError as exc:
        raise ParserError(f"Invalid parser response: {exc}", retryable=False) from exc


class HttpParserClient(ParserClient):
    """
    Talks to the parser service over HTTP: one multipart POST per book with
    the file under the ``file`` field. Every wait is bounded by ``timeout``;
    a timeout is reported exactly like any other network failure.
    """

    def __init__(
        self,
        parser_url: str = "http://localhost:8081/parse",
        timeout: float = 120.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.parser_url = parser_url
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def parse(self, data: bytes, file_name: str, content_type: Optional[str] = None) -> ParsedBook:
        files = {"file": (file_name, data, content_type or DEFAULT_CONTENT_TYPE)}
        logger.info("Sending %s (%d bytes) to parser at %s", file_name, len(data), self.parser_url)
        try:
            with self._client() as client:
                response = client.post(self.parser_url, files=files)
        except httpx.TimeoutException as exc:
            raise ParserError(f"Parser timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise ParserError(f"Parser unreachable: {exc}") from exc

        body = None
        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            message = None
            if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
                message = body["error"]
            raise ParserError(
                message or f"Parser error (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        if body is None:
            raise ParserError("Parser returned a non-JSON body", status_code=response.status_code, retryable=False)

        parsed = parse_response_body(body)
        for warning in parsed.warnings:
            logger.warning("Parser warning for %s: [%s] %s %s", file_name, warning.code, warning.message, warning.path or "")
        logger.info(
            "Parsed %s: %d sections, %d chunks, %d images",
            file_name,
            len(parsed.sections),
            len(parsed.chunks),
            len(parsed.images),
        )
        return parsed
