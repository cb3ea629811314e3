"""
Conditional cache layer.

ETag / If-None-Match handling shared by policy documents, group exports
and file manifests. ETags are strong validators over the exact bytes
served: the quoted SHA-256 hex digest of the body.
"""

from __future__ import annotations

import hashlib

from fastapi import Response


def compute_etag(content: bytes | str) -> str:
    """
    Compute the ETag for a response body.

    Args:
        content: Body bytes, or text encoded as UTF-8

    Returns:
        Quoted SHA-256 hex digest, e.g. ``"9f86d0..."``
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return f'"{hashlib.sha256(content).hexdigest()}"'


def _opaque(tag: str) -> str:
    tag = tag.strip()
    if tag.startswith("W/"):
        tag = tag[2:]
    return tag


def etag_matches(if_none_match: str | None, etag: str) -> bool:
    """
    Check an If-None-Match header against the current ETag.

    Uses weak comparison as RFC 9110 requires for If-None-Match: ``W/``
    prefixes are ignored, a comma-separated list matches if any member
    does, and ``*`` matches any current representation.

    Args:
        if_none_match: Raw header value, or None when absent
        etag: Current ETag of the representation

    Returns:
        True if the client's cached copy is current
    """
    if not if_none_match:
        return False

    header = if_none_match.strip()
    if header == "*":
        return True

    current = _opaque(etag)
    return any(_opaque(candidate) == current for candidate in header.split(","))


def conditional_response(
    content: bytes | str,
    if_none_match: str | None,
    media_type: str = "text/plain; charset=utf-8",
    headers: dict[str, str] | None = None,
) -> Response:
    """
    Build a 200 or 304 response for a cacheable body.

    Args:
        content: Body to serve
        if_none_match: Client's If-None-Match header
        media_type: Content type for the 200 response
        headers: Extra headers for both outcomes

    Returns:
        304 with an empty body when the client copy is current, else 200
        with the body; both carry the ETag header
    """
    etag = compute_etag(content)
    response_headers = {"ETag": etag, "Cache-Control": "no-cache"}
    if headers:
        response_headers.update(headers)

    if etag_matches(if_none_match, etag):
        return Response(status_code=304, headers=response_headers)

    return Response(content=content, media_type=media_type, headers=response_headers)
