"""
Tests for ETag computation and conditional responses.
"""

from __future__ import annotations

import hashlib

import pytest

from classgate.delivery.etag import compute_etag, conditional_response, etag_matches


BODY = "## WHITELIST\nwikipedia.org\n"
ETAG = '"' + hashlib.sha256(BODY.encode("utf-8")).hexdigest() + '"'


class TestComputeEtag:
    """Tests for compute_etag."""

    def test_quoted_sha256(self) -> None:
        assert compute_etag(BODY) == ETAG
        assert compute_etag(BODY.encode("utf-8")) == ETAG

    def test_changes_with_content(self) -> None:
        assert compute_etag(BODY) != compute_etag(BODY + "khanacademy.org\n")


class TestEtagMatches:
    """Tests for If-None-Match comparison."""

    @pytest.mark.parametrize(
        "header",
        [
            ETAG,
            f"W/{ETAG}",
            f'"other", {ETAG}',
            f' "a" ,W/{ETAG} ',
            "*",
        ],
    )
    def test_matches(self, header: str) -> None:
        assert etag_matches(header, ETAG) is True

    @pytest.mark.parametrize("header", [None, "", '"other"', ETAG.strip('"')])
    def test_no_match(self, header) -> None:
        assert etag_matches(header, ETAG) is False


class TestConditionalResponse:
    """Tests for conditional_response."""

    def test_full_response(self) -> None:
        response = conditional_response(BODY, None)

        assert response.status_code == 200
        assert response.body == BODY.encode("utf-8")
        assert response.headers["etag"] == ETAG
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["content-type"].startswith("text/plain")

    def test_not_modified(self) -> None:
        response = conditional_response(BODY, ETAG)

        assert response.status_code == 304
        assert response.body == b""
        assert response.headers["etag"] == ETAG

    def test_extra_headers(self) -> None:
        response = conditional_response(
            b"{}", '"stale"', media_type="application/json", headers={"X-Test": "1"}
        )

        assert response.status_code == 200
        assert response.headers["x-test"] == "1"
        assert response.headers["content-type"] == "application/json"
