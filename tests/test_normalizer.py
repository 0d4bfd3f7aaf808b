"""Tests for ResponseNormalizer."""

from postpro.models import RawResponse
from postpro.normalizer import ResponseNormalizer


def _raw(headers=None, body_text="", status=200, elapsed_ms=7.5) -> RawResponse:
    return RawResponse(
        status=status,
        status_text="OK",
        headers=headers or {},
        body_text=body_text,
        elapsed_ms=elapsed_ms,
    )


class TestNormalize:
    def test_json_content_type_parses(self):
        response = ResponseNormalizer().normalize(
            _raw({"Content-Type": "application/json; charset=utf-8"}, '{"a": [1, 2]}')
        )
        assert response.body == {"a": [1, 2]}
        assert response.body_text == '{"a": [1, 2]}'

    def test_invalid_json_falls_back_to_text(self):
        response = ResponseNormalizer().normalize(_raw({"content-type": "application/json"}, "{oops"))
        assert response.body == "{oops"

    def test_other_content_types_stay_text(self):
        response = ResponseNormalizer().normalize(_raw({"Content-Type": "text/plain"}, '{"a": 1}'))
        assert response.body == '{"a": 1}'

    def test_size_is_utf8_bytes(self):
        response = ResponseNormalizer().normalize(_raw(body_text="héllo"))
        assert response.size == 6

    def test_duration_defaults_to_elapsed(self):
        assert ResponseNormalizer().normalize(_raw()).duration == 7.5

    def test_duration_override(self):
        assert ResponseNormalizer().normalize(_raw(), duration_ms=99.0).duration == 99.0

    def test_header_lookup_is_case_insensitive(self):
        response = ResponseNormalizer().normalize(_raw({"X-Request-Id": "abc"}))
        assert response.header("x-request-id") == "abc"
        assert "X-Request-Id" in response.headers
        assert response.header("missing") is None
