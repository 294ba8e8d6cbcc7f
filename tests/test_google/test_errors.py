"""Tests for the response body helpers shared by the token endpoint and the Gmail client."""

import httpx
import pytest

from src.google.errors import UpstreamRejected, json_object, response_error_message


class TestResponseErrorMessage:
    def test_gmail_api_shape(self) -> None:
        response = httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
        assert response_error_message(response) == "Not Found"

    def test_oauth_shape_prefers_description(self) -> None:
        response = httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad code"})
        assert response_error_message(response) == "Bad code"

    def test_oauth_shape_without_description(self) -> None:
        response = httpx.Response(401, json={"error": "invalid_client"})
        assert response_error_message(response) == "invalid_client"

    def test_plain_text_body(self) -> None:
        assert response_error_message(httpx.Response(502, text="Bad Gateway")) == "Bad Gateway"


class TestJsonObject:
    def test_returns_object(self) -> None:
        assert json_object(httpx.Response(200, json={"a": 1})) == {"a": 1}

    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html></html>"),
        httpx.Response(200, json=[1, 2]),
        httpx.Response(200, json=None),
    ])
    def test_anything_else_is_rejected(self, response: httpx.Response) -> None:
        with pytest.raises(UpstreamRejected) as info:
            json_object(response)
        assert info.value.message == "Invalid JSON body"
        assert info.value.response is response
