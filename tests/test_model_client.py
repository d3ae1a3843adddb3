# -*- coding: utf-8 -*-

import pytest
import requests

from rlm.errors import CompletionError
from rlm.model_client import OpenAICompatClient


class FakeResponse:
    def __init__(self, status_code, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


OK = {
    "model": "local-model",
    "choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}],
    "usage": {"total_tokens": 12},
}


def _client(responses, **kwargs):
    session = FakeSession(responses)
    kwargs.setdefault("backoff_s", 0)
    return OpenAICompatClient("http://localhost:1234", model="m1", api_key="k", session=session, **kwargs), session


def test_complete_parses_text_and_usage():
    client, session = _client([FakeResponse(200, OK)])
    out = client.complete([{"role": "user", "content": "hi"}], temperature=0.0, max_tokens=50)
    assert out["text"] == "hello"
    assert out["tokens"] == 12
    assert out["finish_reason"] == "stop"
    assert out["model"] == "local-model"
    post = session.posts[0]
    assert post["url"] == "http://localhost:1234/v1/chat/completions"
    assert post["headers"]["Authorization"] == "Bearer k"
    assert post["json"] == {"messages": [{"role": "user", "content": "hi"}], "temperature": 0.0, "max_tokens": 50, "model": "m1"}


def test_retryable_status_then_success():
    client, session = _client([FakeResponse(503, text="busy"), requests.ConnectionError("reset"), FakeResponse(200, OK)], retries=3)
    assert client.chat([{"role": "user", "content": "hi"}]) == "hello"
    assert len(session.posts) == 3


def test_client_error_is_not_retried():
    client, session = _client([FakeResponse(400, text="bad request")], retries=3)
    with pytest.raises(CompletionError) as exc:
        client.complete([{"role": "user", "content": "hi"}])
    assert exc.value.status == 400
    assert len(session.posts) == 1


def test_retries_are_bounded():
    client, session = _client([FakeResponse(429)] * 3, retries=2)
    with pytest.raises(CompletionError):
        client.complete([{"role": "user", "content": "hi"}])
    assert len(session.posts) == 3


def test_malformed_and_non_json_responses():
    client, _ = _client([FakeResponse(200, {"choices": []})])
    with pytest.raises(CompletionError):
        client.complete([])
    client, _ = _client([FakeResponse(200, None, text="<html>")])
    with pytest.raises(CompletionError):
        client.complete([])


def test_normalize_base_url():
    assert OpenAICompatClient.normalize_base_url("http://h:1/") == "http://h:1/v1"
    assert OpenAICompatClient.normalize_base_url("http://h:1/v1") == "http://h:1/v1"
