import json

import httpx
from fastapi.testclient import TestClient

from modellkoppler.app import create_app
from modellkoppler.config import RelayConfig


def _make_cfg(**overrides: object) -> RelayConfig:
    raw: dict[str, object] = {
        "multimodal": {"base_url": "https://mm.test/v1", "api_key": "sk-mm"},
        "reasoning": {"base_url": "https://rs.test", "api_key": "sk-rs"},
    }
    raw.update(overrides)
    return RelayConfig.model_validate(raw)


def _client(handler, **overrides: object) -> TestClient:
    app = create_app(cfg=_make_cfg(**overrides), transport=httpx.MockTransport(handler))
    return TestClient(app)


def _sse_events(text: str) -> list[str]:
    return [block[len("data: ") :] for block in text.split("\n\n") if block.startswith("data: ")]


def test_chat_streams_sse_with_proxy_safe_headers() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        body = (
            'data: {"choices":[{"delta":{"content":"你好"}}]}\n\n'
            'data: {"choices":[],"usage":{"total_tokens":4}}\n\n'
            "data: [DONE]\n\n"
        )
        return httpx.Response(200, content=body.encode("utf-8"))

    response = _client(handler).post("/chat", json={"messages": [{"role": "user", "content": "hello"}]})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"
    events = _sse_events(response.text)
    assert [json.loads(e) for e in events[:-1]] == [
        {"content": "你好", "has_reasoning": False},
        {"usage": {"total_tokens": 4}},
    ]
    assert events[-1] == "[DONE]"


def test_upstream_401_returns_json_error_without_event_stream() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Authentication Fails"}})

    response = _client(handler).post("/chat", json={"messages": [{"role": "user", "content": "hello"}]})

    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"error": "身份验证失败，请检查API密钥是否正确，或联系服务商确认您的账户状态"}


def test_empty_messages_is_400() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        raise AssertionError("no upstream call expected")

    client = _client(handler)

    assert client.post("/chat", json={"messages": []}).status_code == 400
    assert client.post("/chat", json={"messages": []}).json() == {"error": "无效的消息格式"}
    assert client.post("/chat", content=b"{not json", headers={"content-type": "application/json"}).status_code == 400


def test_missing_credentials_is_500_json() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        raise AssertionError("no upstream call expected")

    response = _client(handler, reasoning={"api_key": None}).post(
        "/chat", json={"messages": [{"role": "user", "content": "hello"}]}
    )

    assert response.status_code == 500
    assert "error" in response.json()


def test_media_stage1_failure_is_streamed_as_error_frame() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "mm.test"
        return httpx.Response(200, content=b'data: {"error":{"message":"bad media"}}\n\n')

    response = _client(handler, deep_analysis=True).post(
        "/chat",
        json={"messages": [{"role": "user", "content": "看图"}], "media": {"type": "image", "data": "QUJD"}},
    )

    assert response.status_code == 200
    assert _sse_events(response.text) == [json.dumps({"error": "媒体处理失败: bad media"}, ensure_ascii=False), "[DONE]"]


def test_title_success() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  猫的图片  "}}]})

    response = _client(handler).post(
        "/chat/title",
        json={"messages": [{"role": "user", "content": "这是什么？"}, {"role": "assistant", "content": "一只猫"}]},
    )

    assert response.status_code == 200
    assert response.json() == {"title": "猫的图片"}
    body = seen["body"]
    assert body["model"] == "deepseek-chat"
    assert body["max_tokens"] == 50
    assert body["temperature"] == 0.5
    assert body["stream"] is False
    assert "user: 这是什么？" in body["messages"][1]["content"]
    assert "assistant: 一只猫" in body["messages"][1]["content"]


def test_title_failure_still_returns_200_with_default_title() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "server exploded"}})

    response = _client(handler).post("/chat/title", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == 200
    assert response.json() == {"error": "生成标题失败", "title": "新对话"}


def test_title_for_empty_messages_skips_provider() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        raise AssertionError("no upstream call expected")

    client = _client(handler)

    assert client.post("/chat/title", json={"messages": []}).json() == {"title": "新对话"}
    assert client.post("/chat/title", content=b"oops").json() == {"title": "新对话"}


def test_healthz_reports_provider_configuration() -> None:
    response = _client(lambda _request: httpx.Response(200), multimodal={"api_key": None}).get("/healthz")

    payload = response.json()
    assert response.status_code == 200
    assert payload["providers"]["multimodal"] == {"model": "qwen-omni-turbo", "configured": False}
    assert payload["providers"]["reasoning"]["configured"] is True
