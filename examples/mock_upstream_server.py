from __future__ import annotations

import json
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

# Serves both provider roles. Point `multimodal.base_url` and `reasoning.base_url`
# at http://127.0.0.1:10000 and run with `uvicorn examples.mock_upstream_server:app --port 10000`.
app = FastAPI(title="mock-upstream")


def _has_media(messages: list[dict[str, Any]]) -> bool:
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, list) and any(
            isinstance(block, dict) and block.get("type") in ("image_url", "input_audio", "video_url")
            for block in content
        ):
            return True
    return False


def _chunk(model: str, completion_id: str, delta: dict[str, Any], **extra: Any) -> str:
    payload = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": None}],
        **extra,
    }
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@app.post("/chat/completions")
async def chat_completions(request: Request):
    if not request.headers.get("authorization", "").startswith("Bearer "):
        return JSONResponse({"error": {"message": "Incorrect API key provided"}}, status_code=401)

    payload = await request.json()
    messages: list[dict[str, Any]] = payload.get("messages") or []
    model = payload.get("model") or "demo-model"
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"

    if not payload.get("stream"):
        return JSONResponse(
            {
                "id": completion_id,
                "object": "chat.completion",
                "created": int(time.time()),
                "model": model,
                "choices": [{"index": 0, "message": {"role": "assistant", "content": "演示对话"}, "finish_reason": "stop"}],
            }
        )

    media = _has_media(messages)

    async def gen():
        if not media:
            yield _chunk(model, completion_id, {"reasoning_content": "先想一想。"})
        answer = "这是一张示例图片。" if media else "你好！"
        for part in (answer[: len(answer) // 2], answer[len(answer) // 2 :]):
            yield _chunk(model, completion_id, {"content": part})
        usage = {"prompt_tokens": 12, "completion_tokens": 6, "total_tokens": 18}
        yield _chunk(model, completion_id, {}, usage=usage)
        yield "data: [DONE]\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")
