import asyncio

import httpx

from persona_chat.llm.gemini import GeminiAdapter, VertexAdapter
from persona_chat.llm.openai_compat import GrokAdapter, OpenAIAdapter
from persona_chat.models import ApiConfig
from persona_chat.tokenizer_service import IMAGE_PART_TOKENS, TokenizerService, serialize_chat_messages


def _count(handler, adapter, api_config, payload):
    async def _run():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        svc = TokenizerService(client=client)
        try:
            return await svc.count_tokens(payload, adapter, api_config)
        finally:
            await svc.aclose()

    return asyncio.run(_run())


def test_remote_gemini_count():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"totalTokens": 321})

    n = _count(handler, GeminiAdapter(), ApiConfig(api_key="k", model="gemini-2.5-pro"), {"contents": []})
    assert n == 321
    assert ":countTokens?key=k" in seen["url"]


def test_remote_failure_counts_as_zero():
    def handler(request):
        return httpx.Response(500, json={"error": {"message": "boom"}})

    assert _count(handler, GeminiAdapter(), ApiConfig(api_key="k", model="m"), {"contents": []}) == 0


def test_non_object_body_counts_as_zero():
    def handler(request):
        return httpx.Response(200, json=[1, 2, 3])

    assert _count(handler, GeminiAdapter(), ApiConfig(api_key="k", model="m"), {"contents": []}) == 0


def test_transport_error_counts_as_zero():
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    assert _count(handler, VertexAdapter(), ApiConfig(access_token="t", project_id="p", model="m"), {"contents": []}) == 0


def test_missing_credentials_skip_remote_call():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"totalTokens": 5})

    assert _count(handler, GeminiAdapter(), ApiConfig(api_key="", model="m"), {"contents": []}) == 0
    assert calls == []


def test_grok_counts_token_ids():
    seen = {}

    def handler(request):
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={"token_ids": [{"token_id": 1}, {"token_id": 2}, {"token_id": 3}]})

    payload = {"messages": [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]}
    assert _count(handler, GrokAdapter(), ApiConfig(api_key="k", model="grok-4"), payload) == 3
    assert "System: sys<|separator|>" in seen["body"]
    assert "Human: hi<|separator|>" in seen["body"]


def test_local_count_uses_heuristic_without_encoding():
    svc = TokenizerService(chars_per_token=4.0)
    svc._encodings["m"] = None
    payload = {"messages": [{"role": "user", "content": [{"type": "text", "text": "x" * 40}, {"type": "image_url", "image_url": {"url": "data:"}}]}]}
    text = serialize_chat_messages(payload["messages"])
    expected = int(len(text) / 4.0) + IMAGE_PART_TOKENS
    assert svc.count_local(payload, "m") == expected
    n = asyncio.run(svc.count_tokens(payload, OpenAIAdapter(), ApiConfig(api_key="k", model="m")))
    assert n == expected


def test_serialize_chat_messages():
    out = serialize_chat_messages([{"role": "system", "content": "S"}, {"role": "user", "content": "U"}])
    assert out == "<|im_start|>system<|im_sep|>S<|im_end|><|im_start|>user<|im_sep|>U<|im_end|><|im_start|>assistant"
