import json
import urllib.error
import urllib.request
from typing import Any


def _responses_api_call(payload: dict[str, Any], *, base_url: str, api_key: str, timeout: int = 45) -> dict[str, Any]:
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not configured")
    req = urllib.request.Request(
        f"{base_url.rstrip('/')}/v1/responses",
        data=json.dumps(payload).encode("utf-8"),
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else str(e)
        raise RuntimeError(f"OpenAI HTTP {getattr(e, 'code', '?')}: {body}") from e


def _extract_output_text(res: dict[str, Any]) -> str:
    # The first message's output_text carries the structured JSON.
    for out in (res.get("output") or []):
        if out.get("type") == "message":
            for c in (out.get("content") or []):
                if c.get("type") in {"output_text", "text"} and isinstance(c.get("text"), str):
                    return c["text"]
    if isinstance(res.get("output_text"), str):
        return res["output_text"]
    raise RuntimeError("OpenAI response did not contain output_text")


def structured_completion(config: dict, *, name: str, schema: dict[str, Any], prompt: str) -> dict[str, Any]:
    """
    One prompt, one JSON object back, shaped by a strict json_schema.

    Raises RuntimeError on transport, HTTP, or decoding failures.
    """
    payload = {
        "model": config["model"],
        "input": [{"role": "user", "content": [{"type": "input_text", "text": prompt}]}],
        "text": {"format": {"type": "json_schema", "name": name, "strict": True, "schema": schema}},
    }
    try:
        res = _responses_api_call(payload, base_url=config["base_url"], api_key=config["api_key"])
    except (urllib.error.URLError, OSError) as e:
        raise RuntimeError(f"OpenAI request failed: {e}") from e
    out_text = _extract_output_text(res)
    try:
        obj = json.loads(out_text)
    except ValueError as e:
        raise RuntimeError("OpenAI output was not valid JSON") from e
    if not isinstance(obj, dict):
        raise RuntimeError("OpenAI output was not a JSON object")
    return obj
