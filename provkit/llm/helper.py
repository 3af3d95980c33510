import ast
import json
from typing import Any

import orjson

from provkit.types import ContentPartType, ChatMessage, Tool, ToolChoice, Usage
from provkit.utils.tojson import to_json


def _get_val(obj: Any, key: str) -> Any:
    """Get value from dict or object attribute safely."""
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def parse_json_tool_args(args: Any) -> dict[str, Any]:
    """
    Parse tool arguments from various formats (dict, JSON string, python-dict string) into a dictionary.

    Handles:
    - Already a dict
    - JSON string
    - Python literal string (some local models emit single-quoted dicts)
    - Empty or None inputs
    """
    if isinstance(args, dict):
        return args

    if not args or not isinstance(args, str):
        return {}

    try:
        value = json.loads(args)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError:
        pass

    try:
        if args.strip().startswith("{") and args.strip().endswith("}"):
            val = ast.literal_eval(args)
            if isinstance(val, dict):
                return val
    except (ValueError, SyntaxError, MemoryError, RecursionError):
        pass

    return {"__raw_arguments__": args}


def serialize_tool_args(args: Any) -> str:
    """Arguments as a JSON string; strings are passed through verbatim."""
    if isinstance(args, str):
        return args
    if args is None:
        return "{}"
    return to_json(args)


def is_valid_json(text: str) -> bool:
    try:
        orjson.loads(text)
    except orjson.JSONDecodeError:
        return False
    return True


def normalize_usage(usage_data: Any) -> Usage | None:
    """
    Normalize provider usage blocks to prompt/completion/total counts.

    Accepts OpenAI-style (prompt_tokens/completion_tokens), Anthropic-style
    (input_tokens/output_tokens plus cache counters, which are added to the
    prompt side) and Ollama-style (prompt_eval_count/eval_count) payloads.
    """
    if not usage_data:
        return None

    def get(*keys: str) -> int | None:
        for key in keys:
            value = _get_val(usage_data, key)
            if value is not None:
                return int(value)
        return None

    prompt = get("prompt_tokens", "input_tokens", "prompt_eval_count", "promptTokenCount")
    completion = get(
        "completion_tokens", "output_tokens", "eval_count", "candidatesTokenCount"
    )
    if prompt is None and completion is None:
        return None

    cache_keys = ("cache_read_input_tokens", "cache_creation_input_tokens")
    cached = sum(get(k) or 0 for k in cache_keys)
    prompt = (prompt or 0) + cached

    total = get("total_tokens", "totalTokenCount")
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion or 0,
        total_tokens=total if total else prompt + (completion or 0),
    )


# ═══════════════════════════════════════════════════════════════════════
# OpenAI wire format (shared by OpenAI, Qwen, Cerebras, OpenRouter and
# Ollama's /v1 endpoint)
# ═══════════════════════════════════════════════════════════════════════


def to_openai_message(message: ChatMessage) -> dict[str, Any]:
    item: dict[str, Any] = {"role": message.role}

    images = [p for p in message.parts if p.type != ContentPartType.TEXT]
    if images:
        content: list[dict[str, Any]] = []
        if message.content:
            content.append({"type": "text", "text": message.content})
        for part in message.parts:
            if part.type == ContentPartType.TEXT:
                if part.text and not message.content:
                    content.append({"type": "text", "text": part.text})
            elif part.type == ContentPartType.IMAGE_BASE64:
                url = f"data:{part.media_type or 'image/png'};base64,{part.data}"
                content.append({"type": "image_url", "image_url": {"url": url}})
            else:
                content.append({"type": "image_url", "image_url": {"url": part.url}})
        item["content"] = content
    else:
        item["content"] = message.text()

    if message.tool_calls:
        item["tool_calls"] = [call.to_dict() for call in message.tool_calls]
        if not item["content"]:
            item["content"] = None
    if message.role == "tool" and message.tool_call_id:
        item["tool_call_id"] = message.tool_call_id
    return item


def to_openai_tools(tools: list[Tool]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def to_openai_tool_choice(choice: ToolChoice | None) -> Any:
    if choice is None:
        return None
    if choice.mode == "function":
        return {"type": "function", "function": {"name": choice.name}}
    return choice.mode


def parse_response_format(response_format: str | None) -> str | dict[str, Any] | None:
    """
    Interpret a structured-output request.

    Returns ``"json"`` for the literal JSON mode (any case), the parsed dict
    when the value is a serialized JSON object, otherwise None.
    """
    if not response_format:
        return None
    text = response_format.strip()
    if text.lower() == "json":
        return "json"
    try:
        value = orjson.loads(text)
    except orjson.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def to_openai_response_format(response_format: str | None) -> dict[str, Any] | None:
    parsed = parse_response_format(response_format)
    if parsed is None:
        return None
    if parsed == "json":
        return {"type": "json_object"}
    return {"type": "json_schema", "json_schema": {"name": "response", "schema": parsed}}


__all__ = [
    "parse_json_tool_args",
    "serialize_tool_args",
    "is_valid_json",
    "normalize_usage",
    "to_openai_message",
    "to_openai_tools",
    "to_openai_tool_choice",
    "parse_response_format",
    "to_openai_response_format",
]
