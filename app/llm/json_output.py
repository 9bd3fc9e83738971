"""
LLM JSON 输出解析：容忍代码块包裹、前后说明文字、尾逗号等常见畸形
"""

import json
import re

import structlog
from json_repair import repair_json

log = structlog.get_logger()

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def parse_json_object(raw: str) -> dict:
    """
    去掉 Markdown 围栏 → 截取第一个 {...} → json-repair 修复 → json.loads

    Raises:
        ValueError: 修复后仍然不是 JSON 对象
    """
    cleaned = _FENCE_RE.sub("", raw.strip())
    match = _JSON_OBJECT_RE.search(cleaned)
    if match:
        cleaned = match.group()

    try:
        data = json.loads(repair_json(cleaned, return_objects=False))
    except json.JSONDecodeError as e:
        log.warning("LLM 输出 JSON 解析失败", raw_preview=raw[:200], error=str(e))
        raise ValueError(f"JSON 修复失败: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"期望 JSON 对象，实际得到 {type(data).__name__}")
    return data
