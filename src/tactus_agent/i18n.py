"""User-facing strings in English and Simplified Chinese."""

from __future__ import annotations

from typing import Any

DEFAULT_LANGUAGE = "en"

_EN: dict[str, str] = {
    # Failures shown to the user
    "error.timeout": "The request timed out.",
    "error.network_error": "Network connection failed. Check your connection and try again.",
    "error.auth_error": "Authentication failed. Check the API key.",
    "error.rate_limit": "Too many requests. Please wait a moment.",
    "error.quota_exceeded": "The API quota is exhausted. Check your plan or billing.",
    "error.model_not_found": "The selected model was not found.",
    "error.invalid_request": "The request was rejected as invalid.",
    "error.server_error": "The model server returned an error.",
    "error.tool_parse_error": "The model produced tool arguments that could not be parsed.",
    "error.tool_execution_error": "A tool failed to run.",
    "error.unknown": "Something went wrong.",
    # Progress
    "retry.countdown": "Retrying in {seconds}s ({attempt}/{total})",
    "tool.retry": "Tool call failed, asking the model again ({count}/{budget})",
    # Tool status
    "tool.extract_page_content": "Extracting page content...",
    "tool.activate_skill": "Activating skill...",
    "tool.activate_skill.named": "Activating skill: {skill_name}...",
    "tool.execute_skill_script": "Running script...",
    "tool.execute_skill_script.named": "Running script: {skill_name}/{script_path}...",
    "tool.read_skill_file": "Reading file...",
    "tool.read_skill_file.named": "Reading file: {skill_name}/{file_path}...",
    "tool.default": "Running {name}...",
}

_ZH_CN: dict[str, str] = {
    "error.timeout": "请求超时。",
    "error.network_error": "网络连接失败，请检查网络后重试。",
    "error.auth_error": "认证失败，请检查 API Key。",
    "error.rate_limit": "请求过于频繁，请稍后再试。",
    "error.quota_exceeded": "API 额度已用尽，请检查套餐或账单。",
    "error.model_not_found": "未找到所选模型。",
    "error.invalid_request": "请求无效，已被拒绝。",
    "error.server_error": "模型服务返回错误。",
    "error.tool_parse_error": "模型生成的工具参数无法解析。",
    "error.tool_execution_error": "工具执行失败。",
    "error.unknown": "发生未知错误。",
    "retry.countdown": "{seconds} 秒后重试（{attempt}/{total}）",
    "tool.retry": "工具调用失败，正在重新请求模型（{count}/{budget}）",
    "tool.extract_page_content": "正在提取网页内容...",
    "tool.activate_skill": "正在激活 Skill...",
    "tool.activate_skill.named": "正在激活 Skill: {skill_name}...",
    "tool.execute_skill_script": "正在执行脚本...",
    "tool.execute_skill_script.named": "正在执行脚本: {skill_name}/{script_path}...",
    "tool.read_skill_file": "正在读取文件...",
    "tool.read_skill_file.named": "正在读取文件: {skill_name}/{file_path}...",
    "tool.default": "正在执行 {name}...",
}

_TABLES: dict[str, dict[str, str]] = {
    "en": _EN,
    "zh-CN": _ZH_CN,
}


def has_key(key: str) -> bool:
    return key in _EN


def t(key: str, language: str | None = None, /, **fmt: Any) -> str:
    """Look up *key* for *language*, falling back to English, then the key."""
    table = _TABLES.get(language or DEFAULT_LANGUAGE, _EN)
    text = table.get(key) or _EN.get(key) or key
    if fmt:
        return text.format(**fmt)
    return text
