"""
Skill 执行器：search / fetch / build / todos / virtual_terminal。

说明：
- search/fetch 通过 httpx 发起 GET（可注入 `httpx.AsyncClient`，测试使用 `httpx.MockTransport`）；
- build/virtual_terminal 复用 `tools.command.run_shell_command`；
- todos 复用工具层的逐行正则扫描；
- 执行器永不抛异常：失败统一表示为 `status=error` 的 SkillResult。
"""

from __future__ import annotations

import html
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qs, urljoin, urlparse

import httpx

from yips_agent.core.utils import resolve_in_workspace
from yips_agent.tools.command import DEFAULT_MAX_OUTPUT_BYTES, run_shell_command
from yips_agent.tools.executor import scan_matching_lines
from yips_agent.tools.protocol import SkillCall, SkillResult

logger = logging.getLogger(__name__)

SEARCH_ENDPOINT = "https://duckduckgo.com/html/"
USER_AGENT = "yips/0"
MAX_SKILL_TIMEOUT_MS = 300_000
DEFAULT_TODO_PATTERN = "TODO|FIXME|HACK|BUG"

_SCRIPT_RE = re.compile(r"<script\b[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style\b[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_RESULT_ANCHOR_RE = re.compile(
    r'<a\b[^>]*class="[^"]*result__a[^"]*"[^>]*href="([^"]+)"[^>]*>([\s\S]*?)</a>', re.IGNORECASE
)


def _str_arg(args: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _int_arg(args: Dict[str, Any], key: str, *, default: int, cap: int) -> int:
    value = args.get(key)
    if isinstance(value, str):
        try:
            value = int(value.strip(), 10)
        except ValueError:
            return default
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return default
    return min(value, cap)


def html_to_text(raw: str) -> str:
    """去掉 script/style 与标签，解码实体并压缩空白。"""

    text = _TAG_RE.sub(" ", _STYLE_RE.sub(" ", _SCRIPT_RE.sub(" ", raw or "")))
    return re.sub(r"\s+", " ", html.unescape(text)).strip()


def _decode_result_href(href: str) -> str:
    absolute = urljoin(SEARCH_ENDPOINT, html.unescape(href))
    parsed = urlparse(absolute)
    if (parsed.hostname or "").endswith("duckduckgo.com") and parsed.path == "/l/":
        target = parse_qs(parsed.query).get("uddg")
        if target and target[0].strip():
            return target[0]
    return absolute


def parse_search_results(page: str, max_results: int) -> List[Dict[str, str]]:
    """从 DuckDuckGo HTML 结果页提取 `{title, url}`。"""

    out: List[Dict[str, str]] = []
    for match in _RESULT_ANCHOR_RE.finditer(page or ""):
        if len(out) >= max_results:
            break
        title = html_to_text(match.group(2))
        url = _decode_result_href(match.group(1))
        if title and url:
            out.append({"title": title, "url": url})
    return out


def detect_build_command(cwd: Path) -> str:
    """根据项目文件推断构建命令（package.json → npm，Makefile → make）。"""

    if (cwd / "package.json").exists():
        return "npm run build"
    if (cwd / "Makefile").exists():
        return "make"
    return "npm run build"


class SkillRunner:
    """
    会话级 skill 执行器。

    参数：
    - workspace_root：相对路径的解析基准
    - http_client：可选；共享的 httpx.AsyncClient（None 时每次请求临时创建）
    - http_timeout_sec：临时 client 的超时
    - max_output_bytes：命令类 skill 的输出保留上限
    """

    def __init__(
        self,
        *,
        workspace_root: Path,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout_sec: float = 20.0,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        self._root = Path(workspace_root).resolve()
        self._client = http_client
        self._http_timeout_sec = http_timeout_sec
        self._max_output_bytes = max_output_bytes

    async def execute(self, calls: Sequence[SkillCall]) -> List[SkillResult]:
        """按顺序执行，输出与输入同序同数量。"""

        results: List[SkillResult] = []
        for call in calls:
            try:
                results.append(await self._execute_one(call))
            except (httpx.HTTPError, OSError) as exc:
                results.append(self._result(call, "error", f"{call.name} skill failed: {exc}"))
            except Exception as exc:
                logger.warning("Skill %s (%s) raised unexpectedly", call.name, call.id, exc_info=True)
                results.append(self._result(call, "error", f"{call.name} skill failed: {exc}"))
        return results

    @staticmethod
    def _result(call: SkillCall, status: str, output: str, metadata: Optional[Dict[str, Any]] = None) -> SkillResult:
        return SkillResult(call_id=call.id, skill=call.name, status=status, output=output, metadata=metadata)

    async def _execute_one(self, call: SkillCall) -> SkillResult:
        if call.name == "search":
            return await self._search(call)
        if call.name == "fetch":
            return await self._fetch(call)
        if call.name == "build":
            return await self._build(call)
        if call.name == "todos":
            return self._todos(call)
        if call.name == "virtual_terminal":
            return await self._virtual_terminal(call)
        return self._result(call, "error", f"Unsupported skill: {call.name}")

    async def _get(self, url: str, *, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        headers = {"user-agent": USER_AGENT}
        if self._client is not None:
            return await self._client.get(url, params=params, headers=headers)
        async with httpx.AsyncClient(timeout=self._http_timeout_sec, follow_redirects=True) as client:
            return await client.get(url, params=params, headers=headers)

    async def _search(self, call: SkillCall) -> SkillResult:
        query = _str_arg(call.arguments, "query", "q")
        if query is None:
            return self._result(call, "error", "search skill requires a non-empty 'query' argument.")
        max_results = _int_arg(call.arguments, "maxResults", default=5, cap=10)
        resp = await self._get(SEARCH_ENDPOINT, params={"q": query})
        if resp.status_code >= 400:
            return self._result(call, "error", f"search skill failed: HTTP {resp.status_code} {resp.reason_phrase}")
        found = parse_search_results(resp.text, max_results)
        if not found:
            return self._result(call, "ok", f"No search results found for: {query}", {"count": 0})
        lines = [f"Search results for: {query}"]
        for idx, item in enumerate(found, start=1):
            lines.append(f"{idx}. {item['title']}")
            lines.append(f"   {item['url']}")
        return self._result(call, "ok", "\n".join(lines), {"count": len(found)})

    async def _fetch(self, call: SkillCall) -> SkillResult:
        raw_url = _str_arg(call.arguments, "url")
        if raw_url is None:
            return self._result(call, "error", "fetch skill requires a non-empty 'url' argument.")
        parsed = urlparse(raw_url)
        if not parsed.scheme or not parsed.netloc:
            return self._result(call, "error", "fetch skill requires a valid absolute URL.")
        if parsed.scheme not in ("http", "https"):
            return self._result(call, "error", "fetch skill only supports http/https URLs.")

        max_chars = _int_arg(call.arguments, "maxChars", default=6000, cap=20000)
        resp = await self._get(raw_url)
        if resp.status_code >= 400:
            return self._result(call, "error", f"fetch skill failed: HTTP {resp.status_code} {resp.reason_phrase}")

        content_type = resp.headers.get("content-type", "unknown")
        text = html_to_text(resp.text)
        clipped = text[:max_chars]
        lines = [f"Fetched: {raw_url}", f"Content-Type: {content_type}", "", clipped or "(empty response body)"]
        truncated = len(clipped) < len(text)
        if truncated:
            lines.extend(["", f"[truncated at {max_chars} chars]"])
        return self._result(call, "ok", "\n".join(lines), {"url": raw_url, "truncated": truncated})

    async def _run(self, call: SkillCall, command: str, *, default_timeout_ms: int, prefix: str = "") -> SkillResult:
        cwd = resolve_in_workspace(self._root, _str_arg(call.arguments, "cwd") or ".")
        timeout_ms = _int_arg(call.arguments, "timeoutMs", default=default_timeout_ms, cap=MAX_SKILL_TIMEOUT_MS)
        run = await run_shell_command(command, cwd=cwd, timeout_ms=timeout_ms, max_output_bytes=self._max_output_bytes)
        if run.exit_code == 0:
            status = "ok"
        elif run.timed_out:
            status = "timeout"
        else:
            status = "error"
        output = f"{prefix}{run.output}".strip() if prefix else run.output
        meta = {"cwd": str(cwd), "command": command, "exitCode": run.exit_code, "timedOut": run.timed_out}
        return self._result(call, status, output, meta)

    async def _build(self, call: SkillCall) -> SkillResult:
        cwd = resolve_in_workspace(self._root, _str_arg(call.arguments, "cwd") or ".")
        command = _str_arg(call.arguments, "command") or detect_build_command(cwd)
        return await self._run(call, command, default_timeout_ms=120_000, prefix=f"Build command: {command}\n")

    async def _virtual_terminal(self, call: SkillCall) -> SkillResult:
        command = _str_arg(call.arguments, "command")
        if command is None:
            return self._result(call, "error", "virtual_terminal skill requires a non-empty 'command' argument.")
        return await self._run(call, command, default_timeout_ms=60_000)

    def _todos(self, call: SkillCall) -> SkillResult:
        target = resolve_in_workspace(self._root, _str_arg(call.arguments, "path") or ".")
        pattern = _str_arg(call.arguments, "pattern") or DEFAULT_TODO_PATTERN
        max_matches = _int_arg(call.arguments, "maxMatches", default=200, cap=2000)
        meta = {"path": str(target), "pattern": pattern, "maxMatches": max_matches}
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            return self._result(call, "error", f"todos skill failed: invalid pattern: {exc}", meta)
        if not target.exists():
            return self._result(call, "error", f"todos skill failed: path does not exist: {target}", meta)
        lines = scan_matching_lines(target, regex, max_matches=max_matches)
        return self._result(call, "ok", "\n".join(lines) if lines else "No TODO markers found.", meta)
