"""OpenAI 兼容接口的 ModelSession 适配器。

本模块负责：

1. 接收统一的 ModelRequest。
2. 将其转换为 /chat/completions 的 HTTP 请求（结构化输出走 json_schema response_format）。
3. 驱动工具调用回合（最多 max_tool_rounds 轮），工具结果回填给模型。
4. 解析 SSE 流，把不完整的 JSON 补全为字段快照（StreamUpdate）。
5. 将 HTTP/网络异常映射为错误分类表中的 ChatError。

OpenAI 与 Ollama 的 OpenAI 兼容端点都由这个类处理，差异只在 registry 配置。
"""

import json
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from chat_core.domain.exceptions import ChatError
from chat_core.domain.models import ChatTurn, ModelRequest, StreamUpdate
from chat_core.domain.taxonomy import ErrorKind, kind_for_http_status
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.registry import ModelConfig, ProviderConfig, get_model_config
from chat_core.tools.definitions import ToolCall
from chat_core.tools.executor import ToolExecutor


_PARTIAL_ESCAPE = re.compile(r"\\(u[0-9a-fA-F]{0,3})?$")


class OpenAICompatSession:
    """OpenAI 兼容的模型会话。

    - name: Provider 名称（供日志使用）。
    - instructions: 会话级 system prompt，在每次请求最前面发送。
    """

    def __init__(self, settings, provider: ProviderConfig, instructions: str = "", model: Optional[str] = None):
        # Settings 里包含 api_key、超时、工具轮数等配置
        self._settings = settings
        self._provider = provider
        self._model: ModelConfig = get_model_config(provider, model or settings.default_model)
        self.name = provider.name
        self.instructions = instructions
        if provider.requires_api_key and not getattr(settings, "model_api_key", None):
            # 配置缺失视为会话无法创建，交给恢复流程走 SystemRestart
            raise ChatError(ErrorKind.SESSION_INIT_FAILED, "MODEL_API_KEY not set")

    # ------------------------------------------------------------------
    # 公共接口
    # ------------------------------------------------------------------

    async def respond(self, request: ModelRequest) -> Dict[str, Any]:
        """执行一次非流式调用，返回结构化回复的字段字典。"""

        messages = self._build_messages(request)
        content = await self._complete_with_tools(request, messages)
        return self._decode_content(content, request)

    async def stream_response(self, request: ModelRequest) -> AsyncIterator[StreamUpdate]:
        """流式调用，逐步产出字段快照，最后一条 complete=True。

        携带工具时先在非流式回合中完成工具调用，再把最终回复在本地切片输出。
        """

        if request.tools:
            fields = await self.respond(request)
            content = str(fields.get("content") or "")
            size = max(1, int(getattr(self._settings, "stream_chunk_size", 32)))
            for end in range(size, len(content) + size, size):
                yield StreamUpdate(fields={"content": content[:end]})
            yield StreamUpdate(fields=fields, complete=True)
            return

        payload = self._build_payload(request, self._build_messages(request))
        payload["stream"] = True
        buffer: List[str] = []
        finished = False
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", self._url(), json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise self._error_from_response(resp.status_code, resp.text)
                    async for line in resp.aiter_lines():
                        data_str = _sse_data(line)
                        if data_str is None:
                            continue
                        if data_str == "[DONE]":
                            finished = True
                            break
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        delta, finish_reason = _parse_stream_chunk(chunk)
                        if finish_reason == "content_filter":
                            raise ChatError(ErrorKind.GUARDRAIL_VIOLATION, "response blocked by content filter")
                        if delta:
                            buffer.append(delta)
                            snapshot = self._snapshot("".join(buffer), request)
                            if snapshot:
                                yield StreamUpdate(fields=snapshot)
                        if finish_reason:
                            finished = True
                            break
        except httpx.RequestError as e:
            raise ChatError(ErrorKind.NETWORK_UNAVAILABLE, str(e), cause=e)
        if not finished:
            raise ChatError(ErrorKind.DECODING_FAILURE, "stream ended before completion")
        yield StreamUpdate(fields=self._decode_content("".join(buffer), request), complete=True)

    # ------------------------------------------------------------------
    # 请求构造
    # ------------------------------------------------------------------

    def _build_messages(self, request: ModelRequest) -> List[Dict[str, Any]]:
        msgs: List[Dict[str, Any]] = []
        if self.instructions:
            msgs.append({"role": "system", "content": self.instructions})
        msgs.extend(self._turn_to_payload(turn) for turn in request.history)
        msgs.append({"role": "user", "content": request.prompt})
        return msgs

    def _build_payload(
        self,
        request: ModelRequest,
        messages: List[Dict[str, Any]],
        with_tools: bool = False,
    ) -> Dict[str, Any]:
        """将 ModelRequest 转成 /chat/completions 所需的请求 JSON。"""

        opts = request.options
        payload: Dict[str, Any] = {
            "model": self._model.provider_model,
            "messages": messages,
            "temperature": opts.temperature if opts.temperature is not None else self._model.default_temperature,
            "max_tokens": opts.max_tokens or self._model.max_tokens,
        }
        if request.schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": request.schema.name,
                    "schema": request.schema.to_json_schema(),
                    "strict": False,
                },
            }
        if with_tools and request.tools:
            payload["tools"] = request.tools.definitions()
            payload["tool_choice"] = "auto"
        return payload

    def _url(self) -> str:
        base = getattr(self._settings, "model_base_url", None) or self._provider.base_url
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = getattr(self._settings, "model_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def _turn_to_payload(turn: ChatTurn) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": turn.role, "content": turn.content or ""}
        if turn.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in turn.tool_calls
            ]
        if turn.tool_call_id:
            payload["tool_call_id"] = turn.tool_call_id
        return payload

    # ------------------------------------------------------------------
    # 非流式调用 + 工具回合
    # ------------------------------------------------------------------

    async def _complete_with_tools(self, request: ModelRequest, messages: List[Dict[str, Any]]) -> str:
        executor: Optional[ToolExecutor] = request.tools if request.tools else None
        max_rounds = int(getattr(self._settings, "max_tool_rounds", 5))
        rounds = 0
        while True:
            # 达到轮数上限后不再开放工具，强制模型给出最终回复
            offer_tools = executor is not None and rounds < max_rounds
            payload = self._build_payload(request, messages, with_tools=offer_tools)
            data = await self._post(payload)
            message, finish_reason = _first_choice(data)
            if finish_reason == "content_filter":
                raise ChatError(ErrorKind.GUARDRAIL_VIOLATION, "response blocked by content filter")
            calls = _parse_tool_calls(message)
            if not calls or executor is None:
                return message.get("content") or ""
            rounds += 1
            messages.append(self._turn_to_payload(ChatTurn(role="assistant", content=message.get("content") or "", tool_calls=calls)))
            for call in calls:
                result = await executor.execute(call)
                logger.info(
                    "tool_call",
                    extra={"extra": {"provider": self.name, "tool": call.name, "round": rounds, "is_error": result.is_error}},
                )
                messages.append({"role": "tool", "tool_call_id": result.call_id, "content": result.content})

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(self._url(), json=payload, headers=self._headers())
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise ChatError(ErrorKind.NETWORK_UNAVAILABLE, str(e), cause=e)
        if resp.status_code >= 400:
            raise self._error_from_response(resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise ChatError(ErrorKind.DECODING_FAILURE, "response body is not JSON", cause=e)

    # ------------------------------------------------------------------
    # 响应解析
    # ------------------------------------------------------------------

    def _decode_content(self, content: str, request: ModelRequest) -> Dict[str, Any]:
        if request.schema is None:
            return {"content": content}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ChatError(ErrorKind.DECODING_FAILURE, f"malformed structured reply: {e}", cause=e)
        if not isinstance(data, dict):
            raise ChatError(ErrorKind.DECODING_FAILURE, "structured reply is not an object")
        return data

    def _snapshot(self, text: str, request: ModelRequest) -> Dict[str, Any]:
        if request.schema is None:
            return {"content": text}
        parsed = parse_partial_json(text)
        return parsed if isinstance(parsed, dict) else {}

    def _error_from_response(self, status: int, body: str) -> ChatError:
        """把 HTTP 错误响应映射为 ChatError。"""

        message, suggestion = _error_details(body)
        kind = kind_for_http_status(status, body)
        return ChatError(kind, message or f"HTTP {status}", suggestion=suggestion, http_status=status, provider=self.name)


def _sse_data(line: str) -> Optional[str]:
    if not line:
        return None
    data_str = line
    if data_str.startswith(":"):
        return None
    if data_str.startswith("data:"):
        data_str = data_str[5:]
    data_str = data_str.strip()
    return data_str or None


def _first_choice(data: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
    choices = data.get("choices") or []
    if not choices:
        raise ChatError(ErrorKind.DECODING_FAILURE, "response has no choices")
    choice = choices[0]
    return choice.get("message") or {}, choice.get("finish_reason")


def _parse_stream_chunk(data: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    choices = data.get("choices") or []
    if not choices:
        return "", None
    choice = choices[0]
    delta = choice.get("delta") or {}
    return delta.get("content") or "", choice.get("finish_reason")


def _parse_tool_calls(message: Dict[str, Any]) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for idx, call in enumerate(message.get("tool_calls") or []):
        func = call.get("function") or {}
        calls.append(
            ToolCall(
                id=call.get("id") or f"tool_call_{idx}",
                name=func.get("name") or call.get("name") or "",
                arguments=ToolExecutor.parse_arguments(func.get("arguments")),
            )
        )
    return calls


def _error_details(body: str) -> Tuple[Optional[str], Optional[str]]:
    try:
        data = json.loads(body or "")
    except json.JSONDecodeError:
        return (body or None), None
    if not isinstance(data, dict):
        return None, None
    err = data.get("error")
    if isinstance(err, dict):
        return err.get("message"), err.get("suggestion")
    if isinstance(err, str):
        return err, data.get("suggestion")
    return None, data.get("suggestion")


def _close_partial_json(text: str) -> Tuple[str, List[int]]:
    """补全一段被截断的 JSON，返回补全后的文本和字符串外逗号的位置。"""

    stack: List[str] = []
    commas: List[int] = []
    in_str = False
    escaped = False
    for idx, ch in enumerate(text):
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if stack:
                stack.pop()
        elif ch == ",":
            commas.append(idx)
    closed = text
    if in_str:
        closed = _PARTIAL_ESCAPE.sub("", closed) + '"'
    return closed + "".join(reversed(stack)), commas


def parse_partial_json(text: str) -> Any:
    """尽力解析不完整的 JSON 前缀，失败时退回到上一个完整字段。"""

    candidate = text.strip()
    if not candidate:
        return None
    closed, commas = _close_partial_json(candidate)
    try:
        return json.loads(closed)
    except json.JSONDecodeError:
        pass
    for pos in reversed(commas[-4:]):
        closed, _ = _close_partial_json(candidate[:pos])
        try:
            return json.loads(closed)
        except json.JSONDecodeError:
            continue
    return None
