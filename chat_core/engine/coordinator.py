"""ConversationCoordinator：对话编排与恢复的唯一入口。

职责：
- 持有当前会话（内存中唯一写者）与状态机。
- 接受用户输入，在后台任务中通过 RecoveryManager 驱动生成策略。
- 把流式片段、状态迁移、恢复进度以事件形式广播给订阅者。
- 通过 PersistenceGateway 提交消息、会话与设置。

并发模型：单事件循环、单写者。send_message 在任何 await 之前把状态
迁移到 Thinking，这一步就是全部的互斥；生成期间的再次发送会被拒绝。
"""

import asyncio
import copy
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import uuid4

from chat_core.config.settings import settings as default_settings
from chat_core.domain.conversation import (
    ChatSettings,
    ConversationSession,
    Message,
    PersistenceGateway,
)
from chat_core.domain.exceptions import ChatError, DataError, FatalChatError
from chat_core.domain.models import GenerationOptions
from chat_core.domain.personas import Persona
from chat_core.domain.state import ChatState, ChatStatus, StateMachine
from chat_core.domain.taxonomy import ErrorKind
from chat_core.engine.events import ChatEvent, EventStream, Subscription
from chat_core.engine.recovery import (
    AttemptPlan,
    RecoveryManager,
    RecoveryProgress,
    as_chat_error,
    degraded_reply,
)
from chat_core.engine.strategies import ResponseContext, ResponseStrategy, select_strategy
from chat_core.engine.titles import generate_title
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ModelSession, ModelSessionFactory
from chat_core.tools.executor import ToolExecutor
from chat_core.tools.registry import ToolCapabilitySet


StrategySelector = Callable[[ChatSettings, bool], ResponseStrategy]

REJECT_BUSY = "busy"
REJECT_EMPTY = "empty"


class ConversationCoordinator:
    def __init__(
        self,
        store: PersistenceGateway,
        model_session_factory: ModelSessionFactory,
        recovery: Optional[RecoveryManager] = None,
        tools: Optional[ToolCapabilitySet] = None,
        config=None,
        strategy_selector: StrategySelector = select_strategy,
        persistence_recovery: Optional[RecoveryManager] = None,
    ):
        self._store = store
        self._factory = model_session_factory
        self._config = config or default_settings
        self._recovery = recovery or RecoveryManager(
            max_attempts=self._config.retry_max_attempts,
            base_delay=self._config.retry_base_delay,
        )
        # 存储调用独立重试，不干扰生成的重试计数
        self._store_recovery = persistence_recovery or RecoveryManager(
            max_attempts=self._config.retry_max_attempts,
            base_delay=self._config.retry_base_delay,
        )
        self._tools = tools if tools is not None else ToolCapabilitySet()
        self._select_strategy = strategy_selector
        self._machine = StateMachine()
        self._machine.add_listener(self._on_state_change)
        self._events = EventStream()
        self._settings = ChatSettings()
        self._session = ConversationSession()
        # 已写入（或正在写入）存储的会话 id
        self._stored: Set[str] = set()
        self._pending_writes: Set[asyncio.Future] = set()
        self._model_session: Optional[ModelSession] = None
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # 只读属性
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChatState:
        return self._machine.state

    @property
    def current_session(self) -> ConversationSession:
        return self._session

    @property
    def settings(self) -> ChatSettings:
        return self._settings

    @property
    def tools(self) -> ToolCapabilitySet:
        return self._tools

    @property
    def recovery(self) -> RecoveryManager:
        return self._recovery

    @property
    def is_busy(self) -> bool:
        return self._machine.state.is_generating

    def subscribe(self) -> Subscription:
        return self._events.subscribe()

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """加载持久化设置，按保留期清理旧会话，并准备一个空会话。"""
        log_ctx = self._log_ctx()
        try:
            self._settings = await asyncio.to_thread(self._store.load_settings)
        except DataError as e:
            self._log(logging.WARNING, "Failed to load settings, using defaults", log_ctx, error=e.message)
            self._settings = ChatSettings()
        self._session = ConversationSession(persona=self._settings.persona)
        try:
            removed = await asyncio.to_thread(self._store.cleanup_older_than, self._config.retention_days)
        except DataError as e:
            self._log(logging.WARNING, "Retention sweep failed", log_ctx, error=e.message)
        else:
            self._log(logging.INFO, "Coordinator started", log_ctx, removed_sessions=removed)

    async def shutdown(self) -> None:
        await self.cancel_generation()
        if self._settings.auto_save_conversations and self._session.messages:
            await self._save_session_quietly()
        self._events.close()

    # ------------------------------------------------------------------
    # 发送消息与生成
    # ------------------------------------------------------------------

    async def send_message(self, text: str) -> bool:
        """提交一条用户消息并在后台开始生成。

        返回 False 表示被拒绝（空输入或正在生成/处于错误状态）。
        """

        content = (text or "").strip()
        if not content:
            self._reject(REJECT_EMPTY)
            return False
        if not self._machine.accepts_input:
            self._reject(REJECT_BUSY)
            return False
        # 在任何 await 之前占住 Thinking，保证同一时刻只有一个生成
        self._machine.transition(ChatStatus.THINKING)

        log_ctx = self._log_ctx(trace_id=f"tr-{uuid4().hex}")
        session = self._session
        user_msg = Message(content=content, is_user=True)
        session.append(user_msg)
        self._publish("message", message=user_msg)
        self._log(logging.INFO, "Accepted user message", log_ctx, message_id=user_msg.id, chars=len(content))

        # 提交用户消息也放进生成任务，任何取消路径都能立即拿到它
        history = [m for m in session.messages if m.id != user_msg.id]
        self._task = asyncio.create_task(self._run_generation(session, user_msg, history, log_ctx))
        return True

    async def wait_for_generation(self) -> None:
        """等待当前生成任务结束（完成、失败或被取消）。"""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def cancel_generation(self) -> bool:
        task = self._task
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait({task})
        # 任务可能在开始执行前就被取消，此时它自己没有机会回到 Active
        if self._machine.state.is_generating:
            self._machine.transition(ChatStatus.ACTIVE)
        return task.cancelled()

    async def _run_generation(
        self,
        session: ConversationSession,
        user_msg: Message,
        history: List[Message],
        log_ctx: Dict[str, Any],
    ) -> None:
        try:
            await self._commit_message(session, user_msg)
        except asyncio.CancelledError:
            self._log(logging.INFO, "Generation cancelled before start", log_ctx)
            if self._machine.state.is_generating:
                self._machine.transition(ChatStatus.ACTIVE)
            raise
        except ChatError as e:
            self._log(logging.ERROR, "Failed to store user message", log_ctx, kind=e.kind.value, error=e.message)
            self._fail(e.headline)
            return
        if self._session is not session:
            self._log(logging.INFO, "Session switched before generation", log_ctx)
            return

        prompt = user_msg.content
        try:
            reply = await self._recovery.execute(
                lambda plan: self._attempt(plan, prompt, history, log_ctx),
                operation_name="generate_response",
                degraded=degraded_reply,
                restart=self._restart_model_session,
                on_progress=self._on_recovery_progress,
            )
        except asyncio.CancelledError:
            self._log(logging.INFO, "Generation cancelled", log_ctx)
            if self._machine.state.is_generating:
                self._machine.transition(ChatStatus.ACTIVE)
            raise
        except FatalChatError as e:
            self._log(logging.ERROR, "Generation failed fatally", log_ctx, error=e.message)
            self._fail(e.user_message(), fatal=True)
            return
        except Exception as e:
            err = as_chat_error(e)
            self._log(logging.ERROR, "Generation failed", log_ctx, kind=err.kind.value, error=err.message)
            self._fail(err.user_message())
            return

        if self._session is not session:
            # 回复只属于发起本轮的会话
            self._log(logging.INFO, "Discarding reply for inactive session", log_ctx, message_id=reply.id)
            return
        session.append(reply)
        self._publish("message", message=reply)
        try:
            await self._commit_message(session, reply)
        except asyncio.CancelledError:
            if self._machine.state.is_generating:
                self._machine.transition(ChatStatus.ACTIVE)
            raise
        except ChatError as e:
            self._log(logging.ERROR, "Failed to store assistant message", log_ctx, kind=e.kind.value, error=e.message)
            self._fail(e.headline)
            return
        self._log(
            logging.INFO,
            "Completed generation",
            log_ctx,
            message_id=reply.id,
            processing_time=reply.metadata.processing_time if reply.metadata else None,
        )
        self._machine.transition(ChatStatus.ACTIVE)

    async def _attempt(self, plan: AttemptPlan, prompt: str, history: List[Message], log_ctx: Dict[str, Any]) -> Message:
        model_session = self._ensure_model_session()
        context = ResponseContext(
            session=model_session,
            persona=self._session.persona,
            messages=history,
            max_context_length=self._settings.max_context_length,
            tools=self._tool_executor(),
            options=GenerationOptions(max_tokens=self._config.max_response_tokens),
            generation_timeout=self._config.generation_timeout,
        )
        if plan.simplified:
            context = context.simplified()
        strategy = self._select_strategy(self._settings, plan.simplified)
        self._log(logging.INFO, "Generation attempt", log_ctx, attempt=plan.attempt, strategy=strategy.name, simplified=plan.simplified)
        return await strategy.generate(prompt, context, on_partial=self._on_partial)

    def _on_partial(self, content: str) -> None:
        if self._machine.status is ChatStatus.THINKING:
            self._machine.transition(ChatStatus.STREAMING)
        self._publish("partial", text=content)

    def _on_recovery_progress(self, progress: RecoveryProgress) -> None:
        self._publish(
            "recovery",
            text=f"Recovering... (attempt {progress.attempt}/{progress.max_attempts})",
            data={
                "action": progress.action.value,
                "description": progress.action.description,
                "attempt": progress.attempt,
                "max_attempts": progress.max_attempts,
                "kind": progress.kind.value,
            },
        )

    # ------------------------------------------------------------------
    # 模型会话
    # ------------------------------------------------------------------

    def _create_model_session(self, instructions: str) -> ModelSession:
        try:
            return self._factory(instructions)
        except ChatError:
            raise
        except Exception as e:
            raise ChatError(ErrorKind.SESSION_INIT_FAILED, str(e), cause=e)

    def _ensure_model_session(self) -> ModelSession:
        if self._model_session is None:
            self._model_session = self._create_model_session(self._session.persona.system_prompt)
        return self._model_session

    async def _restart_model_session(self) -> None:
        """丢弃当前模型会话并按相同人设重建（工具集在每次尝试时重新读取）。"""
        self._model_session = None
        self._model_session = self._create_model_session(self._session.persona.system_prompt)
        self._log(logging.INFO, "Model session restarted", self._log_ctx(), persona=self._session.persona.value)

    def _tool_executor(self) -> Optional[ToolExecutor]:
        enabled = self._tools.enabled()
        if not enabled:
            return None
        return ToolExecutor(enabled, timeout=self._config.effective_tool_timeout)

    # ------------------------------------------------------------------
    # 语音
    # ------------------------------------------------------------------

    async def start_voice_turn(self) -> bool:
        if not self._settings.voice_enabled or self._machine.status is not ChatStatus.ACTIVE:
            return False
        self._machine.transition(ChatStatus.VOICE_LISTENING)
        return True

    async def stop_voice_turn(self, transcript: str = "") -> bool:
        """结束语音输入；非空转写文本会直接作为消息发送。"""
        if self._machine.status is not ChatStatus.VOICE_LISTENING:
            return False
        if transcript and transcript.strip():
            return await self.send_message(transcript)
        self._machine.transition(ChatStatus.ACTIVE)
        return True

    # ------------------------------------------------------------------
    # 人设与设置
    # ------------------------------------------------------------------

    async def change_persona(self, persona: Persona) -> bool:
        if self.is_busy:
            return False
        self._settings = replace(self._settings, persona=persona)
        self._session.set_persona(persona)
        try:
            self._model_session = self._create_model_session(persona.system_prompt)
        except ChatError as e:
            # 下一次生成会在恢复流程中重新创建
            self._model_session = None
            self._log(logging.WARNING, "Model session recreation deferred", self._log_ctx(), error=e.message)
        await self._persist_quietly("save_settings", self._store.save_settings, self._settings)
        if self._persisted and self._settings.auto_save_conversations:
            await self._save_session_quietly()
        self._log(logging.INFO, "Persona changed", self._log_ctx(), persona=persona.value)
        return True

    async def update_settings(self, chat_settings: ChatSettings) -> bool:
        if chat_settings.persona is not self._settings.persona:
            if not await self.change_persona(chat_settings.persona):
                return False
        self._settings = replace(chat_settings)
        await self._persist_quietly("save_settings", self._store.save_settings, self._settings)
        return True

    # ------------------------------------------------------------------
    # 会话管理
    # ------------------------------------------------------------------

    async def start_new_session(self) -> ConversationSession:
        await self.cancel_generation()
        await self._drain_writes()
        await self._finalize_session()
        self._reset_session()
        return self._session

    async def load_session(self, session_id: str) -> bool:
        await self.cancel_generation()
        await self._drain_writes()
        if session_id == self._session.id:
            return True
        try:
            loaded = await asyncio.to_thread(self._store.load_session, session_id)
        except DataError as e:
            self._log(logging.WARNING, "Failed to load session", self._log_ctx(), session_id=session_id, kind=e.kind.value)
            self._fail(e.headline)
            return False
        if self._session.messages and self._settings.auto_save_conversations:
            await self._save_session_quietly()
        self._session = loaded
        self._stored.add(loaded.id)
        self._model_session = None
        if self._machine.status is ChatStatus.ERROR:
            self._machine.dismiss()
        self._log(logging.INFO, "Loaded session", self._log_ctx(), message_count=loaded.message_count)
        return True

    async def delete_session(self, session_id: str) -> bool:
        is_current = session_id == self._session.id
        if is_current:
            await self.cancel_generation()
        # 被取消的首次写入可能仍在线程里，等它落盘后再决定是否删文件
        await self._drain_writes()
        if is_current and session_id not in self._stored:
            self._reset_session()
            return True
        try:
            await asyncio.to_thread(self._store.delete_session, session_id)
        except DataError as e:
            if not (is_current and e.kind is ErrorKind.SESSION_NOT_FOUND):
                self._log(logging.WARNING, "Failed to delete session", self._log_ctx(), session_id=session_id, kind=e.kind.value)
                return False
        self._stored.discard(session_id)
        if is_current:
            self._reset_session()
        return True

    async def list_sessions(self) -> List[ConversationSession]:
        return await asyncio.to_thread(self._store.load_sessions)

    async def save_current_session(self) -> bool:
        if not self._session.messages:
            return False
        return await self._save_session_quietly()

    async def regenerate_title(self) -> str:
        title = await generate_title(
            self._title_session(),
            self._session,
            min_confidence=self._config.title_min_confidence,
        )
        self._session.set_title(title)
        self._publish("title", text=title)
        if self._persisted:
            await self._save_session_quietly()
        return title

    # ------------------------------------------------------------------
    # 消息操作
    # ------------------------------------------------------------------

    async def add_reaction(self, message_id: str, symbol: str) -> bool:
        message = self._session.find(message_id)
        if message is None:
            return False
        updated = message.with_reaction(symbol)
        if updated is message:
            return True
        self._session.replace_message(updated)
        if self._persisted and self._settings.auto_save_conversations:
            await self._persist_quietly("update_message", self._store.update_message, self._session.id, copy.deepcopy(updated))
        return True

    async def delete_message(self, message_id: str) -> bool:
        if not self._session.remove(message_id):
            return False
        if self._persisted:
            await self._persist_quietly("delete_message", self._store.delete_message, message_id)
        return True

    # ------------------------------------------------------------------
    # 数据维护
    # ------------------------------------------------------------------

    async def clear_all_data(self) -> None:
        await self.cancel_generation()
        await self._drain_writes()
        await asyncio.to_thread(self._store.clear_all)
        self._stored.clear()
        self._settings = ChatSettings()
        self._reset_session()
        self._log(logging.INFO, "Cleared all data", self._log_ctx())

    async def export_data(self) -> bytes:
        if self._session.messages and self._settings.auto_save_conversations:
            await self._save_session_quietly()
        return await asyncio.to_thread(self._store.export_all)

    async def import_data(self, data: bytes) -> int:
        await self.cancel_generation()
        await self._drain_writes()
        count = await asyncio.to_thread(self._store.import_all, data)
        self._stored.clear()
        self._settings = await asyncio.to_thread(self._store.load_settings)
        self._reset_session()
        self._log(logging.INFO, "Imported data", self._log_ctx(), sessions=count)
        return count

    async def cleanup_old_sessions(self, days: Optional[int] = None) -> int:
        return await asyncio.to_thread(self._store.cleanup_older_than, days if days is not None else self._config.retention_days)

    def dismiss_error(self) -> bool:
        return self._machine.dismiss()

    # ------------------------------------------------------------------
    # 内部：持久化
    # ------------------------------------------------------------------

    @property
    def _persisted(self) -> bool:
        return self._session.id in self._stored

    async def _persist(self, operation_name: str, fn: Callable[..., Any], *args: Any) -> Any:
        """在线程中执行存储调用；SaveFailed/LoadFailed 走退避重试。

        线程里的写入无法中途撤销：取消只放弃等待，写入仍会完成，
        所以每个写入都登记在 _pending_writes 中，删除和清空前先等它们结束。
        """

        async def _op(plan: AttemptPlan) -> Any:
            write = asyncio.ensure_future(asyncio.to_thread(fn, *args))
            self._pending_writes.add(write)
            write.add_done_callback(self._write_done)
            return await asyncio.shield(write)

        return await self._store_recovery.execute(_op, operation_name=operation_name)

    def _write_done(self, write: asyncio.Future) -> None:
        self._pending_writes.discard(write)
        if not write.cancelled():
            # 等待方可能已被取消，这里取走异常避免未检索警告
            write.exception()

    async def _drain_writes(self) -> None:
        if self._pending_writes:
            await asyncio.wait(set(self._pending_writes))

    async def _persist_quietly(self, operation_name: str, fn: Callable[..., Any], *args: Any) -> bool:
        try:
            await self._persist(operation_name, fn, *args)
        except ChatError as e:
            self._log(logging.ERROR, "Persistence failed", self._log_ctx(), operation=operation_name, error=e.message)
            return False
        return True

    async def _save_session_quietly(self) -> bool:
        session_id = self._session.id
        known = session_id in self._stored
        self._stored.add(session_id)
        ok = await self._persist_quietly("save_session", self._store.save_session, self._snapshot())
        if not ok and not known:
            self._stored.discard(session_id)
        return ok

    async def _commit_message(self, session: ConversationSession, message: Message) -> None:
        if not self._settings.auto_save_conversations:
            return
        if session.id not in self._stored:
            # 首条消息提交时会话才落盘；写入开始前就登记，删除路径据此清理存储
            self._stored.add(session.id)
            try:
                await self._persist("save_session", self._store.save_session, copy.deepcopy(session))
            except ChatError:
                self._stored.discard(session.id)
                raise
            return
        await self._persist("add_message", self._store.add_message, session.id, copy.deepcopy(message))

    async def _finalize_session(self) -> None:
        if not self._session.messages:
            return
        if self._session.has_default_title and self._session.first_user_message is not None:
            title = await generate_title(
                self._title_session(),
                self._session,
                min_confidence=self._config.title_min_confidence,
            )
            self._session.set_title(title)
            self._publish("title", text=title)
        await self._save_session_quietly()

    def _title_session(self) -> Optional[ModelSession]:
        try:
            return self._create_model_session("")
        except ChatError as e:
            self._log(logging.WARNING, "Title session unavailable", self._log_ctx(), error=e.message)
            return None

    def _snapshot(self) -> ConversationSession:
        return copy.deepcopy(self._session)

    def _reset_session(self) -> None:
        self._session = ConversationSession(persona=self._settings.persona)
        self._model_session = None
        self._machine.reset()

    # ------------------------------------------------------------------
    # 内部：事件与日志
    # ------------------------------------------------------------------

    def _fail(self, detail: str, fatal: bool = False) -> None:
        self._machine.fail(detail, fatal=fatal)
        self._publish("error", text=detail, data={"fatal": fatal})

    def _reject(self, reason: str) -> None:
        self._publish("rejected", text=reason)
        self._log(logging.INFO, "Rejected user message", self._log_ctx(), reason=reason, state=str(self._machine.state))

    def _on_state_change(self, old: ChatState, new: ChatState) -> None:
        self._publish("state", state=new, old_state=old)

    def _publish(self, kind: str, **fields: Any) -> None:
        self._events.publish(ChatEvent(kind=kind, session_id=self._session.id, **fields))

    def _log_ctx(self, **fields: Any) -> Dict[str, Any]:
        ctx: Dict[str, Any] = {"session_id": self._session.id}
        ctx.update(fields)
        return ctx

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
