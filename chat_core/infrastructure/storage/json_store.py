import json
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import (
    ChatSettings,
    ConversationSession,
    Message,
    PersistenceGateway,
)
from chat_core.domain.exceptions import DataError
from chat_core.domain.taxonomy import ErrorKind
from chat_core.infrastructure.logging.logger import logger


EXPORT_VERSION = 1


class JsonPersistenceGateway(PersistenceGateway):
    """基于 JSON 文件的持久化实现。

    目录结构：
        <root>/sessions/<session_id>.json
        <root>/settings.json

    每次写入先写临时文件再 os.replace，保证一条记录要么完整替换、要么保持原样。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._settings_path = self._root / "settings.json"
        self._sessions_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # 会话
    # ------------------------------------------------------------------

    def save_session(self, session: ConversationSession) -> None:
        with self._lock:
            self._write_json(self._session_path(session.id), session.to_dict())

    def load_sessions(self) -> List[ConversationSession]:
        items: List[ConversationSession] = []
        with self._lock:
            for path in sorted(self._sessions_root.glob("*.json")):
                try:
                    items.append(ConversationSession.from_dict(self._read_json(path)))
                except DataError as e:
                    logger.warning("skip_unreadable_session", extra={"extra": {"path": str(path), "error": e.message}})
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("skip_unreadable_session", extra={"extra": {"path": str(path), "error": str(e)}})
        items.sort(key=lambda s: s.last_modified, reverse=True)
        return items

    def load_session(self, session_id: str) -> ConversationSession:
        with self._lock:
            return self._load(session_id)

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            path = self._session_path(session_id)
            if not path.exists():
                raise DataError(ErrorKind.SESSION_NOT_FOUND, session_id)
            try:
                path.unlink()
            except OSError as e:
                raise DataError(ErrorKind.SAVE_FAILED, str(e))

    # ------------------------------------------------------------------
    # 消息
    # ------------------------------------------------------------------

    def add_message(self, session_id: str, message: Message) -> ConversationSession:
        with self._lock:
            session = self._load(session_id)
            session.append(message)
            self._write_json(self._session_path(session.id), session.to_dict())
            return session

    def update_message(self, session_id: str, message: Message) -> ConversationSession:
        """替换同 id 的消息（目前只用于表情回应）。"""
        with self._lock:
            session = self._load(session_id)
            if not session.replace_message(message):
                raise DataError(ErrorKind.SESSION_NOT_FOUND, f"message {message.id} not in session {session_id}")
            self._write_json(self._session_path(session.id), session.to_dict())
            return session

    def delete_message(self, message_id: str) -> bool:
        with self._lock:
            for path in sorted(self._sessions_root.glob("*.json")):
                try:
                    session = ConversationSession.from_dict(self._read_json(path))
                except (DataError, KeyError, TypeError, ValueError):
                    continue
                if session.remove(message_id):
                    self._write_json(path, session.to_dict())
                    return True
        return False

    # ------------------------------------------------------------------
    # 设置
    # ------------------------------------------------------------------

    def save_settings(self, chat_settings: ChatSettings) -> None:
        with self._lock:
            self._write_json(self._settings_path, chat_settings.to_dict())

    def load_settings(self) -> ChatSettings:
        with self._lock:
            if not self._settings_path.exists():
                return ChatSettings()
            return ChatSettings.from_dict(self._read_json(self._settings_path))

    # ------------------------------------------------------------------
    # 维护：清理 / 导入导出 / 清空
    # ------------------------------------------------------------------

    def cleanup_older_than(self, days: int) -> int:
        """删除 last_modified 早于 days 天前的会话，返回删除数量。"""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        removed = 0
        with self._lock:
            for session in self.load_sessions():
                if session.last_modified < cutoff:
                    try:
                        self._session_path(session.id).unlink()
                    except FileNotFoundError:
                        continue
                    except OSError as e:
                        raise DataError(ErrorKind.SAVE_FAILED, str(e))
                    removed += 1
        if removed:
            logger.info("cleanup_sessions", extra={"extra": {"removed": removed, "days": days}})
        return removed

    def export_all(self) -> bytes:
        with self._lock:
            sessions = sorted(self.load_sessions(), key=lambda s: s.id)
            snapshot = {
                "version": EXPORT_VERSION,
                "settings": self.load_settings().to_dict(),
                "sessions": [s.to_dict() for s in sessions],
            }
        return json.dumps(snapshot, ensure_ascii=False, sort_keys=True, indent=2).encode("utf-8")

    def import_all(self, data: bytes) -> int:
        """用快照整体替换现有数据，返回导入的会话数。"""
        try:
            snapshot = json.loads(data.decode("utf-8"))
            sessions = [ConversationSession.from_dict(s) for s in snapshot.get("sessions") or []]
            chat_settings = ChatSettings.from_dict(snapshot.get("settings") or {})
        except (UnicodeDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise DataError(ErrorKind.LOAD_FAILED, f"invalid export data: {e}")
        with self._lock:
            self.clear_all()
            for session in sessions:
                self._write_json(self._session_path(session.id), session.to_dict())
            self._write_json(self._settings_path, chat_settings.to_dict())
        return len(sessions)

    def clear_all(self) -> None:
        with self._lock:
            try:
                for path in self._sessions_root.glob("*.json"):
                    path.unlink()
                if self._settings_path.exists():
                    self._settings_path.unlink()
            except OSError as e:
                raise DataError(ErrorKind.SAVE_FAILED, str(e))

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _load(self, session_id: str) -> ConversationSession:
        path = self._session_path(session_id)
        if not path.exists():
            raise DataError(ErrorKind.SESSION_NOT_FOUND, session_id)
        try:
            return ConversationSession.from_dict(self._read_json(path))
        except (KeyError, TypeError, ValueError) as e:
            raise DataError(ErrorKind.LOAD_FAILED, f"{session_id}: {e}")

    def _session_path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise DataError(ErrorKind.SESSION_NOT_FOUND, f"invalid session id {session_id!r}")
        return self._sessions_root / f"{session_id}.json"

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise DataError(ErrorKind.LOAD_FAILED, str(e))
        if not isinstance(data, dict):
            raise DataError(ErrorKind.LOAD_FAILED, f"{path.name} is not an object")
        return data

    @staticmethod
    def _write_json(path: Path, obj: Dict[str, Any]) -> None:
        tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False, sort_keys=True), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise DataError(ErrorKind.SAVE_FAILED, str(e))
