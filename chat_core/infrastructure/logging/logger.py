import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from chat_core.config.settings import settings


LOGGER_NAME = "chat_core"
LOG_FILE = "chat.log"
REDACT_LIMIT = 64
# 开启脱敏时，这些结构化字段与消息正文一样只保留前缀
_CONTENT_FIELDS = ("content", "text", "prompt", "transcript")


def _redact(value):
    return value[:REDACT_LIMIT] if isinstance(value, str) else value


class JsonFormatter(logging.Formatter):
    """每条记录输出一行 JSON：ts / level / name / msg 加上 extra 中的结构化字段。"""

    def format(self, record: logging.LogRecord) -> str:
        redact = settings.log_redact_content
        text = record.getMessage() or ""
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "name": record.name,
            "msg": _redact(text) if redact else text,
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            for key, value in fields.items():
                entry[key] = _redact(value) if redact and key in _CONTENT_FIELDS else value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    chat_logger = logging.getLogger(LOGGER_NAME)
    chat_logger.setLevel(logging.INFO)
    target = (Path(settings.log_dir) / LOG_FILE).resolve()
    # 重复导入时不叠加同一个文件的 handler
    for handler in chat_logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == target:
            return chat_logger
    target.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(target, encoding="utf-8")
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(JsonFormatter())
    chat_logger.addHandler(file_handler)
    return chat_logger


logger = setup_logger()
