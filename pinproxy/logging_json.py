import json
import logging
import os
import secrets
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

from .types import RequestLogMeta


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name
        }
        if hasattr(record, "props"):
             log_record.update(record.props)
        return json.dumps(log_record)


def new_request_id() -> str:
    return secrets.token_hex(4)


class RequestLogger:
    """
    Per-request log lines, tagged with the request id.

    Lines go to the console and, when log_dir is set, to <log_dir>/proxy.jsonl.
    The most recent records are also kept in memory for /api/logs.
    """

    def __init__(self, log_dir: Optional[str] = None, keep_last: int = 500, name: str = "pinproxy.requests"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        self.log_dir = log_dir
        self._handlers = []
        self.setup_handlers()

        self.memory_buffer: Deque[Dict[str, Any]] = deque(maxlen=keep_last)

    def setup_handlers(self):
        if self.log_dir:
            os.makedirs(self.log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(self.log_dir, "proxy.jsonl"), encoding="utf-8")
            file_handler.setFormatter(JsonFormatter())
            self._add_handler(file_handler)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        self._add_handler(console_handler)

    def _add_handler(self, handler: logging.Handler):
        self.logger.addHandler(handler)
        self._handlers.append(handler)

    def close(self):
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def log_request(self, request_id: str, method: str, path: str, meta: Optional[RequestLogMeta] = None):
        meta = meta or RequestLogMeta()
        props = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
            "method": method,
            "path": path,
            **meta.model_dump(),
        }
        self.memory_buffer.append(props)
        self.logger.info(f"[{request_id}] {method} {path} {json.dumps(meta.model_dump())}", extra={"props": props})

    def get_recent_requests(self, limit: int = 100) -> list[Dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self.memory_buffer)[-limit:]
