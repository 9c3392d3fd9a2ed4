from __future__ import annotations

import json
import logging
import os

import uvicorn


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(log_level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def main() -> None:
    setup_logging(os.getenv("LESSONSYNC_LOG_LEVEL", "INFO"))
    host = os.getenv("LESSONSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("LESSONSYNC_PORT", "8080"))
    uvicorn.run("lessonsync.web_admin:create_app", factory=True, host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
