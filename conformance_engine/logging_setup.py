import hashlib
import json
import logging
import re
import sys
import time
import uuid
from typing import Any, Dict

from .config import get_settings

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """JSON formatter that redacts patient identifiers found in validated payloads."""

    def __init__(self):
        super().__init__()
        self.redaction_patterns = [
            # Literal references to patients and related people
            (re.compile(r"\b((?:Patient|RelatedPerson|Person)/[A-Za-z0-9\-.]{1,64})"), "patient_reference"),
            # Identifier values quoted in messages
            (re.compile(r'(?i)"value"\s*:\s*"([^"]+)"'), "identifier"),
            # National ID patterns (adjust as needed for your region)
            (re.compile(r"\b\d{9}\b"), "national_id"),
            (re.compile(r"\b\d{11}\b"), "national_id"),
        ]

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": self._redact_sensitive_data(record.getMessage()),
        }

        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            if isinstance(value, str):
                payload[key] = self._redact_sensitive_data(value)
            elif isinstance(value, dict):
                payload[key] = self._redact_dict(value)
            else:
                payload[key] = value

        if record.exc_info:
            exc_text = self.formatException(record.exc_info)
            payload["exc_info"] = self._redact_sensitive_data(exc_text)

        return json.dumps(payload, ensure_ascii=False, default=str)

    def _redact_sensitive_data(self, text: str) -> str:
        """Replace patient identifiers with stable hashed placeholders."""
        if not isinstance(text, str):
            return text

        redacted_text = text
        for pattern, field_type in self.redaction_patterns:
            for identifier in pattern.findall(redacted_text):
                if identifier:
                    digest = hashlib.md5(identifier.encode()).hexdigest()[:8]
                    redacted_text = redacted_text.replace(identifier, f"[REDACTED_{field_type.upper()}_{digest}]")
        return redacted_text

    def _redact_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        redacted_dict = {}
        for key, value in data.items():
            if any(sensitive in key.lower() for sensitive in ["patient", "subject", "mrn", "ssn"]):
                redacted_dict[key] = "[REDACTED]"
            elif isinstance(value, str):
                redacted_dict[key] = self._redact_sensitive_data(value)
            elif isinstance(value, dict):
                redacted_dict[key] = self._redact_dict(value)
            else:
                redacted_dict[key] = value
        return redacted_dict


def setup_logging() -> None:
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))


def request_id() -> str:
    return uuid.uuid4().hex
