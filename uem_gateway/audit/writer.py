import json
import threading
from hashlib import sha256
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validate


class AuditValidationError(Exception):
    """Raised when a usage record does not match its contract."""


class AuditWriter:
    """Validates usage records and appends them to a hash-chained JSONL trail.

    Each appended line carries the ``payload_hash`` of the previous line as
    ``prev_hash`` so that edits or deletions in the trail are detectable.
    """

    def __init__(self, schema_path: Path, log_path: Path | None = None):
        self._schema = json.loads(schema_path.read_text(encoding="utf-8"))
        self._log_path = log_path
        self._lock = threading.Lock()

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def validate(self, record: dict[str, Any]) -> None:
        try:
            validate(instance=record, schema=self._schema)
        except ValidationError as exc:
            raise AuditValidationError(exc.message) from exc

    def write_event(self, record: dict[str, Any]) -> dict[str, Any]:
        self.validate(record)
        if self._log_path is None:
            return record

        with self._lock:
            payload = dict(record)
            payload["prev_hash"] = self._last_payload_hash()
            payload["payload_hash"] = self._calculate_payload_hash(payload)

            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with self._log_path.open("a", encoding="utf-8") as file_handle:
                file_handle.write(json.dumps(payload, ensure_ascii=True) + "\n")

        return payload

    def verify_chain(self) -> bool:
        """Recompute every hash in the trail and check the links."""
        if self._log_path is None or not self._log_path.exists():
            return True
        previous = ""
        with self._log_path.open("r", encoding="utf-8") as file_handle:
            for raw_line in file_handle:
                line = raw_line.strip()
                if not line:
                    continue
                payload = json.loads(line)
                claimed = payload.pop("payload_hash", "")
                if payload.get("prev_hash", "") != previous:
                    return False
                if self._calculate_payload_hash(payload) != claimed:
                    return False
                previous = claimed
        return True

    @staticmethod
    def _calculate_payload_hash(payload: dict[str, Any]) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
        return sha256(canonical.encode("utf-8")).hexdigest()

    def _last_payload_hash(self) -> str:
        if self._log_path is None or not self._log_path.exists():
            return ""

        last_line = self._read_last_line(self._log_path)
        if not last_line:
            return ""

        try:
            parsed = json.loads(last_line)
        except json.JSONDecodeError:
            return ""
        return str(parsed.get("payload_hash", ""))

    @staticmethod
    def _read_last_line(file_path: Path) -> str:
        with file_path.open("rb") as file_handle:
            file_handle.seek(0, 2)
            size = file_handle.tell()
            if size == 0:
                return ""

            position = size - 1
            # skip the trailing newline of the last record
            file_handle.seek(position)
            if file_handle.read(1) == b"\n":
                position -= 1
            while position > 0:
                file_handle.seek(position)
                if file_handle.read(1) == b"\n":
                    position += 1
                    break
                position -= 1

            file_handle.seek(max(position, 0))
            return file_handle.read().decode("utf-8").strip()
