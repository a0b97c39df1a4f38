import json
import os
import datetime
import threading
from typing import Dict, Any, List, Optional

from utils.logger import get_logger

logger = get_logger("error_manager")


class ErrorManager:
    """
    Centralized ledger for unit-scoped generation failures.

    Every failed background / frame / animation / reference lands here so that
    failures stay observable (and retryable) after the run that produced them.
    """

    MAX_ENTRIES = 100

    def __init__(self, log_file: str = "outputs/api_errors.log"):
        self.log_file = log_file
        self._lock = threading.Lock()

    def log_error(
        self,
        service: str,
        error_message: str,
        details: Any = None,
        severity: str = "error",
        project_id: Optional[str] = None,
    ):
        """
        Log an error to the ledger file.

        Args:
            service: Name of the stage/provider (e.g., "FrameStage", "KieImage")
            error_message: Brief error description
            details: Additional context (unit id, reason)
            severity: Error severity ("warning", "error", "critical")
            project_id: Project the failure belongs to, if any
        """
        entry = {
            "timestamp": datetime.datetime.now().isoformat(),
            "service": service,
            "project_id": project_id,
            "message": error_message,
            "details": str(details) if details else None,
            "severity": severity,
        }

        log_fn = logger.warning if severity == "warning" else logger.error
        log_fn(f"[{service}] {error_message}" + (f" ({details})" if details else ""))

        with self._lock:
            try:
                directory = os.path.dirname(self.log_file)
                if directory:
                    os.makedirs(directory, exist_ok=True)

                logs = self._read_entries()
                logs.append(entry)

                # 최근 100건만 유지
                if len(logs) > self.MAX_ENTRIES:
                    logs = logs[-self.MAX_ENTRIES:]

                with open(self.log_file, "w", encoding="utf-8") as f:
                    json.dump(logs, f, indent=2, ensure_ascii=False)
            except OSError as e:
                logger.critical(f"Failed to write to error log {self.log_file}: {e}")

    def _read_entries(self) -> List[Dict]:
        if not os.path.exists(self.log_file):
            return []
        try:
            with open(self.log_file, "r", encoding="utf-8") as f:
                content = f.read()
            return json.loads(content) if content.strip() else []
        except json.JSONDecodeError:
            logger.warning(f"Error log {self.log_file} is corrupted, starting over")
            return []

    def get_recent_errors(self, limit: int = 20, project_id: Optional[str] = None) -> List[Dict]:
        """Get recent error entries, newest first."""
        with self._lock:
            logs = self._read_entries()
        if project_id:
            logs = [e for e in logs if e.get("project_id") == project_id]
        return sorted(logs, key=lambda x: x["timestamp"], reverse=True)[:limit]

    def clear_logs(self):
        """Clear the error log file."""
        with self._lock:
            if os.path.exists(self.log_file):
                os.remove(self.log_file)
