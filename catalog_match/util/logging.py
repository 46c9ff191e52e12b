"""
Structured logging for indexing, embedding, storage and query operations.
"""

import logging
from typing import Any, Dict, List, Optional


class StructuredLogger:
    """Structured logger shared by all engine components."""

    def __init__(self, name: str = "catalog_match"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.error(message)
        elif status in ("retry", "degraded", "rejected"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_embedding_call(self, provider: str, batch_size: int, duration_ms: float,
                           status: str = "success", details: Dict[str, Any] = None):
        """Log one provider round-trip."""
        log_details = {
            "provider": provider,
            "batch_size": batch_size,
            "duration_ms": round(duration_ms, 2),
        }
        if details:
            log_details.update(details)

        self.log_operation("embedding.call", status, log_details)

    def log_vector_operation(self, operation: str, version: Optional[int],
                             details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector store operation."""
        log_details = {"version": version}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_index_run(self, run_id: str, state: str, details: Dict[str, Any] = None):
        """Log an indexing run state transition."""
        log_details = {"run_id": run_id, "state": state}
        if details:
            log_details.update(details)

        status = "failed" if state == "failed" else "success"
        self.log_operation("index.run", status, log_details)

    def log_record_failure(self, run_id: str, record_id: str, code: str, message: str):
        """Log a record excluded from an indexing run."""
        self.log_operation("index.record", "rejected", {
            "run_id": run_id,
            "record_id": record_id,
            "code": code,
            "message": message[:100],
        })

    def log_query(self, query: str, top_k: int, latency_ms: float, status: str = "success",
                  details: Dict[str, Any] = None):
        """Log a query; only a prefix of the text is kept."""
        log_details = {
            "query": query[:50] + "..." if len(query) > 50 else query,
            "top_k": top_k,
            "latency_ms": round(latency_ms, 2),
        }
        if details:
            log_details.update(details)

        self.log_operation("query.search", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_details(details: Dict[str, Any], sensitive_fields: List[str] = None) -> Dict[str, Any]:
    """Redact credential-like fields before they reach a log line."""
    if sensitive_fields is None:
        sensitive_fields = ['api_key', 'token', 'authorization', 'secret', 'password']

    sanitized = {}
    for k, v in details.items():
        if k.lower() in sensitive_fields:
            sanitized[k] = "[REDACTED]"
        elif isinstance(v, str) and len(v) > 100:
            sanitized[k] = v[:97] + "..."
        else:
            sanitized[k] = v
    return sanitized
