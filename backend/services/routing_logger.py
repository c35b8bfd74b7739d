"""JSON Lines log of per-message routing decisions."""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from config import ROUTING_LOG_FILE


class RoutingLogger:
    """
    Append one JSON object per processed message to a .jsonl file.

    Each entry records how the query was classified, how retrieval went and how the
    message ended, so routing behaviour can be analysed offline.
    """

    def __init__(self, log_file_path: str = ROUTING_LOG_FILE):
        """
        Initialize the routing logger.

        Args:
            log_file_path: Path of the JSONL file (parent directories are created)
        """
        self.log_file_path = Path(log_file_path)
        self.log_file_path.parent.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger(f"routing_decisions.{self.log_file_path}")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        self.handler = logging.FileHandler(self.log_file_path, encoding="utf-8")
        self.handler.setFormatter(logging.Formatter("%(message)s"))
        self.logger.addHandler(self.handler)

    def log_routing_decision(
        self,
        query: str,
        query_type: str,
        complexity: str,
        retrieval_mode: str,
        confidence: float,
        state: str,
        latency_ms: int,
        retrieval_attempts: int = 0,
        chunks_retrieved: int = 0,
        sufficiency: Optional[Dict[str, Any]] = None,
        grades: Optional[Dict[str, Any]] = None,
        metrics: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Write one routing decision.

        Args:
            query: User query text
            query_type: Classified query type
            complexity: Classified complexity
            retrieval_mode: Retrieval mode after the document override
            confidence: Classifier confidence
            state: Final message state (completed, aborted or error)
            latency_ms: Wall time of the whole send in milliseconds
            retrieval_attempts: Retrieval loop iterations that ran
            chunks_retrieved: Number of chunks used as context
            sufficiency: {"sufficient": bool, "reason": str} for the final results
            grades: Post-generation grade summary
            metrics: {"total_tokens", "tokens_per_second"} when generation completed
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "query": query,
            "query_type": query_type,
            "complexity": complexity,
            "retrieval_mode": retrieval_mode,
            "confidence": confidence,
            "retrieval_attempts": retrieval_attempts,
            "chunks_retrieved": chunks_retrieved,
            "sufficiency": sufficiency,
            "grades": grades or {},
            "state": state,
            "latency_ms": latency_ms,
            "metrics": metrics or {},
        }
        self.logger.info(json.dumps(entry, ensure_ascii=False))
        self.handler.flush()

    def close(self) -> None:
        """Flush and detach the file handler."""
        self.handler.close()
        self.logger.removeHandler(self.handler)
