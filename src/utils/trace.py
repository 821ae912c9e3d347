"""执行追踪工具"""

import time
import uuid
from datetime import datetime
from typing import Dict, List, Any
from pydantic import BaseModel


class StepLog(BaseModel):
    """单步执行日志"""
    operation: str
    detail: Dict[str, Any] = {}
    rows_in: int = 0
    rows_out: int = 0
    latency_ms: float = 0
    timestamp: datetime


class TraceContext:
    """追踪上下文"""

    def __init__(self, operation: str):
        self.trace_id: str = str(uuid.uuid4())
        self.operation = operation
        self.steps: List[StepLog] = []
        self.start_time = datetime.now()
        self._started = time.time()

    def add_step(self, operation: str, rows_in: int, rows_out: int, started: float, **detail: Any):
        """添加执行步骤"""
        self.steps.append(StepLog(
            operation=operation,
            detail=detail,
            rows_in=rows_in,
            rows_out=rows_out,
            latency_ms=round((time.time() - started) * 1000, 3),
            timestamp=datetime.now()
        ))

    def elapsed_seconds(self) -> float:
        return time.time() - self._started

    def to_dict(self) -> Dict[str, Any]:
        """转为字典"""
        return {
            "trace_id": self.trace_id,
            "operation": self.operation,
            "start_time": self.start_time.isoformat(),
            "steps": [
                {
                    "operation": s.operation,
                    "detail": s.detail,
                    "rows_in": s.rows_in,
                    "rows_out": s.rows_out,
                    "latency_ms": s.latency_ms,
                    "timestamp": s.timestamp.isoformat()
                }
                for s in self.steps
            ],
            "total_steps": len(self.steps),
            "duration_ms": round(self.elapsed_seconds() * 1000, 3)
        }
