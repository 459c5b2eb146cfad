"""
Request-scoped tracing for listing enrichment and generation.

A thread-local TraceContext collects:
  - one StageRecord per pipeline stage (geocode, nearby, walkability,
    demographics, area_context, price_context, generate)
  - one APICallRecord per outbound call (Nominatim, Overpass, SCB,
    Wikipedia, OpenAI), including retries and cache hits

Usage:
    from hy_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id="gen-1234")
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

Fan-out workers must call set_trace(parent) themselves; thread-locals are
not inherited by ThreadPoolExecutor threads.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound HTTP or SDK call."""
    service: str          # "nominatim" | "overpass" | "scb" | "wikipedia" | "openai"
    endpoint: str         # "search", "nearby_amenities", "responses.create", ...
    elapsed_ms: int
    status_code: int      # 0 when no response was received
    provider_status: str = ""
    attempt: int = 1
    stage: str = ""


@dataclass
class StageRecord:
    """One pipeline stage."""
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single enrichment/generation request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)

    def __post_init__(self):
        # Stage name is per thread: concurrent stages share one context.
        self._local = threading.local()

    @property
    def current_stage(self) -> str:
        return getattr(self._local, "stage", "")

    def start_stage(self, name: str):
        self._local.stage = name

    def end_stage(self):
        self._local.stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
        rec = StageRecord(
            stage_name=stage_name,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            api_calls_made=api_in_stage,
            error_class=error_class,
            error_message=error_message,
        )
        self.stages.append(rec)
        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id, stage_name, status, rec.elapsed_ms,
            api_in_stage, err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        attempt: int = 1,
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=int(elapsed_ms),
            status_code=status_code,
            provider_status=provider_status,
            attempt=attempt,
            stage=self.current_stage,
        )
        self.api_calls.append(rec)
        logger.debug(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s attempt=%d",
            self.trace_id, rec.stage or "-", service, endpoint,
            rec.elapsed_ms, status_code, provider_status, attempt,
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errored = [s for s in self.stages if s.error_class]
        if not self.stages:
            outcome = "empty"
        elif errored:
            outcome = "partial" if len(errored) < len(self.stages) else "error"
        else:
            outcome = "success"
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "cache_hits": sum(
                1 for c in self.api_calls if c.provider_status == "cache_hit"
            ),
            "stages_completed": len(self.stages) - len(errored),
            "stages_errored": len(errored),
            "final_outcome": outcome,
            "stages": [
                {
                    "stage": s.stage_name,
                    "elapsed_ms": s.elapsed_ms,
                    "api_calls": s.api_calls_made,
                    "error": (
                        f"{s.error_class}: {s.error_message}"
                        if s.error_class else None
                    ),
                }
                for s in self.stages
            ],
        }

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d cache_hits=%d "
            "completed=%d errored=%d outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["total_api_calls"],
            s["cache_hits"], s["stages_completed"], s["stages_errored"],
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None


def record_api(service: str, endpoint: str, t0: float, status_code: int,
               provider_status: str = "", attempt: int = 1) -> None:
    """Record an outbound call on the active trace, if any."""
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service=service,
            endpoint=endpoint,
            elapsed_ms=(time.monotonic() - t0) * 1000,
            status_code=status_code,
            provider_status=provider_status,
            attempt=attempt,
        )


def record_cache_hit(service: str, endpoint: str) -> None:
    """Record a lookup answered from the in-process cache."""
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service=service,
            endpoint=endpoint,
            elapsed_ms=0,
            status_code=200,
            provider_status="cache_hit",
        )
