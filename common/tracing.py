"""
Correlation-id spans. A finished span is logged as one `TRACE:` JSON line.
"""
import uuid
import time
import json
from typing import Optional
from contextvars import ContextVar
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)

class TraceSpan:
    def __init__(self, name: str, service: str, trace_id: str = None, parent_span_id: str = None):
        self.name = name
        self.trace_id = trace_id or uuid.uuid4().hex[:16]
        self.span_id = uuid.uuid4().hex[:8]
        self.parent_span_id = parent_span_id
        self.tags = {"service.name": service}
        self.status = "ok"
        self.started = time.time()
        trace_id_var.set(self.trace_id)

    def add_tag(self, key: str, value):
        self.tags[key] = value
        return self

    def set_error(self, error: Exception):
        self.status = "error"
        self.tags["error.type"] = type(error).__name__
        return self

    def finish(self):
        record = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.name,
            "duration_ms": round((time.time() - self.started) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
        }
        logger.info(f"TRACE: {json.dumps(record, default=str)}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.set_error(exc_val)
        self.finish()

class Tracer:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: str = None, parent_span_id: str = None) -> TraceSpan:
        return TraceSpan(name, self.service_name, trace_id, parent_span_id)

    def start_span_from_request(self, request: Request) -> TraceSpan:
        """Continue the caller's trace when it sent X-Trace-ID / X-Span-ID."""
        span = self.start_span(
            f"{request.method} {request.url.path}",
            request.headers.get("X-Trace-ID"),
            request.headers.get("X-Span-ID"),
        )
        return span.add_tag("http.method", request.method).add_tag("http.path", request.url.path)

escrow_tracer = Tracer("escrow-service")
sweeper_tracer = Tracer("escrow-sweeper")

def get_current_trace_id() -> Optional[str]:
    return trace_id_var.get()

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    with tracer.start_span_from_request(request) as span:
        request.state.trace_id = span.trace_id
        request.state.request_id = span.span_id
        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.status = "error"
        response.headers["X-Trace-ID"] = span.trace_id
        response.headers["X-Span-ID"] = span.span_id
        return response
