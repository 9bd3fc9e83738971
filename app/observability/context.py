"""
链路追踪上下文：通过 contextvars 在协程间自动传播 trace_id / cycle_id / trigger_source
"""

import contextvars
import uuid

# ── 全局上下文变量 ──
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
cycle_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("cycle_id", default="")
trigger_source_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trigger_source", default="manual"
)


def new_trace_id() -> str:
    """生成新的 trace_id"""
    return str(uuid.uuid4())


def get_trace_id() -> str:
    return trace_id_var.get()


def get_cycle_id() -> str:
    return cycle_id_var.get()


def get_trigger_source() -> str:
    return trigger_source_var.get()
