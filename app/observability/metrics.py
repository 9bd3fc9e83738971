"""
Prometheus 指标定义

所有指标统一在此文件定义，中间件和业务代码按需引用。
成本看板通过 read_counter() 读取计数，不做任何写入。
"""

from prometheus_client import REGISTRY, Counter, Histogram

# ── 请求级指标 ──

REQUEST_TOTAL = Counter(
    "sponsor_request_total",
    "HTTP 请求总数",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "sponsor_request_duration_ms",
    "HTTP 请求耗时（毫秒）",
    ["method", "endpoint"],
    buckets=[50, 100, 200, 500, 1000, 2000, 5000, 10000],
)

# ── Agent 周期指标 ──

CYCLE_TOTAL = Counter(
    "sponsor_cycle_total",
    "Agent 周期总数",
    ["trigger_source", "outcome"],
)

CYCLE_DURATION = Histogram(
    "sponsor_cycle_duration_ms",
    "Agent 周期耗时（毫秒）",
    ["trigger_source"],
    buckets=[100, 500, 1000, 2000, 5000, 10000, 30000, 60000],
)

OBSERVATION_FILTER_TOTAL = Counter(
    "sponsor_observation_filter",
    "观测过滤判定次数",
)

OBSERVATION_FILTER_SKIPS = Counter(
    "sponsor_observation_filter_skips",
    "观测无显著变化而跳过推理的次数",
)

TEMPLATE_RESPONSE_USED = Counter(
    "sponsor_template_response_used",
    "命中模板决策而跳过推理的次数",
)

LLM_CALL_TOTAL = Counter(
    "sponsor_llm_call",
    "LLM 推理调用次数",
    ["model"],
)

# ── 预算 / 储备指标 ──

BUDGET_DECISION_TOTAL = Counter(
    "sponsor_budget_decision_total",
    "外部 API 配额判定",
    ["category", "result"],  # result: allowed/denied/over_budget/store_error
)

EMERGENCY_TRANSITION_TOTAL = Counter(
    "sponsor_emergency_transition_total",
    "紧急模式切换次数",
    ["direction"],  # enter/exit
)

# ── 错误指标 ──

ERROR_TOTAL = Counter(
    "sponsor_error_total",
    "错误总数",
    ["error_type"],  # observe_error/reason_error/execute_error/unknown
)


def read_counter(name: str) -> float:
    """读取当前进程内某个计数器的累计值（所有标签求和，不存在时为 0）"""
    total = 0.0
    for metric in REGISTRY.collect():
        if metric.name != name:
            continue
        for sample in metric.samples:
            if sample.name == f"{name}_total":
                total += sample.value
    return total
