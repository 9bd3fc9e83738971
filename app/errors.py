"""
应用级异常分类：路由层统一映射为 HTTP 状态码

- ValidationError        → 400 输入不合法，不做任何写入，不自动重试
- AuthenticationError    → 401 缺少或错误的凭证/签名，读写状态之前拦截
- NotFoundError          → 404 委托/协议不存在，回显 id
- DelegationBudgetExceeded → 409 委托 Gas 预算不足
- UpstreamUnavailable    → 503 存储/余额/推理服务不可达或超时
"""


class AppError(Exception):
    """所有业务异常的基类"""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, **self.context}


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str, entity_id: str, **context):
        super().__init__(message, id=entity_id, **context)
        self.entity_id = entity_id


class DelegationBudgetExceeded(AppError):
    status_code = 409
    code = "delegation_budget_exceeded"


class UpstreamUnavailable(AppError):
    status_code = 503
    code = "upstream_unavailable"

    def __init__(self, message: str, cause: Exception | None = None, **context):
        super().__init__(message, **context)
        self.cause = cause
