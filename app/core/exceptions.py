"""库存引擎异常定义

库存不足属于正常业务结果（见 StockError），不在此处定义。
"""

from typing import Optional


class InventoryError(Exception):
    """库存引擎异常基类，携带对外的 HTTP 状态码"""

    status_code = 500
    message = "库存服务异常"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidRequestError(InventoryError):
    status_code = 400
    message = "请求参数不合法"


class UnauthorizedError(InventoryError):
    status_code = 401
    message = "未授权的请求"


class ProductNotFoundError(InventoryError):
    status_code = 404

    def __init__(self, product_id: str, variation_id: Optional[str] = None):
        self.product_id = product_id
        self.variation_id = variation_id
        suffix = f" (variation {variation_id})" if variation_id else ""
        super().__init__(f"商品库存记录不存在: {product_id}{suffix}")


class ReservationNotFoundError(InventoryError):
    status_code = 404

    def __init__(self, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__(f"预占记录不存在: {reservation_id}")


class ReservationLimitError(InventoryError):
    status_code = 429

    def __init__(self, owner_id: str, limit: int):
        self.owner_id = owner_id
        self.limit = limit
        super().__init__(f"同一购物车最多保留 {limit} 条有效预占")


class ConcurrencyConflictError(InventoryError):
    """乐观锁重试耗尽，属于瞬时故障，调用方可稍后重试"""

    status_code = 503
    message = "库存操作冲突，请稍后重试"


class InvariantViolationError(InventoryError):
    """库存不变量被破坏（reserved > total 或出现负数），说明并发控制存在缺陷"""

    status_code = 500
    message = "库存数据不一致"


class UpstreamUnavailableError(InventoryError):
    """远端电商后台查询失败（瞬时故障）"""

    status_code = 503
    message = "远端库存服务暂不可用，请稍后重试"
