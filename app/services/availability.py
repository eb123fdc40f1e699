"""可售库存计算（纯函数，无 I/O）

做预占判断时，传入的必须是刚从数据库读出的库存记录，不能是缓存值。
"""


def available_quantity(total_stock: int, reserved_stock: int) -> int:
    return max(0, total_stock - reserved_stock)


def available(stock_record) -> int:
    """stock_record 只需具备 total_stock / reserved_stock 两个属性"""
    return available_quantity(stock_record.total_stock, stock_record.reserved_stock)
