class KardexException(Exception):
    """库存核心基础异常类"""
    def __init__(self, message, code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['code'] = self.code
        rv['error'] = self.__class__.__name__
        rv['success'] = False
        return rv

class NotFound(KardexException):
    """对象不存在 (商品/订单/盘点/预留...)"""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, code=404, payload=payload)

class ValidationError(KardexException):
    """输入数据不合法"""
    def __init__(self, message="Invalid data", payload=None):
        super().__init__(message, code=400, payload=payload)

class InvalidState(KardexException):
    """当前生命周期状态不允许该操作"""
    def __init__(self, message="Operation not allowed in current state", payload=None):
        super().__init__(message, code=409, payload=payload)

class PendingItems(InvalidState):
    """盘点仍有未录入的明细"""
    def __init__(self, message="Count has pending items", payload=None):
        super().__init__(message, payload=payload)

class Conflict(KardexException):
    """重复单据号、重复执行等冲突"""
    def __init__(self, message="Conflict", payload=None):
        super().__init__(message, code=409, payload=payload)

class InsufficientStock(KardexException):
    """实际库存不足 (结果将为负)"""
    def __init__(self, message="Insufficient stock", payload=None):
        super().__init__(message, code=409, payload=payload)

class InsufficientAvailableStock(InsufficientStock):
    """可用库存 (实际库存 - 有效预留) 不足"""
    def __init__(self, message="Insufficient available stock", payload=None):
        super().__init__(message, payload=payload)

class InsufficientLocationStock(InsufficientStock):
    """货位库存不足"""
    def __init__(self, message="Insufficient location stock", payload=None):
        super().__init__(message, payload=payload)
