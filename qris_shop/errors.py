class ShopError(Exception):
    pass


class DisambiguationExhausted(ShopError):
    def __init__(self, base_amount: int, attempts: int):
        super().__init__(f"no free unique code for base amount {base_amount} after {attempts} attempts")
        self.base_amount = base_amount
        self.attempts = attempts


class QrIssuanceFailed(ShopError):
    pass


class InsufficientStock(ShopError):
    def __init__(self, code: str, available: int, requested: int):
        super().__init__(f"insufficient stock for {code}: have={available}, need={requested}")
        self.code = code
        self.available = available
        self.requested = requested


class InsufficientBalance(ShopError):
    def __init__(self, user_id: int, balance: int, requested: int):
        super().__init__(f"insufficient balance for user {user_id}: have={balance}, need={requested}")
        self.user_id = user_id
        self.balance = balance
        self.requested = requested


class UnknownProduct(ShopError):
    pass


class StoreUnavailable(ShopError):
    pass


class DuplicateRequest(ShopError):
    pass
