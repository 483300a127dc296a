"""Domain-specific exceptions."""


class ServiceError(Exception):
    pass


class AccountNotFound(ServiceError):
    pass


class PlanNotFound(ServiceError):
    pass


class LimitExceeded(ServiceError):
    def __init__(self, kind: str, used: int, limit: int) -> None:
        super().__init__(f"Monthly limit reached: {used}/{limit}.")
        self.kind = kind
        self.used = used
        self.limit = limit


class AccessDenied(ServiceError):
    pass


class DealUnavailable(ServiceError):
    pass


class DuplicateRedemption(ServiceError):
    pass


class InvalidTransition(ServiceError):
    pass
