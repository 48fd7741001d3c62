from .coordinator import CANCELLED_ERROR_CODE, RetryCoordinator

__all__ = ["CANCELLED_ERROR_CODE", "RetryCoordinator"]
