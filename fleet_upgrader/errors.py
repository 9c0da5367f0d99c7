from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class InvalidSettingError(ApiError):
    """Rejected upgrade knob value; never persisted."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="UPGRADER_INVALID_SETTING",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class DispatchError(ApiError):
    """Trigger or cancel command rejected by the deployment trigger."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="UPGRADER_DISPATCH_FAILED",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=502,
        )
