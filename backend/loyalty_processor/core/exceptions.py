"""Webhook boundary errors"""


class WebhookError(Exception):
    """Base class for errors rejected synchronously at the webhook boundary"""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class WebhookAuthenticationError(WebhookError):
    """Missing or invalid webhook signature"""

    status_code = 401
    error_code = "INVALID_SIGNATURE"


class WebhookValidationError(WebhookError):
    """Payload is not valid JSON or fails schema validation"""

    status_code = 400
    error_code = "INVALID_PAYLOAD"

    def __init__(self, message: str, errors: list = None):
        super().__init__(message)
        self.errors = errors or []
