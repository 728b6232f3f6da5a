"""
Error taxonomy for captcha detection, solving and injection
"""

from typing import Optional


class CaptchaError(Exception):
    """Base class for all captcha engine errors"""


class ElementNotFound(CaptchaError):
    """A descriptor did not re-resolve or a referenced element is gone"""

    def __init__(self, what: str, selector: Optional[str] = None):
        self.what = what
        self.selector = selector
        message = f"{what} not found"
        if selector:
            message += f" ({selector})"
        super().__init__(message)


class MissingChallengeData(CaptchaError):
    """Required site key or image payload is absent"""


class ProviderError(CaptchaError):
    """Solving backend returned a failure or a malformed response"""

    def __init__(self, provider_id: str, message: str, code: Optional[str] = None):
        self.provider_id = provider_id
        self.code = code
        super().__init__(f"{provider_id} error: {message}")


class PassLevelError(CaptchaError):
    """Unexpected failure touching a whole find/solve/enter pass"""


class CaptchaSolveError(CaptchaError):
    """Raised by the host layer when throw_on_error is enabled"""

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)


def format_error(error: BaseException) -> str:
    """Render an exception the way result records store it"""
    return f"{type(error).__name__}: {error}"
