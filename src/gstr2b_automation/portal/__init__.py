from .captcha import CaptchaResolver, build_resolver
from .client import GstPortalClient, PortalCredentials
from .login import LoginStateMachine
from .session import BrowserLaunchError, browser_session

__all__ = [
    "GstPortalClient",
    "PortalCredentials",
    "CaptchaResolver",
    "build_resolver",
    "LoginStateMachine",
    "BrowserLaunchError",
    "browser_session",
]
