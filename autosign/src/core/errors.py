from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    API = "api"
    AUTH = "auth"
    MISSING_CERTIFICATE = "missing_certificate"
    CERTIFICATE_NOT_ON_PORTAL = "certificate_not_on_portal"
    NONMATCHING_PROFILE = "nonmatching_profile"
    PROFILES_INCONSISTENT = "profiles_inconsistent"
    APP_CLIP_APP_ID = "app_clip_app_id"
    APP_CLIP_APP_ID_WITH_APPLE_SIGNING = "app_clip_app_id_with_apple_signing"
    UNSUPPORTED_ENTITLEMENT = "unsupported_entitlement"
    PROFILE_ATTACHED_ENTITLEMENT = "profile_attached_entitlement"
    ICLOUD_CONTAINERS = "icloud_containers"
    DEVICE_REGISTRATION = "device_registration"
    INVALID_INPUT = "invalid_input"
    INSTALL = "install"


class CodesignError(Exception):
    """Error raised by every part of the code signing asset pipeline.

    Callers decide what to do by looking at ``kind`` and ``retryable``
    instead of the exception class. The optional title, description and
    recommendation are shown to the user as-is.
    """

    def __init__(
        self,
        kind: ErrorKind,
        detail: str = "",
        retryable: bool = False,
        title: Optional[str] = None,
        description: Optional[str] = None,
        recommendation: Optional[str] = None,
    ):
        self.kind = kind
        self.detail = detail
        self.retryable = retryable
        self.title = title
        self.description = description
        self.recommendation = recommendation
        super().__init__(self._render())

    def _render(self) -> str:
        if not (self.title or self.description or self.recommendation):
            return self.detail

        lines = []
        if self.detail:
            lines.append(self.detail)
            lines.append("")
        if self.title:
            lines.append(self.title)
        if self.description:
            lines.append(self.description)
        if self.recommendation:
            lines.append("")
            lines.append(self.recommendation)
        return "\n".join(lines)

    def __str__(self) -> str:
        return self._render()


def nonmatching_profile(reason: str) -> CodesignError:
    return CodesignError(
        ErrorKind.NONMATCHING_PROFILE,
        f"provisioning profile does not match requirements: {reason}",
    )


def profiles_inconsistent(cause: Exception) -> CodesignError:
    error = CodesignError(
        ErrorKind.PROFILES_INCONSISTENT,
        f"provisioning profiles were concurrently changed on Developer Portal, {cause}",
        retryable=True,
    )
    error.__cause__ = cause
    return error


def app_clip_app_id() -> CodesignError:
    return CodesignError(
        ErrorKind.APP_CLIP_APP_ID,
        "can't create Application Identifier for App Clip target",
    )


def app_clip_app_id_with_apple_signing() -> CodesignError:
    return CodesignError(
        ErrorKind.APP_CLIP_APP_ID_WITH_APPLE_SIGNING,
        "can't manage Application Identifier for App Clip target with 'Sign In With Apple' capability",
    )


def wrap(error: CodesignError, context: str) -> CodesignError:
    """Same error with a context prefix, keeping its kind and user facing fields"""
    detail = f"{context}: {error.detail}" if error.detail else context
    return CodesignError(
        error.kind,
        detail,
        retryable=error.retryable,
        title=error.title,
        description=error.description,
        recommendation=error.recommendation,
    )
