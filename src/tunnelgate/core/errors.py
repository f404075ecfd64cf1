"""Application errors.

Every error carries two messages: the developer-facing ``str(exc)`` that ends
up in logs, and a short ``user_message`` that is safe to show to whoever is
driving the tools.
"""

from __future__ import annotations


class AppError(Exception):
    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class ConfigError(AppError):
    pass


class TunnelCommandError(AppError):
    """A tunnel daemon command exited non-zero, timed out or could not start."""

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


class AuthenticationRequiredError(AppError):
    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        login_url: str | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.login_url = login_url


class ConnectionVerificationError(AppError):
    pass


class DisconnectionVerificationError(AppError):
    pass


class ProbeUnavailableError(AppError):
    pass


class DelegateError(AppError):
    pass


class ProwlarrApiError(AppError):
    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.status_code = status_code


class QBittorrentError(AppError):
    """Torrent client failure; ``kind`` is one of AUTH, NETWORK, API, SYSTEM."""

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        user_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.kind = kind
        self.status_code = status_code
