"""Exception hierarchy shared by the scanner, persistence and provider adapters."""

from __future__ import annotations


class ShieldError(Exception):
    """Base class for all sri-shield errors."""


class ResourceResolutionError(ShieldError):
    """A referenced resource could not be read or fetched during a static build."""

    def __init__(self, src: str, reason: str) -> None:
        self.src = src
        self.reason = reason
        super().__init__(f'Unable to resolve resource "{src}": {reason}')


class HashesModuleError(ShieldError):
    """The persisted hashes module exists but cannot be loaded."""


class ProviderConfigError(ShieldError):
    """A hosting provider config could not be parsed."""


class NetlifyParseError(ProviderConfigError):
    """Syntax error in a Netlify headers file. ``line`` is 1-based."""

    def __init__(self, line: int, message: str) -> None:
        self.line = line
        super().__init__(f"Netlify headers file, line {line}: {message}")


class VercelConfigError(ProviderConfigError):
    """Invalid Vercel config; ``field`` names the offending key."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"Vercel config, field {field!r}: {message}")
