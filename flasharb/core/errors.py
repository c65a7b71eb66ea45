"""Exceptions shared across components."""

from __future__ import annotations


class ConfigurationError(Exception):
    """Startup configuration is missing or invalid; the process must not run."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required configuration: {', '.join(missing)}")


class RelayError(Exception):
    """A private relay rejected a request or replied with an unusable payload."""

    def __init__(self, relay: str, message: str) -> None:
        self.relay = relay
        super().__init__(f"{relay}: {message}")
