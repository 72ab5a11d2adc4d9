"""Exceptions raised by the backfill data layer."""

from __future__ import annotations


class BackfillError(Exception):
    """Base class for backfill failures."""


class MissingCredentialError(BackfillError):
    """A required upstream API key is not configured."""


class UpstreamError(BackfillError):
    """An external API call failed or returned a body we could not parse."""

    def __init__(self, source: str, detail: str, status_code: int | None = None) -> None:
        self.source = source
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{source}: {detail}")


class UnknownPhaseError(BackfillError):
    """The request named a phase the dispatcher does not know."""

    def __init__(self, phase: str) -> None:
        self.phase = phase
        super().__init__(f"Unknown phase: {phase}")
