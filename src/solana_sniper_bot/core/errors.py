"""Exceptions raised outside the per-position error boundary."""

from __future__ import annotations


class SniperBotError(Exception):
    """Base class for fatal bot errors."""


class StartupValidationError(SniperBotError):
    """The environment is not fit for trading, e.g. the quote token account is missing."""


__all__ = ["SniperBotError", "StartupValidationError"]
