# calwatch/core/errors.py
from __future__ import annotations


class CalwatchError(Exception):
    """Base class for errors raised by calwatch components."""


class ChannelClosedError(CalwatchError):
    """The host messaging channel can no longer carry commands."""


class FeedFetchError(CalwatchError):
    """A calendar feed could not be downloaded or is not iCal data."""


class FeedParseError(CalwatchError):
    """A calendar feed was downloaded but could not be parsed as a whole."""


class SyncError(CalwatchError):
    """A single calendar source could not be synced."""


class ConfigError(ValueError):
    """Invalid runtime configuration."""
