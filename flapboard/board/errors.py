"""Error taxonomy (each maps to one HTTP status)."""

from __future__ import annotations


class LeaderboardError(Exception):
    status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(LeaderboardError):
    status = 400


class InvalidScore(ValidationError):
    pass


class AuthError(LeaderboardError):
    status = 401


class NotFoundError(LeaderboardError):
    status = 404


class StoreUnavailable(LeaderboardError):
    status = 500


class ServerMisconfiguration(LeaderboardError):
    status = 500
