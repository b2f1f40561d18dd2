from __future__ import annotations

from typing import Dict


class DomainError(Exception):
    code: str = "domain_error"
    status: int = 400

    def __init__(self, message: str = "", *, code: str | None = None, status: int | None = None):
        super().__init__(message or self.__class__.__name__)
        if code: self.code = code
        if status: self.status = status


class ExtractionError(DomainError):
    """Relational store fault while building a user's preference profile."""

    code = "extraction_failed"
    status = 502


class NoSeedEmbeddingsError(DomainError):
    """None of the seed movies has a stored embedding. Recoverable: score genre-only."""

    code = "no_seed_embeddings"
    status = 422


class DimensionMismatchError(DomainError):
    code = "dimension_mismatch"
    status = 500

    def __init__(self, expected: int, actual: int, *, where: str = "vector"):
        super().__init__(f"{where}: expected dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class EmptyInputError(DomainError):
    code = "empty_input"
    status = 400


class RecommendationUnavailableError(DomainError):
    """Both candidate branches failed; nothing left to rank."""

    code = "recommendation_unavailable"
    status = 503

    def __init__(self, causes: Dict[str, BaseException]):
        detail = "; ".join(f"{name}: {exc!r}" for name, exc in causes.items())
        super().__init__(f"all candidate sources failed ({detail})")
        self.causes = dict(causes)


class InvalidRatingError(DomainError):
    code = "invalid_rating"
    status = 422
