"""Translate domain errors into HTTP responses."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException

from src.app.escrow.errors import EscrowError


@contextmanager
def domain_errors() -> Iterator[None]:
    """Re-raise any EscrowError as HTTPException with its status code."""
    try:
        yield
    except EscrowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message) from e
