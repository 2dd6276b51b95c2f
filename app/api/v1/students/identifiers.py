"""
Admission number generation: <ORGCODE><YEAR><NNNN>, e.g. GHS20260007.

The next sequence is derived from the highest identifier currently stored for the prefix; there is
no in-process counter. Concurrent writers that compute the same candidate are separated by the
reservation insert (unique per organization): the loser moves to the next sequence, up to
MAX_ATTEMPTS times, after which a timestamp-derived candidate is returned unchecked.
"""

import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.models import Organization

from . import repository

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 10
SEQUENCE_WIDTH = 4

Reserve = Callable[[str], Awaitable[bool]]


def build_prefix(organization_code: str, year: int) -> str:
    return f"{organization_code.strip().upper()}{year}"


def parse_sequence(identifier: Optional[str], prefix: str) -> Optional[int]:
    if not identifier or not identifier.startswith(prefix):
        return None
    suffix = identifier[len(prefix):]
    return int(suffix) if suffix.isdigit() else None


def next_sequence(current_max: Optional[str], prefix: str) -> int:
    """1 + the numeric suffix of the current maximum for prefix; 1 if there is none (or it is not numeric)."""
    current = parse_sequence(current_max, prefix)
    return current + 1 if current is not None else 1


def format_identifier(prefix: str, sequence: int) -> str:
    return f"{prefix}{sequence:0{SEQUENCE_WIDTH}d}"


def fallback_identifier(prefix: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return format_identifier(prefix, now_ms % (10 ** SEQUENCE_WIDTH))


async def generate_identifier(
    prefix: str,
    current_max: Optional[str],
    reserve: Reserve,
    max_attempts: int = MAX_ATTEMPTS,
) -> str:
    """
    Try prefix+sequence candidates starting after the current maximum; `reserve` claims one and
    returns False on a collision. Never raises for exhaustion: returns the fallback candidate.
    """
    sequence = next_sequence(current_max, prefix)
    for _ in range(max_attempts):
        candidate = format_identifier(prefix, sequence)
        if await reserve(candidate):
            return candidate
        sequence += 1
    candidate = fallback_identifier(prefix)
    logger.warning(
        "Admission number retries exhausted for prefix %s after %d attempts; using fallback %s",
        prefix,
        max_attempts,
        candidate,
    )
    return candidate


async def generate_admission_number(
    db: AsyncSession,
    organization: Organization,
    year: Optional[int] = None,
) -> str:
    """Reserve and return the next admission number for the organization and year (default: current year)."""
    organization_id = organization.id
    prefix = build_prefix(organization.organization_code, year or datetime.utcnow().year)
    current_max = await repository.find_highest_admission_number(db, organization_id, prefix)

    async def _reserve(candidate: str) -> bool:
        return await repository.reserve_admission_number(db, organization_id, candidate)

    return await generate_identifier(prefix, current_max, _reserve)
