from __future__ import annotations

from typing import List, Optional

from authgate.logging import get_logger
from authgate.service.errors import NotFoundError, ValidationError
from authgate.storage.base import UserStore
from authgate.storage.common import normalize_school_name
from authgate.storage.models import School

logger = get_logger(__name__)


class SchoolService:
    """Schools keyed by their trimmed, upper-cased name."""

    def __init__(self, store: UserStore, *, list_limit: int = 1000) -> None:
        self.store = store
        self.list_limit = list_limit

    @staticmethod
    def normalize_name(name: str) -> str:
        try:
            return normalize_school_name(name)
        except ValueError as exc:
            raise ValidationError("School name is required") from exc

    async def get_or_create(self, name: str) -> School:
        normalized = self.normalize_name(name)
        school = await self.store.get_or_create_school(normalized)
        logger.debug("school_resolved", school_id=school.id)
        return school

    async def get(self, school_id: int) -> School:
        school = await self.store.get_school(school_id)
        if school is None:
            raise NotFoundError("School not found", detail={"school_id": school_id})
        return school

    async def find(self, name: str) -> Optional[School]:
        return await self.store.get_school_by_name(self.normalize_name(name))

    async def list(self, limit: Optional[int] = None) -> List[School]:
        effective = self.list_limit if limit is None else min(limit, self.list_limit)
        if effective < 1:
            raise ValidationError("limit must be positive")
        return await self.store.list_schools(limit=effective)
