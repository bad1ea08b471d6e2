from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileSummary:
    id: str
    name: Optional[str]
    profile_image_url: Optional[str]
    role: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "profileImageUrl": self.profile_image_url,
            "role": self.role,
        }


def _chunks(ids: list[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


def get_profile(db: Session, user_id: str) -> Optional[ProfileSummary]:
    user = db.get(User, user_id)
    if not user:
        return None
    return ProfileSummary(id=user.id, name=user.name, profile_image_url=user.profile_image_url, role=user.role)


def get_profiles_by_ids(
    db: Session,
    user_ids: Iterable[str],
    *,
    chunk_size: Optional[int] = None,
) -> dict[str, Optional[ProfileSummary]]:
    """
    Batched profile lookup. Every requested id is present in the result,
    mapped to None when no profile exists or its chunk could not be read.

    A failing chunk is logged and degrades to None so callers can fall back
    to denormalized names instead of failing the whole page.
    """
    unique_ids = list(dict.fromkeys(str(i) for i in user_ids if i))
    profiles: dict[str, Optional[ProfileSummary]] = {uid: None for uid in unique_ids}
    size = chunk_size or settings.PROFILE_LOOKUP_CHUNK_SIZE

    for chunk in _chunks(unique_ids, size):
        try:
            rows = db.query(User).filter(User.id.in_(chunk)).all()
        except SQLAlchemyError as e:
            logger.warning(
                f"Profile lookup failed for {len(chunk)} ids: {e}",
                extra={"extra_fields": {"user_ids": chunk}},
            )
            db.rollback()
            continue
        for row in rows:
            profiles[row.id] = ProfileSummary(
                id=row.id,
                name=row.name,
                profile_image_url=row.profile_image_url,
                role=row.role,
            )

    return profiles
