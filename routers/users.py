"""
Profile endpoints used by the messaging pages.

- Batched display-profile lookup for conversation counterparts
- Self-service profile edits (never subscription fields)
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import logging

from core.auth import get_current_user
from core.database import get_db
from core.exceptions import BadRequestError
from models import User
from schemas import ProfilesRequest, UserProfileUpdate, UserResponse
from services.user_directory import get_profiles_by_ids

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["users"])


@router.post("/users/profiles")
def user_profiles(request: ProfilesRequest, db: Session = Depends(get_db)):
    """Map each requested user id to its public profile, or null."""
    user_ids = request.user_ids
    if not isinstance(user_ids, list) or any(not isinstance(i, str) for i in user_ids):
        raise BadRequestError("Invalid input: userIds must be an array of strings.", field="userIds")
    if not user_ids:
        return {}

    profiles = get_profiles_by_ids(db, user_ids)
    return {uid: (p.to_dict() if p else None) for uid, p in profiles.items()}


@router.patch("/user-profile", response_model=UserResponse)
def update_user_profile(
    update: UserProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Update the caller's display fields.

    Role and subscription fields are not part of UserProfileUpdate and are
    dropped from the body; only the billing reconciler writes them.
    """
    changes = update.model_dump(exclude_unset=True)
    if "name" in changes and not (changes["name"] or "").strip():
        raise BadRequestError("Name cannot be empty", field="name")

    for key, value in changes.items():
        setattr(current_user, key, value or None)
    db.add(current_user)
    db.commit()
    db.refresh(current_user)

    logger.info(f"Profile updated for {current_user.id}", extra={"extra_fields": {"fields": sorted(changes)}})
    return UserResponse.model_validate(current_user)
