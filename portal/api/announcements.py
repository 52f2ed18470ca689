from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Path, Query, Form, File, UploadFile

from portal.audience import CreatorRole, Target, TargetAudience, RefinementType
from portal.exceptions import InvalidAudienceError
from portal.middleware.authentication import (
    ADMIN_ROLES,
    AUTHOR_ROLES,
    allow_authors,
    get_current_identity,
    get_viewer_context,
)
from portal.realtime.scopes import RecipientScope, parse_scope
from portal.resolver import ViewerContext
from portal.schemas.announcements import (
    AnnouncementContentUpdate,
    AnnouncementCreate,
    AnnouncementRecord,
)
from portal.schemas.identity import Identity
from portal.services.announcements import AnnouncementStore, get_store

router = APIRouter()


def can_manage(identity: Identity, announcement: AnnouncementRecord) -> bool:
    """Administrators manage every announcement, other authors only their own."""
    if identity.role in ADMIN_ROLES:
        return True
    return identity.role in AUTHOR_ROLES and announcement.created_by == identity.user_id


def ensure_scope_allowed(identity: Identity, scope) -> None:
    # Anything other than a viewer's own inbox is a composer view
    if not isinstance(scope, RecipientScope) and identity.role not in AUTHOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view this audience"
        )


@router.post("/announcements", response_model=AnnouncementRecord, status_code=status.HTTP_201_CREATED)
async def create_announcement(
    title: str = Form(..., min_length=1, max_length=255),
    content: str = Form(..., min_length=1),
    category: str = Form("General", max_length=100),
    target: Target = Form(...),
    audience_type: Optional[RefinementType] = Form(None),
    audience_value: Optional[str] = Form(None),
    attachment: Optional[UploadFile] = File(None),
    store: AnnouncementStore = Depends(get_store),
    identity: Identity = Depends(allow_authors),
):
    """
    Publish an announcement to an audience, optionally with an attachment.
    """
    if (audience_type is None) != (audience_value is None):
        raise InvalidAudienceError("audience_type and audience_value must be given together")

    target_audience = None
    if audience_type is not None:
        target_audience = TargetAudience(type=audience_type, value=audience_value)

    draft = AnnouncementCreate(
        title=title,
        content=content,
        category=category,
        target=target,
        target_audience=target_audience,
        created_by=identity.user_id,
        creator_name=identity.name,
        creator_role=CreatorRole(identity.role),
    )

    # Browsers send an empty file part when nothing was chosen
    if attachment is not None and not attachment.filename:
        attachment = None

    announcement_id = await store.create(draft, attachment)
    return await store.get(announcement_id)


@router.get("/announcements", response_model=List[AnnouncementRecord])
async def get_announcements(
    scope: Optional[str] = Query(None, description="inbox, all, students, teachers, everyone, class:<section> or student:<id>"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    store: AnnouncementStore = Depends(get_store),
    identity: Identity = Depends(get_current_identity),
    viewer: ViewerContext = Depends(get_viewer_context),
):
    """
    Get announcements in a scope, oldest first. Defaults to the caller's inbox.
    """
    resolved = parse_scope(scope, viewer)
    ensure_scope_allowed(identity, resolved)
    return await store.scan(resolved, skip=skip, limit=limit)


@router.get("/announcements/{announcement_id}", response_model=AnnouncementRecord)
async def get_announcement(
    announcement_id: str = Path(..., min_length=1),
    store: AnnouncementStore = Depends(get_store),
    identity: Identity = Depends(get_current_identity),
    viewer: ViewerContext = Depends(get_viewer_context),
):
    """
    Get a specific announcement by ID.
    """
    announcement = await store.get(announcement_id)

    if not can_manage(identity, announcement) and not RecipientScope(viewer=viewer).matches(announcement):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Announcement not found"
        )

    return announcement


@router.patch("/announcements/{announcement_id}", response_model=AnnouncementRecord)
async def update_announcement_content(
    update_data: AnnouncementContentUpdate,
    announcement_id: str = Path(..., min_length=1),
    store: AnnouncementStore = Depends(get_store),
    identity: Identity = Depends(allow_authors),
):
    """
    Replace an announcement's content. Title, audience and author never change.
    """
    announcement = await store.get(announcement_id)

    if not can_manage(identity, announcement):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to update this announcement"
        )

    return await store.update_content(announcement_id, update_data.content)


@router.delete("/announcements/{announcement_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_announcement(
    announcement_id: str = Path(..., min_length=1),
    store: AnnouncementStore = Depends(get_store),
    identity: Identity = Depends(allow_authors),
):
    """
    Delete an announcement.
    """
    announcement = await store.get(announcement_id)

    if not can_manage(identity, announcement):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to delete this announcement"
        )

    await store.delete(announcement_id)
