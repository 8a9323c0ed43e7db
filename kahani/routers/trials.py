from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from kahani.config import Settings
from kahani.database import get_db
from kahani.dependencies import get_dispatcher, get_settings
from kahani.schemas.trial import AlbumSummary, AlbumView, TrialCreate, TrialCreateResponse, TrialResponse
from kahani.services import trial_service
from kahani.services.album_catalog import list_active_albums
from kahani.services.outbox_service import OutboxDispatcher
from kahani.services.result import ErrorCode

router = APIRouter(prefix="/api")


@router.post("/free-trial", response_model=TrialCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_free_trial(
    data: TrialCreate,
    db: Session = Depends(get_db),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher),
    config: Settings = Depends(get_settings),
):
    """Create a trial and send the buyer their confirmation and shareable link."""
    result = await trial_service.create_trial(db, data, dispatcher, config)
    if not result.ok:
        code = status.HTTP_404_NOT_FOUND if result.error_code == ErrorCode.ALBUM_NOT_FOUND.value else 400
        raise HTTPException(status_code=code, detail=result.error)

    created = result.value
    return TrialCreateResponse(
        trial=TrialResponse.model_validate(created.trial),
        confirmation_sent=created.confirmation_sent,
        shareable_link_sent=created.shareable_link_sent,
    )


@router.get("/albums", response_model=list[AlbumSummary])
def get_albums(db: Session = Depends(get_db)):
    return list_active_albums(db)


@router.get("/albums/{trial_id}", response_model=AlbumView)
def get_album_for_trial(trial_id: UUID, db: Session = Depends(get_db)):
    """Album page for a trial: questions with the storyteller's recorded answers."""
    view = trial_service.get_album_view(db, trial_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Trial {trial_id} not found")
    return view
