from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from kahani.logging_config import get_logger
from kahani.models import Album, Trial
from kahani.services.localization import HINDI, resolve_language

logger = get_logger("album_catalog")

BATCH_SIZE = 3


@dataclass(frozen=True)
class AlbumContent:
    """Questions of one album in one resolved language."""

    questions: tuple[str, ...] = ()
    is_conversational: bool = False
    batch_titles: tuple[str, ...] = ()
    batch_premises: tuple[str, ...] = ()
    language: str = "en"

    @property
    def total(self) -> int:
        return len(self.questions)

    def question(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.questions):
            return self.questions[index]
        return None

    def batch_intro(self, index: int) -> Optional[tuple[str, str]]:
        """(title, premise) when ``index`` opens a batch of a conversational album."""
        if not self.is_conversational or index % BATCH_SIZE != 0:
            return None
        batch = index // BATCH_SIZE
        if batch >= len(self.batch_premises):
            return None
        title = self.batch_titles[batch] if batch < len(self.batch_titles) else ""
        return title, self.batch_premises[batch]


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def get_album(db: Session, identifier: Optional[str]) -> Optional[Album]:
    """Find an active album by title first, then by id."""
    if not identifier:
        return None
    album = db.query(Album).filter(Album.title == identifier, Album.is_active.is_(True)).first()
    if album:
        return album
    album_id = _parse_uuid(identifier)
    if album_id is None:
        return None
    return db.query(Album).filter(Album.id == album_id, Album.is_active.is_(True)).first()


def get_album_for_trial(db: Session, trial: Trial) -> Optional[Album]:
    if trial.album_id is not None:
        album = get_album(db, str(trial.album_id))
        if album:
            return album
    return get_album(db, trial.selected_album)


def list_active_albums(db: Session) -> list[Album]:
    return db.query(Album).filter(Album.is_active.is_(True)).order_by(Album.title).all()


def _localized_list(data, language: str) -> tuple[str, ...]:
    if not isinstance(data, dict):
        return ()
    values = data.get(language) if language == HINDI else None
    return tuple(values or data.get("en") or ())


def album_content(album: Optional[Album], language_preference: Optional[str]) -> AlbumContent:
    """Resolve an album's questions for a language; Hindi falls back to English when absent."""
    if album is None:
        return AlbumContent()
    language = resolve_language(language_preference)
    questions = album.questions or []
    if language == HINDI and album.questions_hn:
        questions = album.questions_hn
    else:
        language = "en"
    return AlbumContent(
        questions=tuple(questions),
        is_conversational=bool(album.is_conversational_album),
        batch_titles=_localized_list(album.question_set_titles, language),
        batch_premises=_localized_list(album.question_set_premise, language),
        language=language,
    )


def content_for_trial(db: Session, trial: Trial) -> AlbumContent:
    album = get_album_for_trial(db, trial)
    if album is None:
        logger.error(
            "Album not found for trial",
            extra={"context": {"trial_id": str(trial.id), "album_id": str(trial.album_id), "album": trial.selected_album}},
        )
    return album_content(album, trial.storyteller_language_preference)


def get_question(db: Session, identifier: str, index: int, language_preference: Optional[str] = None) -> Optional[str]:
    return album_content(get_album(db, identifier), language_preference).question(index)


def total_questions(db: Session, identifier: str, language_preference: Optional[str] = None) -> int:
    return album_content(get_album(db, identifier), language_preference).total
